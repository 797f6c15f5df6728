# session.py
# ---------------------------------------------------------------------
# Recompute-on-change wrapper around PricingPipeline: holds the raw
# records + settings, runs one analysis at a time in the background and
# publishes results last-writer-wins.
# ---------------------------------------------------------------------
from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import replace
from typing import Callable, List, Optional, Sequence

import pandas as pd

from gg_pricing.built_in_logic import (
    AnalysisResult,
    BootstrapCancelled,
    PricingPipeline,
    RowNormalizer,
)
from gg_pricing.helpers import (
    AnalysisConfig,
    Cache,
    ColumnMapping,
    DataEng,
    ResultCache,
)
from gg_pricing.logged_funcs import resolve_logger

StatusCallback = Callable[[str, int], None]
ProgressCallback = Callable[[int, int, int], None]


class AnalysisSession:
    """
    Observers receive ``(status, generation)`` with status one of
    running / done / cancelled / failed. Progress observers receive
    ``(done, total, generation)`` while a bootstrap runs.

    Runs are serialized on a single worker. A finished run only replaces the
    published result if nothing newer has been published.
    """

    STATUSES = ("running", "done", "cancelled", "failed")

    def __init__(
        self,
        records: Optional[Sequence[dict]] = None,
        mapping: Optional[ColumnMapping] = None,
        config: Optional[AnalysisConfig] = None,
        *,
        cache_size: int = 16,
        logger_print=None,
        verbose: bool = True,
    ):
        self._logger_print = logger_print
        self._verbose = verbose
        self._log = resolve_logger(logger_print, verbose)

        self._records: List[dict] = []
        self._columns: List[str] = []
        self.mapping = mapping if mapping is not None else ColumnMapping()
        self.config = config if config is not None else AnalysisConfig()

        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="gg-analysis")
        self._lock = threading.Lock()
        self._generation = 0
        self._published = 0
        self._result: Optional[AnalysisResult] = None
        self._stop = threading.Event()

        self._observers: List[StatusCallback] = []
        self._progress_observers: List[ProgressCallback] = []

        self._obs_key: Optional[tuple] = None
        self._observations: Optional[pd.DataFrame] = None
        self._cache = ResultCache(cache_size)

        if records is not None:
            self.load(records)

    # ---------------------------- observers ----------------------------

    def subscribe(self, callback: StatusCallback) -> Callable[[], None]:
        self._observers.append(callback)
        return lambda: self._observers.remove(callback)

    def on_progress(self, callback: ProgressCallback) -> Callable[[], None]:
        self._progress_observers.append(callback)
        return lambda: self._progress_observers.remove(callback)

    def _emit(self, status: str, generation: int) -> None:
        for cb in list(self._observers):
            cb(status, generation)

    def _progress(self, generation: int) -> Callable[[int, int], None]:
        def report(done: int, total: int) -> None:
            for cb in list(self._progress_observers):
                cb(done, total, generation)

        return report

    # ---------------------------- inputs ----------------------------

    def load(self, records, columns: Optional[Sequence[str]] = None) -> None:
        """Replace the raw records; guesses the id column if none is mapped."""
        if isinstance(records, pd.DataFrame):
            columns = list(records.columns) if columns is None else columns
            records = records.to_dict("records")
        self._records = list(records)
        if columns is None:
            columns = list(self._records[0].keys()) if self._records else []
        self._columns = list(columns)

        if not self.mapping.id_col:
            guess = DataEng.guess_id_column(self._columns)
            if guess:
                self._log(f"Guessed respondent id column: {guess!r}")
                self.mapping = replace(self.mapping, id_col=guess)

        self._obs_key = None
        self._observations = None

    @property
    def columns(self) -> List[str]:
        return list(self._columns)

    @property
    def observations(self) -> pd.DataFrame:
        key = (self.mapping.signature(), self.config.use_weights, id(self._records))
        if self._observations is None or key != self._obs_key:
            self._observations = RowNormalizer(
                self.mapping,
                use_weights=self.config.use_weights,
                logger_print=self._logger_print,
                verbose=self._verbose,
            ).prepare(self._records)
            self._obs_key = key
        return self._observations

    def segment_options(self, segment: str) -> List[str]:
        return DataEng.segment_options(self.observations, segment)

    @property
    def result(self) -> Optional[AnalysisResult]:
        with self._lock:
            return self._result

    @property
    def generation(self) -> int:
        return self._generation

    # ---------------------------- runs ----------------------------

    def update(
        self,
        mapping: Optional[ColumnMapping] = None,
        config: Optional[AnalysisConfig] = None,
    ) -> "Future[Optional[AnalysisResult]]":
        if mapping is not None:
            self.mapping = mapping
        if config is not None:
            self.config = config
        return self.submit()

    def submit(self) -> "Future[Optional[AnalysisResult]]":
        obs = self.observations  # read-only snapshot shared with the worker
        config = self.config
        with self._lock:
            self._generation += 1
            gen = self._generation
            self._stop = threading.Event()
            stop = self._stop
        return self._executor.submit(self._run, gen, obs, config, stop)

    def cancel(self) -> None:
        """Stop the in-flight bootstrap between iterations."""
        with self._lock:
            self._stop.set()

    def _publish(self, generation: int, result: Optional[AnalysisResult]) -> None:
        with self._lock:
            if generation > self._published:
                self._published = generation
                self._result = result

    def _run(
        self,
        generation: int,
        observations: pd.DataFrame,
        config: AnalysisConfig,
        stop: threading.Event,
    ) -> Optional[AnalysisResult]:
        self._emit("running", generation)

        key = Cache.signature(observations, config)
        result = self._cache.get(key)
        if result is None:
            try:
                result = PricingPipeline(
                    config, logger_print=self._logger_print, verbose=self._verbose
                ).analyze(
                    observations,
                    progress=self._progress(generation),
                    should_stop=stop.is_set,
                )
            except BootstrapCancelled as e:
                self._log(f"Run {generation} cancelled: {e}")
                self._emit("cancelled", generation)
                return None
            except Exception:
                self._emit("failed", generation)
                raise
            if result is not None:
                self._cache.put(key, result)
        else:
            self._log(f"Run {generation} served from cache")

        self._publish(generation, result)
        self._emit("done", generation)
        return result

    def close(self) -> None:
        self.cancel()
        self._executor.shutdown(wait=True)

    def __enter__(self) -> "AnalysisSession":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
