# --------- built_in_logic.py  ---------
# Gabor-Granger engine: normalize -> filter -> aggregate -> (bootstrap)
# -> interpolate -> optimize
from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

# local import
from gg_pricing.helpers import (
    BOUND_COLS,
    CURVE_COLS,
    OBS_COLS,
    AnalysisConfig,
    ColumnMapping,
    DataEng,
    Defaults,
    ResultsTable,
)
from gg_pricing.logged_funcs import StageLogger, resolve_logger

Records = Sequence[Mapping[str, Any]]


def _empty_curve() -> pd.DataFrame:
    return pd.DataFrame({c: pd.Series(dtype=float) for c in CURVE_COLS}).astype(
        {"n_rows": "int64"}
    )


class RowNormalizer:
    """
    Raw survey records -> observation frame (respondent_id, price, buy, w, segments).

    Malformed cells never raise: a bad price drops the observation, a bad
    weight or purchase value falls back to its default.
    """

    def __init__(
        self,
        mapping: ColumnMapping,
        use_weights: bool = False,
        logger_print=None,
        verbose: bool = True,
    ):
        self.mapping = mapping
        self.use_weights = bool(use_weights)
        self._log = resolve_logger(logger_print, verbose)
        self._tlog = StageLogger(self._log)

    def _segment_cols(self) -> List[str]:
        keep = []
        for seg in self.mapping.segment_cols:
            if seg in OBS_COLS:
                self._log(f"Segment column {seg!r} clashes with a canonical column; skipped")
                continue
            keep.append(seg)
        return keep

    def _empty(self) -> pd.DataFrame:
        cols = OBS_COLS + self._segment_cols()
        out = pd.DataFrame({c: pd.Series(dtype=object) for c in cols})
        return out.astype({"price": float, "buy": "int64", "w": float})

    def _weight(self, record: Mapping[str, Any]) -> float:
        if not self.use_weights or not self.mapping.weight_col:
            return 1.0
        return DataEng.resolve_weight(record.get(self.mapping.weight_col))

    def _frame(self, kept: List[Tuple[Mapping[str, Any], float, int]]) -> pd.DataFrame:
        if not kept:
            return self._empty()

        recs = [k[0] for k in kept]
        data = {
            "respondent_id": pd.Series(
                [r.get(self.mapping.id_col) for r in recs], dtype=object
            ),
            "price": np.array([k[1] for k in kept], dtype=float),
            "buy": np.array([k[2] for k in kept], dtype=np.int64),
            "w": np.array([self._weight(r) for r in recs], dtype=float),
        }
        for seg in self._segment_cols():
            data[seg] = pd.Series([r.get(seg) for r in recs], dtype=object)
        return pd.DataFrame(data)

    def _long(self, records: Records) -> pd.DataFrame:
        pc, bc = self.mapping.price_col, self.mapping.buy_col
        kept = []
        for rec in records:
            p = DataEng.to_number(rec.get(pc))
            if not math.isfinite(p):
                continue
            kept.append((rec, p, DataEng.map_buy(rec.get(bc))))
        return self._frame(kept)

    def _wide(self, records: Records) -> pd.DataFrame:
        try:
            rx = re.compile(self.mapping.price_pattern)
        except re.error as e:
            self._log(f"Invalid price pattern {self.mapping.price_pattern!r}: {e}")
            return self._empty()

        # price per column is fixed; colliding prices merge downstream
        col_prices = []
        for col in self.mapping.wide_price_cols:
            p = DataEng.extract_price(col, rx)
            if math.isfinite(p):
                col_prices.append((col, p))
            else:
                self._log(f"No price found in column {col!r}; skipped")

        kept = []
        for rec in records:
            for col, p in col_prices:
                kept.append((rec, p, DataEng.map_buy(rec.get(col))))
        return self._frame(kept)

    def prepare(self, records) -> pd.DataFrame:
        if isinstance(records, pd.DataFrame):
            records = records.to_dict("records")
        if not records or not self.mapping.is_configured():
            return self._empty()

        if self.mapping.data_format == "long":
            obs = self._long(records)
        else:
            obs = self._wide(records)

        self._tlog(
            "normalize",
            n=len(obs),
            rows=len(records),
            format=self.mapping.data_format,
            weighted=self.use_weights and bool(self.mapping.weight_col),
        )
        return obs


class SegmentFilter:
    """AND across segments, OR within a segment's allowed labels; empty = no restriction."""

    def __init__(self, filters: Optional[Mapping[str, Sequence[str]]] = None):
        self.filters = {
            seg: {str(v) for v in allowed}
            for seg, allowed in dict(filters or {}).items()
            if allowed
        }

    def mask(self, observations: pd.DataFrame) -> np.ndarray:
        keep = np.ones(len(observations), dtype=bool)
        for seg, allowed in self.filters.items():
            if seg in observations.columns:
                labels = observations[seg].map(DataEng.as_label)
            else:
                labels = pd.Series([""] * len(observations), index=observations.index)
            keep &= labels.isin(allowed).to_numpy()
        return keep

    def apply(self, observations: pd.DataFrame) -> pd.DataFrame:
        if not self.filters:
            return observations
        return observations.loc[self.mask(observations)].reset_index(drop=True)


class CurveAggregator:
    def __init__(self, revenue_scale: float = Defaults.REVENUE_SCALE):
        self.revenue_scale = float(revenue_scale)

    @staticmethod
    def check_sorted(frame: pd.DataFrame) -> None:
        p = frame["price"].to_numpy(dtype=float)
        if p.size > 1 and not np.all(np.diff(p) > 0):
            raise RuntimeError("price points must be unique and strictly ascending")

    def compute(self, observations: pd.DataFrame) -> pd.DataFrame:
        """
        Weighted purchase rate per distinct price.
            demand  = sum(w * buy) / sum(w)   (0 when sum(w) <= 0)
            revenue = price * demand * revenue_scale
        """
        if observations is None or observations.empty:
            return _empty_curve()

        g = (
            observations.assign(wbuy=observations["w"] * observations["buy"])
            .groupby("price", sort=True)
            .agg(
                n_rows=("buy", "size"),
                sum_w=("w", "sum"),
                sum_wbuy=("wbuy", "sum"),
            )
            .reset_index()
        )

        sum_w = g["sum_w"].to_numpy(dtype=float)
        sum_wbuy = g["sum_wbuy"].to_numpy(dtype=float)
        demand = np.divide(
            sum_wbuy, sum_w, out=np.zeros_like(sum_w), where=sum_w > 0
        )

        out = pd.DataFrame(
            {
                "price": g["price"].to_numpy(dtype=float),
                "n_rows": g["n_rows"].to_numpy(dtype=np.int64),
                "demand": demand,
            }
        )
        out["revenue"] = out["price"] * out["demand"] * self.revenue_scale
        for c in BOUND_COLS + ["revenue_scaled"]:
            out[c] = np.nan

        self.check_sorted(out)
        return out[CURVE_COLS]


class BootstrapCancelled(RuntimeError):
    pass


class ClusterBootstrap:
    """
    Resample whole respondents with replacement; a respondent drawn twice
    counts twice at every price they answered.

    Bounds are read straight off the sorted draws at floor(0.05*B) and
    floor(0.95*B), no interpolation between draws.
    """

    def __init__(
        self,
        iterations: int = Defaults.BOOT_ITERATIONS,
        revenue_scale: float = Defaults.REVENUE_SCALE,
        *,
        seed: Optional[int] = None,
        rng: Optional[np.random.Generator] = None,
        progress: Optional[Callable[[int, int], None]] = None,
        should_stop: Optional[Callable[[], bool]] = None,
        progress_every: int = 50,
        logger_print=None,
        verbose: bool = True,
    ):
        if int(iterations) <= 0:
            raise ValueError(f"iterations must be positive, got {iterations}")
        self.iterations = int(iterations)
        self.revenue_scale = float(revenue_scale)
        self.rng = rng if rng is not None else np.random.default_rng(seed)
        self.progress = progress
        self.should_stop = should_stop
        self.progress_every = max(1, int(progress_every))
        self._log = resolve_logger(logger_print, verbose)
        self._tlog = StageLogger(self._log)

    @staticmethod
    def _price_codes(observations: pd.DataFrame, prices: np.ndarray) -> np.ndarray:
        p = observations["price"].to_numpy(dtype=float)
        idx = np.searchsorted(prices, p)
        idx_c = np.clip(idx, 0, max(len(prices) - 1, 0))
        hit = (idx < len(prices)) & (prices[idx_c] == p)
        return np.where(hit, idx_c, -1)

    def simulate(self, observations: pd.DataFrame, prices: np.ndarray) -> np.ndarray:
        """Returns a (B, len(prices)) array of resampled demand."""
        prices = np.asarray(prices, dtype=float)
        k = len(prices)
        B = self.iterations
        sims = np.zeros((B, k), dtype=float)
        if k == 0 or observations.empty:
            return sims

        # grouped once: respondent code + price slot per observation
        resp, n = DataEng.respondent_codes(observations)
        slot = self._price_codes(observations, prices)
        valid = slot >= 0
        resp, slot = resp[valid], slot[valid]
        w = observations["w"].to_numpy(dtype=float)[valid]
        wbuy = w * observations["buy"].to_numpy(dtype=float)[valid]

        for b in range(B):
            if self.should_stop is not None and self.should_stop():
                raise BootstrapCancelled(f"bootstrap cancelled after {b}/{B} iterations")

            drawn = self.rng.integers(0, n, size=n)
            mult = np.bincount(drawn, minlength=n)[resp]
            sum_w = np.bincount(slot, weights=w * mult, minlength=k)
            sum_wbuy = np.bincount(slot, weights=wbuy * mult, minlength=k)
            sims[b] = np.divide(
                sum_wbuy, sum_w, out=np.zeros(k, dtype=float), where=sum_w > 0
            )

            done = b + 1
            if self.progress is not None and (
                done % self.progress_every == 0 or done == B
            ):
                self.progress(done, B)

        return sims

    def bounds(self, sims: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        B = sims.shape[0]
        ordered = np.sort(sims, axis=0)
        lo = ordered[int(math.floor(Defaults.BOOT_LO_RANK * B))]
        hi = ordered[int(math.floor(Defaults.BOOT_HI_RANK * B))]
        return lo, hi

    def compute(self, observations: pd.DataFrame, aggregated: pd.DataFrame) -> pd.DataFrame:
        """Returns a copy of ``aggregated`` with demand/revenue bounds attached."""
        if aggregated.empty:
            return aggregated.copy()

        prices = aggregated["price"].to_numpy(dtype=float)
        _, n = DataEng.respondent_codes(observations)
        self._tlog("bootstrap", badge="⏳", n=n, prices=len(prices), B=self.iterations)

        sims = self.simulate(observations, prices)
        lo, hi = self.bounds(sims)

        out = aggregated.copy()
        out["demand_lo"] = lo
        out["demand_hi"] = hi
        out["revenue_lo"] = prices * lo * self.revenue_scale
        out["revenue_hi"] = prices * hi * self.revenue_scale

        self._tlog(
            "bootstrap",
            badge="✅",
            n=n,
            prices=len(prices),
            B=self.iterations,
            mean_width=float(np.mean(hi - lo)),
        )
        return out


class Interpolator:
    """
    Piecewise-linear curve over [min price, max price].

    Bounds are only carried where *both* bracketing price points have them.
    Revenue is rebuilt from the interpolated demand, not interpolated itself.
    """

    INTERP_COLS = ["demand"] + BOUND_COLS

    def __init__(
        self,
        steps: int = Defaults.STEPS,
        revenue_scale: float = Defaults.REVENUE_SCALE,
    ):
        if int(steps) < 1:
            raise ValueError(f"steps must be >= 1, got {steps}")
        self.steps = int(steps)
        self.revenue_scale = float(revenue_scale)

    @staticmethod
    def _lerp(x, x0, x1, y0, y1) -> np.ndarray:
        with np.errstate(divide="ignore", invalid="ignore"):
            y = y0 + (x - x0) / (x1 - x0) * (y1 - y0)
        return np.where(x1 == x0, y0, y)

    @staticmethod
    def brackets(prices: np.ndarray, x: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """(last index with price <= x, first index with price >= x), clamped to the curve."""
        last = len(prices) - 1
        i0 = np.clip(np.searchsorted(prices, x, side="right") - 1, 0, last)
        i1 = np.clip(np.searchsorted(prices, x, side="left"), 0, last)
        return i0, i1

    def at(self, aggregated: pd.DataFrame, x) -> pd.DataFrame:
        if aggregated.empty:
            return _empty_curve()
        CurveAggregator.check_sorted(aggregated)

        x = np.atleast_1d(np.asarray(x, dtype=float))
        prices = aggregated["price"].to_numpy(dtype=float)
        i0, i1 = self.brackets(prices, x)
        x0, x1 = prices[i0], prices[i1]

        out = pd.DataFrame({"price": x, "n_rows": np.zeros(len(x), dtype=np.int64)})
        for c in self.INTERP_COLS:
            y = (
                aggregated[c].to_numpy(dtype=float)
                if c in aggregated.columns
                else np.full(len(prices), np.nan)
            )
            out[c] = self._lerp(x, x0, x1, y[i0], y[i1])

        out["revenue"] = out["price"] * out["demand"] * self.revenue_scale
        out["revenue_scaled"] = np.nan
        return out[CURVE_COLS]

    def compute(self, aggregated: pd.DataFrame) -> pd.DataFrame:
        if aggregated.empty:
            return _empty_curve()
        p_min = float(aggregated["price"].iloc[0])
        p_max = float(aggregated["price"].iloc[-1])
        grid = np.linspace(p_min, p_max, self.steps + 1)
        return self.at(aggregated, grid)


class Optimizer:
    def __init__(
        self,
        show_range: bool = False,
        range_method: str = "pct",
        retention_pct: float = Defaults.RETENTION_PCT,
    ):
        self.show_range = bool(show_range)
        self.range_method = range_method
        self.retention_pct = float(retention_pct)

    @staticmethod
    def argmax(frame: pd.DataFrame, rev_col: str = "revenue") -> int:
        """Left-to-right scan; the first maximum wins."""
        if frame.empty:
            raise ValueError("cannot optimize an empty curve")
        return int(np.argmax(frame[rev_col].to_numpy(dtype=float)))

    @staticmethod
    def pick_max(frame: pd.DataFrame, rev_col: str = "revenue") -> pd.Series:
        return frame.iloc[Optimizer.argmax(frame, rev_col)].copy()

    @staticmethod
    def max_revenue(optimal: pd.Series) -> float:
        r = float(optimal["revenue"])
        # zero/NaN peak would blow up the scaling
        return r if (math.isfinite(r) and r != 0) else 1.0

    @staticmethod
    def scaled(frame: pd.DataFrame, max_rev: float) -> pd.DataFrame:
        return frame.assign(revenue_scaled=frame["revenue"] / max_rev)

    def threshold(self, optimal: pd.Series, max_rev: float) -> float:
        if self.range_method == "pct":
            return max_rev * (self.retention_pct / 100.0)
        lo = optimal.get("revenue_lo", np.nan)
        if lo is not None and pd.notna(lo):
            return float(lo)
        return max_rev * Defaults.STAT_FALLBACK_SHARE

    @staticmethod
    def price_range(curve: pd.DataFrame, threshold: float) -> Dict[str, Optional[float]]:
        """
        Min/max envelope of every price whose revenue clears the threshold.
        Not contiguous on a multi-modal curve.
        """
        above = curve.loc[curve["revenue"] >= threshold, "price"]
        if above.empty:
            return {"low": None, "high": None}
        return {"low": float(above.min()), "high": float(above.max())}

    def run(self, aggregated: pd.DataFrame, curve: pd.DataFrame) -> dict:
        idx = self.argmax(curve)
        max_rev = self.max_revenue(curve.iloc[idx])

        curve = self.scaled(curve, max_rev)
        aggregated = self.scaled(aggregated, max_rev)
        optimal = curve.iloc[idx].copy()

        price_range = {"low": None, "high": None}
        if self.show_range:
            price_range = self.price_range(curve, self.threshold(optimal, max_rev))

        return {
            "aggregated": aggregated,
            "curve": curve,
            "optimal": optimal,
            "price_range": price_range,
        }


@dataclass(frozen=True, eq=False)
class AnalysisResult:
    aggregated: pd.DataFrame
    curve: pd.DataFrame
    optimal: pd.Series
    price_range: Dict[str, Optional[float]]
    effective_sample_size: int
    config: AnalysisConfig = field(default_factory=AnalysisConfig)

    @property
    def opp(self) -> float:
        return float(self.optimal["price"])

    def to_table(self) -> pd.DataFrame:
        return ResultsTable.build(self.aggregated)

    def summary(self) -> dict:
        return ResultsTable.summary(self)


class PricingPipeline:
    def __init__(
        self,
        config: Optional[AnalysisConfig] = None,
        logger_print=None,  # optional explicit logger
        verbose: bool = True,
        *,
        # DI hooks (defaults to the concrete types)
        SegmentFilter=SegmentFilter,
        CurveAggregator=CurveAggregator,
        ClusterBootstrap=ClusterBootstrap,
        Interpolator=Interpolator,
        Optimizer=Optimizer,
    ):
        self.config = config if config is not None else AnalysisConfig()
        self._log = resolve_logger(logger_print, verbose)
        self._tlog = StageLogger(self._log)
        self._verbose = verbose
        self._logger_print = logger_print

        self.SegmentFilter = SegmentFilter
        self.CurveAggregator = CurveAggregator
        self.ClusterBootstrap = ClusterBootstrap
        self.Interpolator = Interpolator
        self.Optimizer = Optimizer

    def analyze(
        self,
        observations: pd.DataFrame,
        *,
        progress: Optional[Callable[[int, int], None]] = None,
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> Optional[AnalysisResult]:
        """
        Full run over one observation snapshot. Returns None when nothing
        survives normalization/filtering. The input frame is never mutated.
        """
        cfg = self.config
        if observations is None or observations.empty:
            return None

        # 1) Filter
        filtered = self.SegmentFilter(cfg.filters).apply(observations)
        if filtered.empty:
            self._log("No observations left after segment filters")
            return None
        _, base_size = DataEng.respondent_codes(filtered)

        # 2) Aggregate
        aggregated = self.CurveAggregator(cfg.revenue_scale).compute(filtered)
        self._tlog("aggregate", n=base_size, prices=len(aggregated), rows=len(filtered))

        # 3) Bootstrap
        if cfg.use_bootstrap:
            boot = self.ClusterBootstrap(
                cfg.boot_iterations,
                cfg.revenue_scale,
                seed=cfg.seed,
                progress=progress,
                should_stop=should_stop,
                logger_print=self._logger_print,
                verbose=self._verbose,
            )
            aggregated = boot.compute(filtered, aggregated)

        # 4) Interpolate
        curve = self.Interpolator(cfg.steps, cfg.revenue_scale).compute(aggregated)

        # 5) Optimize + range
        opt = self.Optimizer(
            show_range=cfg.show_range,
            range_method=cfg.range_method,
            retention_pct=cfg.retention_pct,
        ).run(aggregated, curve)

        self._tlog(
            "optimize",
            badge="🎯",
            opp=float(opt["optimal"]["price"]),
            low="NA" if opt["price_range"]["low"] is None else opt["price_range"]["low"],
            high="NA" if opt["price_range"]["high"] is None else opt["price_range"]["high"],
        )

        return AnalysisResult(
            aggregated=opt["aggregated"],
            curve=opt["curve"],
            optimal=opt["optimal"],
            price_range=opt["price_range"],
            effective_sample_size=base_size,
            config=cfg,
        )

    @classmethod
    def from_records(
        cls,
        records,
        mapping: ColumnMapping,
        config: Optional[AnalysisConfig] = None,
        **kwargs,
    ) -> Optional[AnalysisResult]:
        config = config if config is not None else AnalysisConfig()
        verbose = kwargs.get("verbose", True)
        obs = RowNormalizer(
            mapping,
            use_weights=config.use_weights,
            logger_print=kwargs.get("logger_print"),
            verbose=verbose,
        ).prepare(records)
        return cls(config, **kwargs).analyze(obs)


def analyze(
    observations: pd.DataFrame, config: Optional[AnalysisConfig] = None, **kwargs
) -> Optional[AnalysisResult]:
    """Pure (observations, config) -> AnalysisResult."""
    return PricingPipeline(config, **kwargs).analyze(observations)
