# helpers.py
# ---------------------------------------------------------------------
# Defaults, configuration, coercion, caching and export helpers for the
# Gabor-Granger engine
# ---------------------------------------------------------------------

from __future__ import annotations

import hashlib
import math
import re
from collections import OrderedDict
from dataclasses import dataclass, fields
from typing import Any, Dict, Iterable, List, Optional, Tuple

import numpy as np
import pandas as pd

# =====================================================================
#                        Constants / Defaults
# =====================================================================


class Defaults:
    STEPS = 100
    BOOT_ITERATIONS = 300
    REVENUE_SCALE = 100.0
    RETENTION_PCT = 95.0
    PRICE_PATTERN = r"\d+"

    # statistical range falls back to this share of max revenue w/o bounds
    STAT_FALLBACK_SHARE = 0.95

    # percentile ranks into the sorted bootstrap draws (no interpolation)
    BOOT_LO_RANK = 0.05
    BOOT_HI_RANK = 0.95


AFFIRMATIVE = frozenset({"1", "yes", "y", "true", "on"})
ID_HINT = re.compile(r"id|resp", re.IGNORECASE)

DATA_FORMATS = ("long", "wide")
RANGE_METHODS = ("pct", "statistical")

# observation frame
OBS_COLS = ["respondent_id", "price", "buy", "w"]

# aggregated / interpolated frames
BOUND_COLS = ["demand_lo", "demand_hi", "revenue_lo", "revenue_hi"]
CURVE_COLS = ["price", "n_rows", "demand", "revenue"] + BOUND_COLS + ["revenue_scaled"]


# =====================================================================
#                           Configuration
# =====================================================================


@dataclass(frozen=True)
class ColumnMapping:
    """
    Which raw columns feed the normalizer.

    long format : one (price_col, buy_col) pair per record
    wide format : one purchase column per price; the price is pulled from the
                  column *name* with ``price_pattern`` (first match wins)
    """

    id_col: Optional[str] = None
    data_format: str = "long"
    price_col: Optional[str] = None
    buy_col: Optional[str] = None
    wide_price_cols: Tuple[str, ...] = ()
    price_pattern: str = Defaults.PRICE_PATTERN
    weight_col: Optional[str] = None
    segment_cols: Tuple[str, ...] = ()

    def __post_init__(self):
        if self.data_format not in DATA_FORMATS:
            raise ValueError(
                f"data_format must be one of {DATA_FORMATS}, got {self.data_format!r}"
            )
        object.__setattr__(self, "wide_price_cols", tuple(self.wide_price_cols or ()))
        object.__setattr__(self, "segment_cols", tuple(self.segment_cols or ()))

    def is_configured(self) -> bool:
        if not self.id_col:
            return False
        if self.data_format == "long":
            return bool(self.price_col and self.buy_col)
        return bool(self.wide_price_cols and self.price_pattern)

    def signature(self) -> str:
        return "|".join(f"{f.name}={getattr(self, f.name)!r}" for f in fields(self))


@dataclass(frozen=True)
class AnalysisConfig:
    revenue_scale: float = Defaults.REVENUE_SCALE
    use_weights: bool = False
    use_bootstrap: bool = False
    boot_iterations: int = Defaults.BOOT_ITERATIONS
    show_range: bool = False
    range_method: str = "pct"  # "pct" or "statistical"
    retention_pct: float = Defaults.RETENTION_PCT
    steps: int = Defaults.STEPS
    seed: Optional[int] = None
    # stored as sorted (segment, allowed labels) pairs; a mapping is accepted
    filters: Tuple[Tuple[str, Tuple[str, ...]], ...] = ()

    def __post_init__(self):
        if int(self.boot_iterations) <= 0:
            raise ValueError(
                f"boot_iterations must be positive, got {self.boot_iterations}"
            )
        if int(self.steps) < 1:
            raise ValueError(f"steps must be >= 1, got {self.steps}")
        if self.range_method not in RANGE_METHODS:
            raise ValueError(
                f"range_method must be one of {RANGE_METHODS}, got {self.range_method!r}"
            )
        if not math.isfinite(float(self.revenue_scale)):
            raise ValueError("revenue_scale must be a finite number")

        object.__setattr__(self, "boot_iterations", int(self.boot_iterations))
        object.__setattr__(self, "steps", int(self.steps))
        object.__setattr__(self, "revenue_scale", float(self.revenue_scale))
        object.__setattr__(self, "retention_pct", float(self.retention_pct))
        object.__setattr__(
            self,
            "filters",
            tuple(
                sorted(
                    (str(seg), tuple(str(v) for v in (allowed or ())))
                    for seg, allowed in dict(self.filters or {}).items()
                )
            ),
        )

    def signature(self) -> str:
        parts = [
            f"{f.name}={getattr(self, f.name)!r}"
            for f in fields(self)
            if f.name != "filters"
        ]
        filt = ";".join(
            f"{seg}:{','.join(sorted(allowed))}"
            for seg, allowed in self.filters
        )
        return "|".join(parts) + f"|filters={filt}"


# =====================================================================
#                         Data engineering
# =====================================================================


class DataEng:
    @staticmethod
    def to_number(val: Any) -> float:
        """Best-effort numeric coercion; anything unparseable becomes NaN."""
        if val is None:
            return float("nan")
        if isinstance(val, (bool, np.bool_)):
            return float(val)
        if isinstance(val, (int, float, np.integer, np.floating)):
            return float(val)
        if isinstance(val, str):
            s = val.strip()
            # float() also takes digit-grouping underscores
            if not s or "_" in s:
                return float("nan")
            try:
                return float(s)
            except ValueError:
                return float("nan")
        return float("nan")

    @staticmethod
    def map_buy(val: Any) -> int:
        if isinstance(val, (bool, np.bool_)):
            return 1 if val else 0
        if isinstance(val, (int, float, np.integer, np.floating)):
            return 1 if val > 0 else 0
        if isinstance(val, str):
            return 1 if val.strip().lower() in AFFIRMATIVE else 0
        return 0

    @staticmethod
    def resolve_weight(val: Any) -> float:
        # zero / unparseable would silently erase a respondent
        w = DataEng.to_number(val)
        if not math.isfinite(w) or w == 0:
            return 1.0
        return w

    @staticmethod
    def extract_price(column: str, pattern: "re.Pattern[str]") -> float:
        m = pattern.search(str(column))
        if m is None:
            return float("nan")
        return DataEng.to_number(m.group(0))

    @staticmethod
    def as_label(val: Any) -> str:
        if val is None:
            return ""
        if isinstance(val, float) and math.isnan(val):
            return ""
        return str(val)

    @staticmethod
    def guess_id_column(columns: Iterable[str]) -> Optional[str]:
        for c in columns:
            if ID_HINT.search(str(c)):
                return c
        return None

    @staticmethod
    def segment_options(observations: pd.DataFrame, segment: str) -> List[str]:
        if observations is None or segment not in observations.columns:
            return []
        labels = observations[segment].map(DataEng.as_label)
        return sorted(set(labels.tolist()))

    @staticmethod
    def respondent_codes(observations: pd.DataFrame) -> Tuple[np.ndarray, int]:
        """Integer code per observation + number of distinct respondents (None counts as one)."""
        codes, uniques = pd.factorize(
            observations["respondent_id"], use_na_sentinel=False
        )
        return codes.astype(np.int64, copy=False), int(len(uniques))


# =====================================================================
#                         Caching / Build
# =====================================================================


class Cache:
    @staticmethod
    def frame_sig(df: pd.DataFrame) -> str:
        h = hashlib.sha1()
        h.update("|".join(map(str, df.columns)).encode())
        if len(df):
            snap = df
            if "respondent_id" in df.columns:
                # str() fallback on mixed object ids would merge 1 and "1"
                codes, _ = DataEng.respondent_codes(df)
                snap = df.assign(respondent_id=codes)
            h.update(pd.util.hash_pandas_object(snap, index=False).to_numpy().tobytes())
        return h.hexdigest()

    @staticmethod
    def signature(
        observations: pd.DataFrame, config: AnalysisConfig, version: str = "v1"
    ) -> str:
        sig_str = f"{Cache.frame_sig(observations)}:{config.signature()}:ver:{version}"
        return hashlib.sha1(sig_str.encode()).hexdigest()


class ResultCache:
    """Bounded LRU of signature -> AnalysisResult."""

    def __init__(self, max_entries: int = 16):
        self.max_entries = max(1, int(max_entries))
        self._store: "OrderedDict[str, Any]" = OrderedDict()

    def get(self, key: str):
        if key not in self._store:
            return None
        self._store.move_to_end(key)
        return self._store[key]

    def put(self, key: str, value) -> None:
        self._store[key] = value
        self._store.move_to_end(key)
        while len(self._store) > self.max_entries:
            self._store.popitem(last=False)

    def clear(self) -> None:
        self._store.clear()

    def __contains__(self, key: str) -> bool:
        return key in self._store

    def __len__(self) -> int:
        return len(self._store)


# =====================================================================
#                        Export table / summary
# =====================================================================


class ResultsTable:
    EXPORT_COLS = {
        "price": "Price",
        "n_rows": "N",
        "demand": "Demand",
        "revenue": "Revenue",
        "demand_lo": "Demand_Lo",
        "demand_hi": "Demand_Hi",
        "revenue_lo": "Revenue_Lo",
        "revenue_hi": "Revenue_Hi",
    }

    @staticmethod
    def build(aggregated: pd.DataFrame) -> pd.DataFrame:
        if not isinstance(aggregated, pd.DataFrame) or aggregated.empty:
            return pd.DataFrame(columns=list(ResultsTable.EXPORT_COLS.values()))
        present = [c for c in ResultsTable.EXPORT_COLS if c in aggregated.columns]
        return (
            aggregated[present]
            .rename(columns=ResultsTable.EXPORT_COLS)
            .reset_index(drop=True)
        )

    @staticmethod
    def columns(table: pd.DataFrame) -> List[Dict[str, Any]]:
        if not isinstance(table, pd.DataFrame) or table.empty:
            return []

        integer_columns = {"N"}
        ratio_columns = {"Demand", "Demand_Lo", "Demand_Hi"}
        money_columns = {"Price", "Revenue", "Revenue_Lo", "Revenue_Hi"}

        cols: List[Dict[str, Any]] = []
        for c in table.columns:
            if c in integer_columns:
                fmt = {"specifier": ",d"}
            elif c in ratio_columns:
                fmt = {"specifier": ".1%"}
            elif c in money_columns:
                fmt = {"specifier": ",.2f"}
            else:
                cols.append({"name": c.replace("_", " "), "id": c})
                continue
            cols.append(
                {"name": c.replace("_", " "), "id": c, "type": "numeric", "format": fmt}
            )
        return cols

    @staticmethod
    def segmentation_text(filters) -> str:
        txt = "; ".join(
            f"{seg}: {', '.join(allowed)}"
            for seg, allowed in dict(filters).items()
            if allowed
        )
        return txt or "None"

    @staticmethod
    def range_text(config: AnalysisConfig) -> str:
        if not config.show_range:
            return "Analysis focused on peak OPP only."
        if config.range_method == "pct":
            return f"Revenue Retention: > {config.retention_pct:g}% of Max"
        return "Statistical Confidence Lower Bound"

    @staticmethod
    def summary(result) -> Dict[str, Any]:
        """Headline numbers + parameter text for report exporters."""
        opt = result.optimal
        cfg = result.config
        return {
            "opp_price": float(opt["price"]),
            "opp_demand": float(opt["demand"]),
            "opp_revenue": float(opt["revenue"]),
            "range_low": result.price_range.get("low"),
            "range_high": result.price_range.get("high"),
            "effective_sample_size": int(result.effective_sample_size),
            "revenue_scale": cfg.revenue_scale,
            "segmentation": ResultsTable.segmentation_text(cfg.filters),
            "range_method": ResultsTable.range_text(cfg),
        }
