# logged_funcs.py
# timestamped console logging shared by the pipeline stages
from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional


def stamped_print(msg: str) -> None:
    """Timestamped console log."""
    print(f"[{datetime.now().strftime('%H:%M:%S')}] {msg}", flush=True)


def noop(*args, **kwargs) -> None:
    return None


def resolve_logger(
    logger_print: Optional[Callable[[str], None]] = None, verbose: bool = True
) -> Callable[[str], None]:
    if logger_print is not None:
        return logger_print
    return stamped_print if verbose else noop


class StageLogger:
    """
    One aligned ``key = value | ...`` line per pipeline stage.
    Column widths are sticky so consecutive lines keep their pipes lined up.
    """

    ORDER = ["stage", "n", "prices", "B", "opp", "low", "high"]

    def __init__(self, log: Callable[[str], None]):
        self._log = log
        self._w = {"stage": 10, "n": 5, "prices": 4, "B": 4}
        self._kw = max(len(k) for k in self.ORDER)

    @staticmethod
    def _val_str(v) -> str:
        if isinstance(v, bool):
            return str(v)
        if isinstance(v, (int, float)):
            return f"{float(v):.6g}"
        return str(v)

    def _pp_kv(self, d: dict) -> str:
        parts = []
        keys = [k for k in self.ORDER if k in d] + sorted(
            k for k in d if k not in self.ORDER
        )
        for k in keys:
            s = self._val_str(d[k])
            self._w[k] = max(self._w.get(k, 0), len(s))
            self._kw = max(self._kw, len(k))
            parts.append(f"{k:>{self._kw}} = {s:>{self._w[k]}}")
        return " | ".join(parts)

    def __call__(self, stage: str, badge: Optional[str] = None, **kwargs) -> None:
        line = self._pp_kv(dict(stage=stage, **kwargs))
        prefix = (badge + " ") if badge else ""
        self._log(f"{prefix}{line}")
