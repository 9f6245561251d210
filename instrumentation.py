#!/usr/bin/env python3
"""
Stage tracing for scoring runs
==============================
Every orchestrator stage (RESOLVE, STATS, NORMALIZE, COMBINE, RANK) and
every CLI read/write is timed into an EventLog. The log is purely
observational: nothing in scoring reads it back. At the end of a run it
is written next to the score files as run_log.csv (one row per event) and
run_log.md (per-stage timing table + full event list).

    log = EventLog()
    with trace_event(log, "STATS", "Group statistics", details="groups=12"):
        ...
    log.flush_all("output/")
"""

import inspect
import threading
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

import pandas as pd

STAGE_ORDER = ["RESOLVE", "STATS", "NORMALIZE", "COMBINE", "RANK", "CALC", "WRITE"]


@dataclass(frozen=True)
class StageEvent:
    seq: int
    at: str
    event_type: str
    operation: str
    duration_ms: float
    caller: str
    status: str = "OK"
    details: str = ""

    @property
    def failed(self) -> bool:
        return self.status != "OK"


class EventLog:
    """Append-only, thread-safe list of StageEvents."""

    def __init__(self):
        self.events: list[StageEvent] = []
        self._lock = threading.Lock()

    def record(self, event_type: str, operation: str, duration_ms: float,
               status: str = "OK", details: str = "",
               caller: Optional[str] = None) -> StageEvent:
        caller = caller or _get_caller(skip=2)
        with self._lock:
            evt = StageEvent(seq=len(self.events) + 1,
                             at=datetime.now().strftime("%H:%M:%S"),
                             event_type=event_type, operation=operation,
                             duration_ms=round(duration_ms, 1), caller=caller,
                             status=status, details=details)
            self.events.append(evt)
        return evt

    def failures(self) -> list[StageEvent]:
        return [e for e in self.events if e.failed]

    def total_ms(self, event_type: Optional[str] = None) -> float:
        return sum(e.duration_ms for e in self.events
                   if event_type is None or e.event_type == event_type)

    def to_frame(self) -> pd.DataFrame:
        cols = [f for f in StageEvent.__dataclass_fields__]
        return pd.DataFrame([asdict(e) for e in self.events], columns=cols)

    def stage_summary(self) -> pd.DataFrame:
        """Count / total / max milliseconds per event type, pipeline order first."""
        df = self.to_frame()
        if df.empty:
            return pd.DataFrame(columns=["event_type", "count", "total_ms", "max_ms", "failures"])
        df["is_fail"] = df["status"] != "OK"
        out = (df.groupby("event_type")
                 .agg(count=("seq", "size"), total_ms=("duration_ms", "sum"),
                      max_ms=("duration_ms", "max"), failures=("is_fail", "sum"))
                 .reset_index())
        rank = {s: i for i, s in enumerate(STAGE_ORDER)}
        out["_order"] = out["event_type"].map(lambda t: rank.get(t, len(rank)))
        return out.sort_values(["_order", "event_type"]).drop(columns="_order").reset_index(drop=True)

    def flush_csv(self, path: str | Path) -> str:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.to_frame().to_csv(path, index=False)
        return str(path)

    def flush_md(self, path: str | Path) -> str:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        lines = [
            "# Scoring Run Log",
            "",
            f"Written {datetime.now():%Y-%m-%d %H:%M:%S}",
            "",
            f"- Total events: {len(self.events)}",
            f"- Traced time: {self.total_ms() / 1000:.2f}s",
            f"- Failures: {len(self.failures())}",
            "",
            "## Stages",
            "",
            _md_table(self.stage_summary()),
            "",
            "## Events",
            "",
            _md_table(self.to_frame()),
        ]
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return str(path)

    def flush_all(self, report_dir: str | Path):
        out = Path(report_dir)
        self.flush_csv(out / "run_log.csv")
        self.flush_md(out / "run_log.md")


def _md_table(df: pd.DataFrame) -> str:
    if df.empty:
        return "_none_"
    header = "| " + " | ".join(df.columns) + " |"
    sep = "|" + "---|" * len(df.columns)
    body = ["| " + " | ".join(str(v).replace("|", "\\|") for v in row) + " |"
            for row in df.itertuples(index=False)]
    return "\n".join([header, sep] + body)


def _get_caller(skip: int = 2) -> str:
    """file:function:line of the frame ``skip`` levels up."""
    try:
        frame = inspect.stack()[skip]
    except IndexError:
        return "unknown"
    return f"{Path(frame.filename).name}:{frame.function}:{frame.lineno}"


@contextmanager
def trace_event(log: Optional[EventLog], event_type: str, operation: str,
                details: str = "", caller: Optional[str] = None):
    """Time the enclosed block into ``log``; FAIL status if it raises.

    With log=None this does nothing, so engine code can trace
    unconditionally.
    """
    if log is None:
        yield
        return
    # _get_caller -> trace_event -> contextmanager __enter__ -> caller
    caller = caller or _get_caller(skip=3)
    status = "OK"
    t0 = time.perf_counter()
    try:
        yield
    except Exception as exc:
        status = "FAIL"
        note = f"{type(exc).__name__}: {exc}"
        details = f"{details}; {note}" if details else note
        raise
    finally:
        log.record(event_type, operation, (time.perf_counter() - t0) * 1000,
                   status=status, details=details, caller=caller)
