#!/usr/bin/env python3
"""
Run Context — per-run directory, logging and provenance for scoring runs.

Each CLI invocation gets runs/<run_id>/ holding:
    run.log          JSON-lines log of the run and of the engine modules
    config.yaml      the config exactly as loaded
    scores.parquet   the scored table
    skipped.json     funds/groups dropped from the run, with reasons
    meta.json        as-of date, config hash, timings, git revision, versions

    with RunContext() as ctx:
        ctx.save_config(cfg)
        ...
        ctx.save_metadata({"as_of": "2024-06-30"})
"""

import hashlib
import importlib.metadata
import json
import logging
import platform
import subprocess
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional

import pandas as pd
import yaml

from schemas import SkippedItem

ROOT = Path(__file__).resolve().parent
RUNS_DIR = ROOT / "runs"

# Engine module loggers routed into the run log.
ENGINE_LOGGERS = ("score_engine", "score_orchestrator", "peer_groups",
                  "snapshot_scorer", "metric_catalog")

# Keys of the config that change scores; output paths and review
# thresholds are excluded so they do not alter the hash.
SCORING_KEYS = ("scoring", "metrics", "weight_overrides")

# Domain fields a log call may pass through ``extra=``.
LOG_FIELDS = ("run_id", "as_of", "group", "fund", "metric", "phase", "count")

TRACKED_PACKAGES = ("numpy", "pandas", "scipy", "pydantic", "pyyaml",
                    "openpyxl", "pyarrow")


class _JsonLineFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        line = {
            "time": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "func": record.funcName,
            "msg": record.getMessage(),
        }
        line.update({k: getattr(record, k) for k in LOG_FIELDS
                     if getattr(record, k, None) is not None})
        if record.exc_info:
            line["exc"] = self.formatException(record.exc_info)
        return json.dumps(line, default=str)


class RunContext:
    """Owns one scoring run's directory, log handlers and provenance files."""

    def __init__(self, run_id: Optional[str] = None,
                 runs_dir: Path = RUNS_DIR, verbose: bool = False):
        self.run_id = run_id or uuid.uuid4().hex[:12]
        self.started = datetime.now(timezone.utc)
        self.run_dir = Path(runs_dir) / self.run_id
        self.run_dir.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(self.run_dir / "run.log", encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(_JsonLineFormatter())
        console = logging.StreamHandler(sys.stdout)
        console.setLevel(logging.DEBUG if verbose else logging.INFO)
        console.setFormatter(logging.Formatter("%(asctime)s %(levelname)-7s %(name)s: %(message)s",
                                               datefmt="%H:%M:%S"))
        self._handlers = (file_handler, console)

        self.log = logging.getLogger(f"fund_scoring.run.{self.run_id}")
        self.log.propagate = False
        self._loggers = [self.log] + [logging.getLogger(n) for n in ENGINE_LOGGERS]
        for lg in self._loggers:
            lg.setLevel(logging.DEBUG)
            for h in self._handlers:
                lg.addHandler(h)
        self.log.info("Run %s started", self.run_id, extra={"run_id": self.run_id})

    def __enter__(self) -> "RunContext":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def close(self):
        """Detach this run's handlers from every logger it touched."""
        for lg in self._loggers:
            for h in self._handlers:
                lg.removeHandler(h)
        for h in self._handlers:
            h.close()

    # ------------------------------------------------------------------
    # Provenance
    # ------------------------------------------------------------------
    def save_config(self, cfg: dict) -> Path:
        path = self.run_dir / "config.yaml"
        path.write_text(yaml.safe_dump(cfg, sort_keys=False), encoding="utf-8")
        self.log.debug("Config written to %s", path, extra={"phase": "init"})
        return path

    @staticmethod
    def config_hash(cfg: dict) -> str:
        """sha256 prefix over the score-affecting parts of a raw config dict."""
        subset = {k: cfg.get(k) for k in SCORING_KEYS}
        blob = json.dumps(subset, sort_keys=True, default=str).encode()
        return hashlib.sha256(blob).hexdigest()[:12]

    def save_artifact(self, name: str, df: pd.DataFrame) -> Path:
        path = self.run_dir / f"{name}.parquet"
        df.to_parquet(path, index=False)
        self.log.info("Saved %s (%d rows)", path.name, len(df),
                      extra={"phase": "artifact", "count": len(df)})
        return path

    def save_skipped(self, skipped: Iterable[SkippedItem]) -> Path:
        items = [s.model_dump() for s in skipped]
        path = self.run_dir / "skipped.json"
        path.write_text(json.dumps({"count": len(items), "items": items}, indent=2),
                        encoding="utf-8")
        if items:
            self.log.info("%d funds/groups skipped", len(items),
                          extra={"phase": "artifact", "count": len(items)})
        return path

    def save_metadata(self, extra: Optional[dict] = None) -> Path:
        finished = datetime.now(timezone.utc)
        meta = {
            "run_id": self.run_id,
            "started": self.started.isoformat(),
            "finished": finished.isoformat(),
            "elapsed_seconds": round((finished - self.started).total_seconds(), 3),
            "git_revision": git_revision(),
            "python": platform.python_version(),
            "platform": platform.platform(),
            "packages": package_versions(),
            **(extra or {}),
        }
        path = self.run_dir / "meta.json"
        path.write_text(json.dumps(meta, indent=2, default=str), encoding="utf-8")
        return path


def git_revision() -> str:
    """Short commit id of the working tree, or 'unknown' outside git."""
    try:
        out = subprocess.run(["git", "rev-parse", "--short=12", "HEAD"],
                             cwd=ROOT, capture_output=True, text=True, timeout=5)
    except (OSError, subprocess.TimeoutExpired):
        return "unknown"
    return out.stdout.strip() if out.returncode == 0 else "unknown"


def package_versions() -> dict[str, str]:
    versions = {}
    for name in TRACKED_PACKAGES:
        try:
            versions[name] = importlib.metadata.version(name)
        except importlib.metadata.PackageNotFoundError:
            versions[name] = "not installed"
    return versions
