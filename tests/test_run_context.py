"""Tests for run artifacts, instrumentation and the command-line entry point."""

import json
import sys
from pathlib import Path

import pandas as pd
import pytest
import yaml

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))
import run_scoring
from instrumentation import EventLog, trace_event
from run_context import RunContext
from schemas import SkippedItem

ROOT = Path(__file__).resolve().parent.parent


# =====================================================================
# RUN CONTEXT
# =====================================================================

class TestRunContext:
    def test_artifacts_written(self, tmp_path, cfg):
        ctx = RunContext(run_id="test123", runs_dir=tmp_path)
        try:
            ctx.save_config(cfg)
            ctx.save_skipped([SkippedItem(kind="fund", id="A", group_id="G",
                                          reason="no_usable_metrics")])
            ctx.save_artifact("scores", pd.DataFrame({"fund_id": ["A"], "score": [50.0]}))
            ctx.save_metadata({"as_of": "2024-06-30"})
        finally:
            ctx.close()
        run_dir = tmp_path / "test123"
        assert (run_dir / "config.yaml").exists()
        assert (run_dir / "scores.parquet").exists()
        skipped = json.loads((run_dir / "skipped.json").read_text())
        assert skipped["count"] == 1
        assert skipped["items"][0]["reason"] == "no_usable_metrics"
        meta = json.loads((run_dir / "meta.json").read_text())
        assert meta["run_id"] == "test123"
        assert meta["as_of"] == "2024-06-30"
        assert "pandas" in meta["packages"]

    def test_json_log_lines(self, tmp_path):
        ctx = RunContext(run_id="logs", runs_dir=tmp_path)
        ctx.log.info("hello", extra={"group": "Large Blend"})
        ctx.close()
        lines = (tmp_path / "logs" / "run.log").read_text().strip().splitlines()
        entries = [json.loads(line) for line in lines]
        hello = next(e for e in entries if e["msg"] == "hello")
        assert hello["group"] == "Large Blend"
        assert hello["level"] == "INFO"

    def test_config_hash_deterministic(self, cfg):
        assert RunContext.config_hash(cfg) == RunContext.config_hash(dict(cfg))

    def test_config_hash_tracks_scoring(self, cfg):
        changed = {**cfg, "scoring": {**cfg["scoring"], "clip_bound": 2.5}}
        assert RunContext.config_hash(cfg) != RunContext.config_hash(changed)

    def test_config_hash_ignores_output(self, cfg):
        changed = {**cfg, "output": {"dir": "elsewhere"}}
        assert RunContext.config_hash(cfg) == RunContext.config_hash(changed)


# =====================================================================
# INSTRUMENTATION
# =====================================================================

class TestInstrumentation:
    def test_records_ok_and_fail(self):
        log = EventLog()
        with trace_event(log, "STATS", "compute"):
            pass
        with pytest.raises(ValueError):
            with trace_event(log, "RANK", "rank", details="g=1"):
                raise ValueError("boom")
        assert [e.status for e in log.events] == ["OK", "FAIL"]
        assert "ValueError: boom" in log.events[1].details
        assert log.failures() == [log.events[1]]
        assert log.events[0].caller.startswith("test_run_context.py")

    def test_none_log_is_noop(self):
        with trace_event(None, "STATS", "noop"):
            value = 1
        assert value == 1

    def test_flush_all(self, tmp_path):
        log = EventLog()
        log.record("WRITE", "write | csv", 12.0)
        log.flush_all(tmp_path)
        assert (tmp_path / "run_log.csv").exists()
        md = (tmp_path / "run_log.md").read_text()
        assert "write \\| csv" in md
        assert "Total events: 1" in md


# =====================================================================
# CLI
# =====================================================================

SNAPSHOT_ROWS = [
    ("F1", "Large Blend", 10.0, 0.5), ("F2", "Large Blend", 12.0, 0.2),
    ("F3", "Large Blend", 8.0, 0.9), ("F4", "Large Blend", 15.0, 0.4),
    ("F5", "Large Blend", 11.0, 0.3), ("S1", "Small Value", 5.0, 1.0),
    ("S2", "Small Value", 7.0, 0.8), ("S3", "Small Value", 6.0, 1.2),
]


@pytest.fixture
def cli_env(tmp_path, cfg, monkeypatch):
    snapshot = tmp_path / "snapshot.csv"
    pd.DataFrame([
        {"fund_id": f, "peer_group_id": g, "as_of_date": "2024-06-30",
         "one_year_return": r, "expense_ratio": e}
        for f, g, r, e in SNAPSHOT_ROWS
    ]).to_csv(snapshot, index=False)
    out_dir = tmp_path / "output"
    config = tmp_path / "config.yaml"
    config.write_text(yaml.safe_dump({**cfg, "output": {**cfg["output"], "dir": str(out_dir)}}))
    runs_dir = tmp_path / "runs"
    monkeypatch.setattr(run_scoring, "RunContext",
                        lambda verbose=False: RunContext(runs_dir=runs_dir, verbose=verbose))
    return snapshot, config, out_dir, runs_dir


class TestCli:
    def test_bulk_run(self, cli_env):
        snapshot, config, out_dir, runs_dir = cli_env
        rc = run_scoring.main(["--snapshot", str(snapshot), "--config", str(config)])
        assert rc == 0
        df = pd.read_csv(out_dir / "fund_scores_2024-06-30.csv")
        assert len(df) == 8
        assert (out_dir / "fund_scores.xlsx").exists()
        assert (out_dir / "run_log.md").exists()
        run_dir = next(runs_dir.iterdir())
        meta = json.loads((run_dir / "meta.json").read_text())
        assert meta["funds_scored"] == 8
        assert meta["state_history"][-1] == "done"

    def test_snapshot_engine_matches(self, cli_env):
        snapshot, config, out_dir, _ = cli_env
        assert run_scoring.main(["--snapshot", str(snapshot), "--config", str(config),
                                 "--no-excel"]) == 0
        a = pd.read_csv(out_dir / "fund_scores_2024-06-30.csv").set_index("fund_id")
        assert run_scoring.main(["--snapshot", str(snapshot), "--config", str(config),
                                 "--no-excel", "--engine", "snapshot"]) == 0
        b = pd.read_csv(out_dir / "fund_scores_2024-06-30.csv").set_index("fund_id")
        for fid in a.index:
            assert abs(a.loc[fid, "composite_score"] - b.loc[fid, "composite_score"]) < 1e-6
            assert a.loc[fid, "percentile"] == pytest.approx(b.loc[fid, "percentile"])

    def test_snapshot_engine_summary_labelled(self, cli_env, capsys):
        snapshot, config, _, _ = cli_env
        assert run_scoring.main(["--snapshot", str(snapshot), "--config", str(config),
                                 "--no-excel", "--engine", "snapshot"]) == 0
        out = capsys.readouterr().out
        assert "Score files engine:       snapshot (summary from orchestrator)" in out
        assert "Funds scored:             8" in out

    def test_single_fund(self, cli_env, capsys):
        snapshot, config, _, _ = cli_env
        assert run_scoring.main(["--snapshot", str(snapshot), "--config", str(config),
                                 "--fund", "F4"]) == 0
        assert "F4 [Large Blend]" in capsys.readouterr().out
        assert run_scoring.main(["--snapshot", str(snapshot), "--config", str(config),
                                 "--fund", "NOPE"]) == 1

    def test_missing_snapshot(self, cli_env, tmp_path):
        _, config, _, _ = cli_env
        assert run_scoring.main(["--snapshot", str(tmp_path / "nope.csv"),
                                 "--config", str(config)]) == 2

    def test_bad_config_exits(self, cli_env, tmp_path):
        snapshot = cli_env[0]
        bad = tmp_path / "bad.yaml"
        bad.write_text("metrics:\n  - {id: a, weight: -1}\n")
        with pytest.raises(SystemExit):
            run_scoring.main(["--snapshot", str(snapshot), "--config", str(bad)])
