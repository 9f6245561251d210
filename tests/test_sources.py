"""Tests for observation sources and peer-group assignment."""

import sys
from datetime import date
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))
from peer_groups import CsvSnapshotSource, SourceUnavailableError, assign_observations
from schemas import PeerGroup, RunConfig
from score_orchestrator import RunState, ScoringOrchestrator

SNAPSHOT = """fund_id,peer_group_id,as_of_date,is_benchmark,name,one_year_return,expense_ratio
F1,Large Blend,2024-06-30,false,Fund One,10.5%,0.50
F2,Large Blend,2024-06-30,false,Fund Two,N/A,0.20
F3,Large Blend,2024-06-30,true,S&P 500,12.0,
F1,Large Blend,2024-03-31,false,Fund One,"1,050",0.50
S1,Small Value,2024-06-30,no,Small One,5.0,1.1
"""


@pytest.fixture
def snapshot_csv(tmp_path):
    path = tmp_path / "snapshot.csv"
    path.write_text(SNAPSHOT)
    return path


class TestCsvSnapshotSource:
    def test_peer_groups(self, snapshot_csv):
        src = CsvSnapshotSource(snapshot_csv)
        groups = src.get_peer_groups(date(2024, 6, 30))
        assert [g.group_id for g in groups] == ["Large Blend", "Small Value"]
        assert groups[0].member_fund_ids == frozenset({"F1", "F2", "F3"})

    def test_observations_parsed(self, snapshot_csv):
        src = CsvSnapshotSource(snapshot_csv)
        obs = {o.fund_id: o for o in src.get_observations(date(2024, 6, 30))}
        assert obs["F1"].value("one_year_return") == pytest.approx(10.5)
        assert obs["F1"].name == "Fund One"
        assert obs["F2"].value("one_year_return") is None
        assert obs["F3"].value("expense_ratio") is None
        assert obs["F3"].is_benchmark
        assert not obs["S1"].is_benchmark

    def test_group_filter_and_dates(self, snapshot_csv):
        src = CsvSnapshotSource(snapshot_csv)
        assert [o.fund_id for o in src.get_observations("2024-06-30", "Small Value")] == ["S1"]
        march = src.get_observations(date(2024, 3, 31))
        assert len(march) == 1
        assert march[0].value("one_year_return") == pytest.approx(1050.0)

    def test_missing_file(self, tmp_path):
        src = CsvSnapshotSource(tmp_path / "nope.csv")
        with pytest.raises(SourceUnavailableError, match="Cannot read snapshot"):
            src.get_peer_groups(date(2024, 6, 30))

    def test_missing_required_columns(self, tmp_path):
        path = tmp_path / "bad.csv"
        path.write_text("fund_id,one_year_return\nF1,1.0\n")
        with pytest.raises(SourceUnavailableError, match="missing required columns"):
            CsvSnapshotSource(path).get_observations(date(2024, 6, 30))

    def test_orchestrator_fails_on_unreadable_snapshot(self, tmp_path):
        orch = ScoringOrchestrator.from_config(CsvSnapshotSource(tmp_path / "nope.csv"),
                                               RunConfig())
        with pytest.raises(SourceUnavailableError):
            orch.run(date(2024, 6, 30))
        assert orch.last_run.state == RunState.FAILED

    def test_orchestrator_scores_csv(self, snapshot_csv):
        orch = ScoringOrchestrator.from_config(CsvSnapshotSource(snapshot_csv), RunConfig())
        run = orch.run(date(2024, 6, 30))
        assert run.ok
        assert {r.fund_id for r in run.results} == {"F1", "F2", "F3", "S1"}


class TestAssignObservations:
    def test_duplicate_observation(self, make_obs, as_of):
        groups = [PeerGroup(group_id="G", member_fund_ids=frozenset({"A"}))]
        obs = [make_obs("A", "G", x=1.0), make_obs("A", "G", x=2.0)]
        buckets, skipped = assign_observations(groups, obs, as_of)
        assert buckets["G"][0].value("x") == 1.0
        assert [s.reason for s in skipped] == ["duplicate_observation"]

    def test_fund_in_two_groups_kept_once(self, make_obs, as_of):
        groups = [PeerGroup(group_id="B", member_fund_ids=frozenset({"A"})),
                  PeerGroup(group_id="A", member_fund_ids=frozenset({"A"}))]
        buckets, skipped = assign_observations(groups, [make_obs("A", "B", x=1.0)], as_of)
        assert [o.fund_id for o in buckets["A"]] == ["A"]
        assert buckets["B"] == []
        assert skipped == []

    def test_as_of_mismatch(self, make_obs, as_of):
        groups = [PeerGroup(group_id="G", member_fund_ids=frozenset({"A"}))]
        stale = make_obs("A", "G", as_of_date=date(2020, 1, 31), x=1.0)
        buckets, skipped = assign_observations(groups, [stale], as_of)
        assert [s.reason for s in skipped] == ["as_of_mismatch", "missing_observation"]
        assert buckets["G"] == []

    def test_buckets_sorted_by_fund(self, make_obs, as_of):
        groups = [PeerGroup(group_id="G", member_fund_ids=frozenset({"C", "A", "B"}))]
        obs = [make_obs(f, "G", x=1.0) for f in ("B", "C", "A")]
        buckets, _ = assign_observations(groups, obs, as_of)
        assert [o.fund_id for o in buckets["G"]] == ["A", "B", "C"]
