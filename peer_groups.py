#!/usr/bin/env python3
"""
Peer Group Resolver and observation sources.

The engine consumes two collaborator calls:

    get_peer_groups(as_of_date)            -> list[PeerGroup]
    get_observations(as_of_date, group_id) -> list[FundObservation]

Any failure to reach the source surfaces as SourceUnavailableError, which
is fatal for a scoring run (no partial scoring of a stale universe).
Localized data problems (a member with no observation, an observation
whose fund sits in no peer group) are dropped with a warning.
"""

import logging
from collections import defaultdict
from datetime import date
from pathlib import Path
from typing import Iterable, Optional, Protocol

import pandas as pd

from schemas import FundObservation, PeerGroup, SkippedItem

logger = logging.getLogger(__name__)

# Reserved snapshot columns; every other column is a metric.
SNAPSHOT_ID_COLS = ("fund_id", "peer_group_id", "as_of_date", "is_benchmark", "name")


class SourceUnavailableError(RuntimeError):
    """The fund / peer-group / observation source could not be read."""


class ObservationSource(Protocol):
    def get_peer_groups(self, as_of_date: date) -> list[PeerGroup]:
        ...

    def get_observations(self, as_of_date: date,
                         group_id: Optional[str] = None) -> list[FundObservation]:
        ...


def _as_date(value) -> date:
    return pd.Timestamp(value).date()


# =========================================================================
# A. In-memory source
# =========================================================================
class InMemoryObservationSource:
    """Source backed by a list of observations (tests, previews, notebooks).

    When ``peer_groups`` is omitted, membership is derived per as-of date
    from each observation's peer_group_id.
    """

    def __init__(self, observations: Iterable[FundObservation],
                 peer_groups: Optional[dict] = None):
        self._observations = [o if isinstance(o, FundObservation)
                              else FundObservation(**o) for o in observations]
        # {as_of_date: [PeerGroup, ...]}
        self._peer_groups = peer_groups

    def get_peer_groups(self, as_of_date: date) -> list[PeerGroup]:
        as_of_date = _as_date(as_of_date)
        if self._peer_groups is not None:
            return list(self._peer_groups.get(as_of_date, []))
        members = defaultdict(set)
        for o in self._observations:
            if o.as_of_date == as_of_date:
                members[o.peer_group_id].add(o.fund_id)
        return [PeerGroup(group_id=g, member_fund_ids=frozenset(ids))
                for g, ids in sorted(members.items())]

    def get_observations(self, as_of_date: date,
                         group_id: Optional[str] = None) -> list[FundObservation]:
        as_of_date = _as_date(as_of_date)
        return [o for o in self._observations
                if o.as_of_date == as_of_date
                and (group_id is None or o.peer_group_id == group_id)]


# =========================================================================
# B. CSV snapshot source
# =========================================================================
class CsvSnapshotSource:
    """Source backed by a monthly snapshot CSV.

    Expected columns: fund_id, peer_group_id, as_of_date, optional
    is_benchmark / name, then one column per metric id. Blank cells,
    "N/A" and non-numeric strings load as missing, never as zero.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._frame: Optional[pd.DataFrame] = None

    def _load(self) -> pd.DataFrame:
        if self._frame is not None:
            return self._frame
        try:
            df = pd.read_csv(self.path, dtype={"fund_id": str, "peer_group_id": str},
                             na_values=["N/A", "N/A N/A", "--"])
        except (OSError, pd.errors.ParserError, pd.errors.EmptyDataError) as e:
            raise SourceUnavailableError(f"Cannot read snapshot {self.path}: {e}") from e
        missing = [c for c in ("fund_id", "peer_group_id", "as_of_date") if c not in df.columns]
        if missing:
            raise SourceUnavailableError(
                f"Snapshot {self.path} is missing required columns {missing}")
        df["as_of_date"] = pd.to_datetime(df["as_of_date"]).dt.date
        if "is_benchmark" not in df.columns:
            df["is_benchmark"] = False
        df["is_benchmark"] = df["is_benchmark"].fillna(False).astype(str).str.lower().isin(
            ["true", "1", "yes", "y"])
        for col in self.metric_columns(df):
            df[col] = pd.to_numeric(
                df[col].astype(str).str.replace(r"[%,]", "", regex=True),
                errors="coerce")
        self._frame = df
        logger.info("Loaded snapshot %s (%d rows)", self.path, len(df))
        return df

    @staticmethod
    def metric_columns(df: pd.DataFrame) -> list[str]:
        return [c for c in df.columns if c not in SNAPSHOT_ID_COLS]

    def frame(self, as_of_date: date) -> pd.DataFrame:
        """Rows for one as-of date (used by the vectorized snapshot scorer)."""
        df = self._load()
        return df[df["as_of_date"] == _as_date(as_of_date)].reset_index(drop=True)

    def get_peer_groups(self, as_of_date: date) -> list[PeerGroup]:
        df = self.frame(as_of_date)
        return [PeerGroup(group_id=str(g), member_fund_ids=frozenset(grp["fund_id"]))
                for g, grp in df.groupby("peer_group_id", sort=True)]

    def get_observations(self, as_of_date: date,
                         group_id: Optional[str] = None) -> list[FundObservation]:
        df = self.frame(as_of_date)
        if group_id is not None:
            df = df[df["peer_group_id"] == group_id]
        metric_cols = self.metric_columns(df)
        out = []
        for rec in df.to_dict("records"):
            name = rec.get("name")
            out.append(FundObservation(
                fund_id=rec["fund_id"],
                peer_group_id=rec["peer_group_id"],
                as_of_date=rec["as_of_date"],
                is_benchmark=bool(rec["is_benchmark"]),
                name=name if isinstance(name, str) else None,
                metrics={c: rec[c] for c in metric_cols},
            ))
        return out


# =========================================================================
# C. Resolution: peer groups x observations
# =========================================================================
def assign_observations(groups: Iterable[PeerGroup],
                        observations: Iterable[FundObservation],
                        as_of_date: date,
                        ) -> tuple[dict[str, list[FundObservation]], list[SkippedItem]]:
    """Bucket observations into their as-of peer groups.

    Group membership (not the observation's own peer_group_id) decides the
    bucket, so a fund that migrated groups never carries stale statistics.
    Returns ({group_id: observations sorted by fund_id}, skipped items).
    """
    skipped: list[SkippedItem] = []
    owner: dict[str, str] = {}
    groups = sorted(groups, key=lambda g: g.group_id)
    for g in groups:
        for fid in sorted(g.member_fund_ids):
            if fid in owner:
                logger.warning("Fund %s listed in %s and %s; keeping %s",
                               fid, owner[fid], g.group_id, owner[fid])
                continue
            owner[fid] = g.group_id

    seen: dict[str, FundObservation] = {}
    for obs in observations:
        if obs.as_of_date != as_of_date:
            skipped.append(SkippedItem(kind="fund", id=obs.fund_id,
                                       group_id=obs.peer_group_id,
                                       reason="as_of_mismatch"))
            continue
        if obs.fund_id not in owner:
            logger.warning("Fund %s has no peer group on %s, dropped",
                           obs.fund_id, as_of_date)
            skipped.append(SkippedItem(kind="fund", id=obs.fund_id,
                                       group_id=obs.peer_group_id,
                                       reason="not_in_peer_group"))
            continue
        if obs.fund_id in seen:
            logger.warning("Duplicate observation for %s on %s, keeping first",
                           obs.fund_id, as_of_date)
            skipped.append(SkippedItem(kind="fund", id=obs.fund_id,
                                       group_id=owner[obs.fund_id],
                                       reason="duplicate_observation"))
            continue
        seen[obs.fund_id] = obs

    buckets: dict[str, list[FundObservation]] = {}
    for g in groups:
        members = []
        for fid in sorted(g.member_fund_ids):
            if owner.get(fid) != g.group_id:
                continue
            if fid not in seen:
                logger.warning("Fund %s in %s has no observation on %s, dropped",
                               fid, g.group_id, as_of_date)
                skipped.append(SkippedItem(kind="fund", id=fid, group_id=g.group_id,
                                           reason="missing_observation"))
                continue
            members.append(seen[fid])
        buckets[g.group_id] = members
    return buckets, skipped
