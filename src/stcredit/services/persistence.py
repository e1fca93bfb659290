"""Idempotent synchronization of balance snapshots with storage."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Iterable

from stcredit.exceptions import PersistenceError
from stcredit.models import Competencia
from stcredit.repositories.base import BalanceRepository, BalanceSnapshot, SnapshotKey

logger = logging.getLogger(__name__)

_TOLERANCE = 1e-9


@dataclass(frozen=True)
class SyncFailure:
    """Snapshot key that could not be written, with the storage error."""

    key: SnapshotKey
    error: str


@dataclass
class SyncReport:
    """Outcome of an upsert batch."""

    succeeded: list[SnapshotKey] = field(default_factory=list)
    failed: list[SyncFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed

    def raise_for_failures(self) -> None:
        """Raise PersistenceError when any key failed."""
        if self.failed:
            raise PersistenceError(
                f"{len(self.failed)} of {len(self.failed) + len(self.succeeded)} "
                "balance snapshots failed to save",
                report=self,
            )


@dataclass
class ReconcileReport:
    """Differences between in-memory and stored snapshots of a period."""

    missing: list[SnapshotKey] = field(default_factory=list)
    drifted: list[SnapshotKey] = field(default_factory=list)
    extra: list[SnapshotKey] = field(default_factory=list)

    @property
    def in_sync(self) -> bool:
        return not (self.missing or self.drifted or self.extra)


def dedupe_snapshots(snapshots: Iterable[BalanceSnapshot]) -> list[BalanceSnapshot]:
    """Collapse snapshots sharing a key; the last one wins, first position kept."""
    by_key: dict[SnapshotKey, BalanceSnapshot] = {}
    for snapshot in snapshots:
        by_key[snapshot.key] = snapshot
    return list(by_key.values())


def _same_values(a: BalanceSnapshot, b: BalanceSnapshot) -> bool:
    return (
        math.isclose(a.saldo_remanescente, b.saldo_remanescente, abs_tol=_TOLERANCE)
        and math.isclose(a.quantidade_original, b.quantidade_original, abs_tol=_TOLERANCE)
        and math.isclose(a.quantidade_consumida, b.quantidade_consumida, abs_tol=_TOLERANCE)
        and math.isclose(a.saldo_anterior, b.saldo_anterior, abs_tol=_TOLERANCE)
        and a.confirmed == b.confirmed
    )


class BalanceSynchronizer:
    """Writes snapshots through a repository and reports per-key outcome."""

    def __init__(self, repository: BalanceRepository) -> None:
        self.repository = repository

    def upsert(self, snapshots: Iterable[BalanceSnapshot]) -> SyncReport:
        """
        Upsert snapshots as one batch.

        Overlapping keys collapse to the last snapshot. When the batch write
        fails, each snapshot is retried on its own so the report names exactly
        which keys failed.
        """
        batch = dedupe_snapshots(snapshots)
        report = SyncReport()
        if not batch:
            return report

        try:
            self.repository.upsert_snapshots(batch)
        except Exception as exc:
            logger.warning(
                "batch upsert of %d snapshots failed (%s); retrying per row",
                len(batch),
                exc,
            )
        else:
            report.succeeded.extend(s.key for s in batch)
            logger.info("upserted %d balance snapshots", len(batch))
            return report

        for snapshot in batch:
            try:
                self.repository.upsert_snapshots([snapshot])
            except Exception as exc:
                logger.error("failed to upsert snapshot %s: %s", snapshot.key, exc)
                report.failed.append(SyncFailure(key=snapshot.key, error=str(exc)))
            else:
                report.succeeded.append(snapshot.key)

        return report

    def reconcile(
        self,
        company_id: str,
        competencia: Competencia,
        expected: Iterable[BalanceSnapshot],
    ) -> ReconcileReport:
        """Compare expected snapshots with what storage holds for the period."""
        stored = {
            s.key: s
            for s in self.repository.list_snapshots(
                company_id, competencia.year, competencia.month
            )
        }
        report = ReconcileReport()
        seen: set[SnapshotKey] = set()

        for snapshot in dedupe_snapshots(expected):
            seen.add(snapshot.key)
            current = stored.get(snapshot.key)
            if current is None:
                report.missing.append(snapshot.key)
            elif not _same_values(snapshot, current):
                report.drifted.append(snapshot.key)

        report.extra.extend(key for key in stored if key not in seen)

        if not report.in_sync:
            logger.warning(
                "competência %s/%s out of sync: %d missing, %d drifted, %d extra",
                company_id,
                competencia,
                len(report.missing),
                len(report.drifted),
                len(report.extra),
            )
        return report
