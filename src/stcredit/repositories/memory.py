"""In-memory repository for CLI runs and tests."""

from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Optional

from stcredit.exceptions import CompetenciaLockedError
from stcredit.repositories.base import (
    LOCK_CONFIRMED,
    LOCK_OPEN,
    BalanceRepository,
    BalanceSnapshot,
    CompetenciaLockRecord,
    CreditControlRecord,
    SnapshotKey,
)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class InMemoryBalanceRepository(BalanceRepository):
    """Thread-safe in-memory storage."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.reset()

    def reset(self) -> None:
        """Reset all in-memory state (used by tests)."""
        with self._lock:
            self._snapshots: dict[SnapshotKey, BalanceSnapshot] = {}
            self._locks: dict[tuple[str, int, int], CompetenciaLockRecord] = {}
            self._credit_controls: dict[tuple[str, int, int], CreditControlRecord] = {}
            self.write_count = 0

    def list_snapshots(
        self, company_id: str, competencia_ano: int, competencia_mes: int
    ) -> list[BalanceSnapshot]:
        with self._lock:
            return [
                s
                for s in self._snapshots.values()
                if s.company_id == company_id
                and s.competencia_ano == competencia_ano
                and s.competencia_mes == competencia_mes
            ]

    def upsert_snapshots(self, snapshots: list[BalanceSnapshot]) -> None:
        with self._lock:
            for snapshot in snapshots:
                self._snapshots[snapshot.key] = snapshot
            self.write_count += 1

    def delete_snapshot(self, key: SnapshotKey) -> None:
        with self._lock:
            self._snapshots.pop(key, None)

    def get_lock(
        self, company_id: str, competencia_ano: int, competencia_mes: int
    ) -> Optional[CompetenciaLockRecord]:
        with self._lock:
            return self._locks.get((company_id, competencia_ano, competencia_mes))

    def acquire_lock(
        self,
        company_id: str,
        competencia_ano: int,
        competencia_mes: int,
        *,
        operator: str,
    ) -> CompetenciaLockRecord:
        key = (company_id, competencia_ano, competencia_mes)
        with self._lock:
            existing = self._locks.get(key)
            if (
                existing is not None
                and existing.status == LOCK_CONFIRMED
                and existing.locked_by != operator
            ):
                raise CompetenciaLockedError(
                    "Competência already confirmed by another operator",
                    company_id=company_id,
                    competencia=f"{competencia_ano:04d}-{competencia_mes:02d}",
                    locked_by=existing.locked_by,
                )
            if existing is not None and existing.status == LOCK_CONFIRMED:
                return existing

            record = CompetenciaLockRecord(
                company_id=company_id,
                competencia_ano=competencia_ano,
                competencia_mes=competencia_mes,
                status=LOCK_CONFIRMED,
                locked_by=operator,
                updated_at=_now_iso(),
            )
            self._locks[key] = record
            return record

    def release_lock(
        self,
        company_id: str,
        competencia_ano: int,
        competencia_mes: int,
        *,
        operator: str,
    ) -> CompetenciaLockRecord:
        key = (company_id, competencia_ano, competencia_mes)
        with self._lock:
            record = CompetenciaLockRecord(
                company_id=company_id,
                competencia_ano=competencia_ano,
                competencia_mes=competencia_mes,
                status=LOCK_OPEN,
                locked_by=operator,
                updated_at=_now_iso(),
            )
            self._locks[key] = record
            return record

    def get_credit_control(
        self, company_id: str, competencia_ano: int, competencia_mes: int
    ) -> Optional[CreditControlRecord]:
        with self._lock:
            return self._credit_controls.get((company_id, competencia_ano, competencia_mes))

    def save_credit_control(self, record: CreditControlRecord) -> CreditControlRecord:
        with self._lock:
            key = (record.company_id, record.competencia_ano, record.competencia_mes)
            self._credit_controls[key] = record
            return record
