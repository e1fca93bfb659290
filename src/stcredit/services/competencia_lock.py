"""Competência lock: confirm / reopen a company period."""

import logging
from dataclasses import dataclass
from typing import Literal, Optional

from stcredit.models import Competencia
from stcredit.repositories.base import LOCK_CONFIRMED, BalanceRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LockStatus:
    """Resolved lock state of a company/competência pair."""

    company_id: str
    competencia: Competencia
    confirmed: bool
    locked_by: Optional[str]
    source: Literal["lock", "snapshots", "none"]


class CompetenciaLock:
    """
    Gate preventing a period from being processed twice.

    An explicit lock row decides the status when present. Without one, a
    period counts as confirmed as soon as any balance snapshot exists for it.
    """

    def __init__(self, repository: BalanceRepository) -> None:
        self.repository = repository

    def status(self, company_id: str, competencia: Competencia) -> LockStatus:
        record = self.repository.get_lock(company_id, competencia.year, competencia.month)
        if record is not None:
            return LockStatus(
                company_id=company_id,
                competencia=competencia,
                confirmed=record.status == LOCK_CONFIRMED,
                locked_by=record.locked_by,
                source="lock",
            )

        has_snapshots = bool(
            self.repository.list_snapshots(company_id, competencia.year, competencia.month)
        )
        return LockStatus(
            company_id=company_id,
            competencia=competencia,
            confirmed=has_snapshots,
            locked_by=None,
            source="snapshots" if has_snapshots else "none",
        )

    def confirm(self, company_id: str, competencia: Competencia, operator: str) -> LockStatus:
        """Lock the period for this operator; raises CompetenciaLockedError on conflict."""
        record = self.repository.acquire_lock(
            company_id, competencia.year, competencia.month, operator=operator
        )
        logger.info("competência %s/%s confirmed by %s", company_id, competencia, operator)
        return LockStatus(
            company_id=company_id,
            competencia=competencia,
            confirmed=True,
            locked_by=record.locked_by,
            source="lock",
        )

    def reopen(self, company_id: str, competencia: Competencia, operator: str) -> LockStatus:
        """Explicit "alter" action reopening a confirmed period."""
        record = self.repository.release_lock(
            company_id, competencia.year, competencia.month, operator=operator
        )
        logger.info("competência %s/%s reopened by %s", company_id, competencia, operator)
        return LockStatus(
            company_id=company_id,
            competencia=competencia,
            confirmed=False,
            locked_by=record.locked_by,
            source="lock",
        )
