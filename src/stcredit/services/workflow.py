"""Operator session tying enrichment, carry-forward, lock and FIFO together."""

from __future__ import annotations

import logging
from typing import Iterable, Optional, Union

from stcredit.exceptions import (
    CompetenciaLockedError,
    CompetenciaNotConfirmedError,
    ContractError,
)
from stcredit.models import (
    AllocationResult,
    Competencia,
    EnrichedRow,
    Invoice,
    NoteBalanceView,
    PaymentRecord,
    StockMovementReport,
)
from stcredit.repositories.base import BalanceRepository
from stcredit.services.carry_forward import BalanceCarryForward, NoteBalance
from stcredit.services.competencia_lock import CompetenciaLock, LockStatus
from stcredit.services.enrichment import enrich_rows
from stcredit.services.fifo import allocate_fifo, to_snapshots
from stcredit.services.persistence import BalanceSynchronizer, SyncReport
from stcredit.stock_movement import parse_stock_movement_csv

logger = logging.getLogger(__name__)


class WorkflowSession:
    """
    One operator working on one company and competência at a time.

    Holds the in-memory state of a session: loaded feeds, carry-forward
    balances, the imported stock report and the last allocation. Selecting a
    different company or competência discards all of it.
    """

    def __init__(
        self,
        repository: BalanceRepository,
        operator: str,
        *,
        strict_opening_balance: bool = False,
    ) -> None:
        self.repository = repository
        self.operator = operator
        self.strict_opening_balance = strict_opening_balance
        self.lock = CompetenciaLock(repository)
        self.synchronizer = BalanceSynchronizer(repository)

        self.company_id: Optional[str] = None
        self.competencia: Optional[Competencia] = None
        self.frozen = False
        self._reset()

    def _reset(self) -> None:
        self.carry_forward: Optional[BalanceCarryForward] = None
        self.payments: list[PaymentRecord] = []
        self.invoices: list[Invoice] = []
        self.rows: list[EnrichedRow] = []
        self.stock_report: Optional[StockMovementReport] = None
        self.allocation: Optional[AllocationResult] = None

    def _require_selection(self) -> tuple[str, Competencia]:
        if self.company_id is None or self.competencia is None:
            raise ContractError(
                "NO_COMPETENCIA_SELECTED", "Select a company and competência first"
            )
        return self.company_id, self.competencia

    def _require_carry_forward(self) -> BalanceCarryForward:
        self._require_selection()
        if self.carry_forward is None:
            raise ContractError("NOTHING_LOADED", "Load guias and invoices first")
        return self.carry_forward

    def _require_confirmed(self) -> LockStatus:
        company_id, competencia = self._require_selection()
        status = self.lock.status(company_id, competencia)
        if not status.confirmed:
            raise CompetenciaNotConfirmedError(
                f"Competência {competencia} must be confirmed first",
                company_id=company_id,
                competencia=competencia.label,
            )
        return status

    def select_competencia(self, company_id: str, competencia: Competencia) -> LockStatus:
        """
        Point the session at a company and competência.

        While the current selection is confirmed the selector is frozen; it
        has to be reopened before switching.
        """
        same = company_id == self.company_id and competencia == self.competencia
        if self.frozen and not same:
            raise CompetenciaLockedError(
                f"Competência {self.competencia} is confirmed; reopen it before switching",
                company_id=self.company_id,
                competencia=self.competencia.label if self.competencia else None,
            )

        if not same:
            self.company_id = company_id
            self.competencia = competencia
            self._reset()
            logger.info("session moved to %s/%s", company_id, competencia)

        status = self.lock.status(company_id, competencia)
        self.frozen = status.confirmed
        return status

    def confirm_competencia(self) -> LockStatus:
        company_id, competencia = self._require_selection()
        status = self.lock.confirm(company_id, competencia, self.operator)
        self.frozen = True
        return status

    def reopen_competencia(self) -> LockStatus:
        company_id, competencia = self._require_selection()
        status = self.lock.reopen(company_id, competencia, self.operator)
        self.frozen = False
        return status

    def load(
        self, payments: Iterable[PaymentRecord], invoices: Iterable[Invoice]
    ) -> list[EnrichedRow]:
        """Enrich the feeds and seed opening balances for the selection."""
        company_id, competencia = self._require_selection()
        self.payments = list(payments)
        self.invoices = list(invoices)

        if self.carry_forward is None:
            self.carry_forward = BalanceCarryForward(
                self.repository,
                company_id,
                competencia,
                strict=self.strict_opening_balance,
                synchronizer=self.synchronizer,
            )
        self.carry_forward.load(enrich_rows(self.payments, self.invoices))
        self._refresh_rows()
        return self.rows

    def _refresh_rows(self) -> None:
        carry_forward = self._require_carry_forward()
        self.rows = enrich_rows(self.payments, self.invoices, carry_forward.opening_balances())
        self.allocation = None

    def views(self) -> list[NoteBalanceView]:
        return self._require_carry_forward().views()

    def edit_opening_balance(
        self, guia_id: str, raw: Union[str, float, int, None]
    ) -> NoteBalance:
        carry_forward = self._require_carry_forward()
        try:
            return carry_forward.edit_opening_balance(guia_id, raw)
        finally:
            self._refresh_rows()

    def confirm_one(self, guia_id: str) -> SyncReport:
        self._require_confirmed()
        return self._require_carry_forward().confirm_one(guia_id)

    def confirm_all(self) -> SyncReport:
        self._require_confirmed()
        return self._require_carry_forward().confirm_all()

    def unconfirm_one(self, guia_id: str) -> NoteBalance:
        return self._require_carry_forward().unconfirm_one(guia_id)

    def import_stock_movement(self, text: str) -> StockMovementReport:
        """Parse a stock report; a rejected report leaves the session unchanged."""
        self._require_selection()
        report = parse_stock_movement_csv(text)
        self.stock_report = report
        self.allocation = None
        return report

    def compute_allocation(self, total_exits: Optional[float] = None) -> AllocationResult:
        """Run FIFO over the loaded rows, by default with the report's exits."""
        self._require_carry_forward()
        if total_exits is None:
            if self.stock_report is None:
                raise ContractError(
                    "NO_STOCK_REPORT", "Import a stock movement report or pass total exits"
                )
            total_exits = self.stock_report.total_exits
        self.allocation = allocate_fifo(total_exits, self.rows)
        return self.allocation

    def save_allocation(self) -> SyncReport:
        """Persist the last allocation as this competência's snapshots."""
        self._require_confirmed()
        carry_forward = self._require_carry_forward()
        if self.allocation is None:
            raise ContractError("NO_ALLOCATION", "Compute an allocation before saving")

        company_id, competencia = self._require_selection()
        snapshots = to_snapshots(
            self.allocation, company_id, competencia, carry_forward.opening_balances()
        )
        report = self.synchronizer.upsert(snapshots)
        saved = set(report.succeeded)
        carry_forward.mark_persisted(s for s in snapshots if s.key in saved)
        report.raise_for_failures()
        logger.info("saved allocation for %d notes in %s", len(snapshots), competencia)
        return report
