"""Per-competência ICMS-ST credit control summary and review workflow."""

import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Iterable, Optional

from stcredit.exceptions import ContractError, InvalidTransitionError
from stcredit.models import Competencia, CreditControlResponse, PaymentRecord
from stcredit.repositories.base import BalanceRepository, CreditControlRecord

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "aberto": frozenset({"conferido"}),
    "conferido": frozenset({"fechado", "aberto"}),
    "fechado": frozenset(),
}


def _in_period(payment: PaymentRecord, competencia: Competencia) -> bool:
    if payment.note_date is None:
        return False
    return (
        payment.note_date.year == competencia.year
        and payment.note_date.month == competencia.month
    )


def build_credit_control(
    company_id: str,
    competencia: Competencia,
    payments: Iterable[PaymentRecord],
    previous: Optional[CreditControlRecord] = None,
) -> CreditControlRecord:
    """
    Summarize the guias whose note date falls in the competência.

    Guias without a note date cannot be placed in a period and are left out.
    The opening credit is the previous period's closing credit.
    """
    in_period = [p for p in payments if _in_period(p, competencia)]

    credito = sum(p.icms_st_credit for p in in_period)
    utilizado = sum(p.icms_st_credit for p in in_period if p.status == "UTILIZADO")
    saldo_anterior = previous.saldo_final if previous is not None else 0.0
    estornado = 0.0

    return CreditControlRecord(
        company_id=company_id,
        competencia_ano=competencia.year,
        competencia_mes=competencia.month,
        saldo_anterior=saldo_anterior,
        credito_periodo=credito,
        utilizado_periodo=utilizado,
        estornado_periodo=estornado,
        saldo_final=saldo_anterior + credito - utilizado - estornado,
        total_guias=len(in_period),
        guias_utilizaveis=sum(1 for p in in_period if p.status == "UTILIZAVEL"),
        guias_utilizadas=sum(1 for p in in_period if p.status == "UTILIZADO"),
        guias_nao_pagas=sum(1 for p in in_period if p.status == "NAO PAGO"),
    )


def transition(
    record: CreditControlRecord,
    status: str,
    operator: str,
    now: Optional[datetime] = None,
) -> CreditControlRecord:
    """Move a credit control record to a new review status."""
    if status not in ALLOWED_TRANSITIONS.get(record.status, frozenset()):
        raise InvalidTransitionError(
            f"Cannot move credit control from {record.status} to {status}",
            current=record.status,
            requested=status,
        )

    if status == "conferido":
        stamp = (now or datetime.now(timezone.utc)).isoformat()
        return replace(record, status=status, conferido_por=operator, conferido_em=stamp)
    if status == "aberto":
        return replace(record, status=status, conferido_por=None, conferido_em=None)
    return replace(record, status=status)


def to_response(record: CreditControlRecord) -> CreditControlResponse:
    return CreditControlResponse(
        company_id=record.company_id,
        competencia_ano=record.competencia_ano,
        competencia_mes=record.competencia_mes,
        saldo_anterior=record.saldo_anterior,
        credito_periodo=record.credito_periodo,
        utilizado_periodo=record.utilizado_periodo,
        estornado_periodo=record.estornado_periodo,
        saldo_final=record.saldo_final,
        total_guias=record.total_guias,
        guias_utilizaveis=record.guias_utilizaveis,
        guias_utilizadas=record.guias_utilizadas,
        guias_nao_pagas=record.guias_nao_pagas,
        status=record.status,
        observacoes=record.observacoes,
        conferido_por=record.conferido_por,
        conferido_em=record.conferido_em,
    )


class CreditControlService:
    """Builds, stores and reviews credit control records through a repository."""

    def __init__(self, repository: BalanceRepository) -> None:
        self.repository = repository

    def get(self, company_id: str, competencia: Competencia) -> CreditControlRecord:
        record = self.repository.get_credit_control(
            company_id, competencia.year, competencia.month
        )
        if record is None:
            raise ContractError(
                "CREDIT_CONTROL_NOT_FOUND",
                f"No credit control for {company_id} in {competencia}",
                status_code=404,
            )
        return record

    def build(
        self,
        company_id: str,
        competencia: Competencia,
        payments: Iterable[PaymentRecord],
    ) -> CreditControlRecord:
        """Recompute the period summary, keeping review status and notes."""
        existing = self.repository.get_credit_control(
            company_id, competencia.year, competencia.month
        )
        if existing is not None and existing.status == "fechado":
            raise InvalidTransitionError(
                f"Credit control for {competencia} is closed",
                current=existing.status,
            )

        previous_period = competencia.previous()
        previous = self.repository.get_credit_control(
            company_id, previous_period.year, previous_period.month
        )
        record = build_credit_control(company_id, competencia, payments, previous)
        if existing is not None:
            record = replace(
                record,
                status=existing.status,
                observacoes=existing.observacoes,
                conferido_por=existing.conferido_por,
                conferido_em=existing.conferido_em,
            )

        logger.info(
            "credit control %s/%s: %d guias, saldo final %.2f",
            company_id,
            competencia,
            record.total_guias,
            record.saldo_final,
        )
        return self.repository.save_credit_control(record)

    def transition(
        self, company_id: str, competencia: Competencia, status: str, operator: str
    ) -> CreditControlRecord:
        record = transition(self.get(company_id, competencia), status, operator)
        logger.info(
            "credit control %s/%s moved to %s by %s", company_id, competencia, status, operator
        )
        return self.repository.save_credit_control(record)

    def update_observations(
        self, company_id: str, competencia: Competencia, text: Optional[str]
    ) -> CreditControlRecord:
        record = self.get(company_id, competencia)
        if record.status == "fechado":
            raise InvalidTransitionError(
                "Observations cannot change on a closed credit control",
                current=record.status,
            )
        return self.repository.save_credit_control(replace(record, observacoes=text))
