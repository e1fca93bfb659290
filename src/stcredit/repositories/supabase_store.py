"""Supabase-backed repository for balance snapshots, locks and credit control."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from postgrest.exceptions import APIError
from supabase import Client

from stcredit.config import StCreditConfig
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

logger = logging.getLogger(__name__)

SNAPSHOT_CONFLICT_KEY = "empresa_id,guia_id,competencia_ano,competencia_mes"
PERIOD_CONFLICT_KEY = "empresa_id,competencia_ano,competencia_mes"


def _snapshot_to_row(snapshot: BalanceSnapshot) -> dict[str, Any]:
    return {
        "empresa_id": snapshot.company_id,
        "guia_id": snapshot.guia_id,
        "numero_nota": snapshot.note_number,
        "competencia_ano": snapshot.competencia_ano,
        "competencia_mes": snapshot.competencia_mes,
        "saldo_remanescente": snapshot.saldo_remanescente,
        "quantidade_original": snapshot.quantidade_original,
        "quantidade_consumida": snapshot.quantidade_consumida,
        "saldo_anterior": snapshot.saldo_anterior,
        "confirmado": snapshot.confirmed,
    }


def _row_to_snapshot(row: dict[str, Any]) -> BalanceSnapshot:
    return BalanceSnapshot(
        company_id=str(row["empresa_id"]),
        guia_id=str(row["guia_id"]),
        note_number=str(row.get("numero_nota") or ""),
        competencia_ano=int(row["competencia_ano"]),
        competencia_mes=int(row["competencia_mes"]),
        saldo_remanescente=float(row.get("saldo_remanescente") or 0),
        quantidade_original=float(row.get("quantidade_original") or 0),
        quantidade_consumida=float(row.get("quantidade_consumida") or 0),
        saldo_anterior=float(row.get("saldo_anterior") or 0),
        confirmed=bool(row.get("confirmado", True)),
    )


def _row_to_lock(row: dict[str, Any]) -> CompetenciaLockRecord:
    return CompetenciaLockRecord(
        company_id=str(row["empresa_id"]),
        competencia_ano=int(row["competencia_ano"]),
        competencia_mes=int(row["competencia_mes"]),
        status=str(row.get("status") or LOCK_OPEN),
        locked_by=row.get("bloqueado_por"),
        updated_at=str(row.get("updated_at") or ""),
    )


def _row_to_credit_control(row: dict[str, Any]) -> CreditControlRecord:
    return CreditControlRecord(
        company_id=str(row["empresa_id"]),
        competencia_ano=int(row["competencia_ano"]),
        competencia_mes=int(row["competencia_mes"]),
        saldo_anterior=float(row.get("saldo_anterior") or 0),
        credito_periodo=float(row.get("credito_periodo") or 0),
        utilizado_periodo=float(row.get("utilizado_periodo") or 0),
        estornado_periodo=float(row.get("estornado_periodo") or 0),
        saldo_final=float(row.get("saldo_final") or 0),
        total_guias=int(row.get("total_guias") or 0),
        guias_utilizaveis=int(row.get("guias_utilizaveis") or 0),
        guias_utilizadas=int(row.get("guias_utilizadas") or 0),
        guias_nao_pagas=int(row.get("guias_nao_pagas") or 0),
        status=str(row.get("status") or "aberto"),
        observacoes=row.get("observacoes"),
        conferido_por=row.get("conferido_por"),
        conferido_em=row.get("conferido_em"),
    )


class SupabaseBalanceRepository(BalanceRepository):
    """Persistence through the Supabase PostgREST API."""

    def __init__(self, client: Client, config: StCreditConfig) -> None:
        self._client = client
        self._snapshots_table = config.snapshots_table
        self._locks_table = config.locks_table
        self._credit_control_table = config.credit_control_table

    def _period_query(
        self, table: str, company_id: str, competencia_ano: int, competencia_mes: int
    ) -> Any:
        return (
            self._client.table(table)
            .select("*")
            .eq("empresa_id", company_id)
            .eq("competencia_ano", competencia_ano)
            .eq("competencia_mes", competencia_mes)
        )

    def list_snapshots(
        self, company_id: str, competencia_ano: int, competencia_mes: int
    ) -> list[BalanceSnapshot]:
        response = self._period_query(
            self._snapshots_table, company_id, competencia_ano, competencia_mes
        ).execute()
        return [_row_to_snapshot(row) for row in response.data or []]

    def upsert_snapshots(self, snapshots: list[BalanceSnapshot]) -> None:
        if not snapshots:
            return
        rows = [_snapshot_to_row(s) for s in snapshots]
        self._client.table(self._snapshots_table).upsert(
            rows, on_conflict=SNAPSHOT_CONFLICT_KEY
        ).execute()
        logger.debug("upserted %d snapshot rows", len(rows))

    def delete_snapshot(self, key: SnapshotKey) -> None:
        (
            self._client.table(self._snapshots_table)
            .delete()
            .eq("empresa_id", key.company_id)
            .eq("guia_id", key.guia_id)
            .eq("competencia_ano", key.competencia_ano)
            .eq("competencia_mes", key.competencia_mes)
            .execute()
        )

    def get_lock(
        self, company_id: str, competencia_ano: int, competencia_mes: int
    ) -> Optional[CompetenciaLockRecord]:
        response = self._period_query(
            self._locks_table, company_id, competencia_ano, competencia_mes
        ).execute()
        rows = response.data or []
        if not rows:
            return None
        return _row_to_lock(rows[0])

    def acquire_lock(
        self,
        company_id: str,
        competencia_ano: int,
        competencia_mes: int,
        *,
        operator: str,
    ) -> CompetenciaLockRecord:
        existing = self.get_lock(company_id, competencia_ano, competencia_mes)
        if existing is not None and existing.status == LOCK_CONFIRMED:
            if existing.locked_by != operator:
                raise self._locked_error(company_id, competencia_ano, competencia_mes, existing)
            return existing

        row = {
            "empresa_id": company_id,
            "competencia_ano": competencia_ano,
            "competencia_mes": competencia_mes,
            "status": LOCK_CONFIRMED,
            "bloqueado_por": operator,
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }

        if existing is None:
            # Unique (empresa_id, competencia_ano, competencia_mes) rejects a
            # concurrent insert from another session.
            try:
                response = self._client.table(self._locks_table).insert(row).execute()
            except APIError:
                current = self.get_lock(company_id, competencia_ano, competencia_mes)
                if current is not None and current.status == LOCK_CONFIRMED:
                    if current.locked_by == operator:
                        return current
                    raise self._locked_error(
                        company_id, competencia_ano, competencia_mes, current
                    )
                raise
        else:
            response = (
                self._client.table(self._locks_table)
                .update(row)
                .eq("empresa_id", company_id)
                .eq("competencia_ano", competencia_ano)
                .eq("competencia_mes", competencia_mes)
                .eq("status", LOCK_OPEN)
                .execute()
            )
            if not response.data:
                current = self.get_lock(company_id, competencia_ano, competencia_mes)
                if current is not None and current.locked_by != operator:
                    raise self._locked_error(
                        company_id, competencia_ano, competencia_mes, current
                    )

        rows = response.data or [row]
        return _row_to_lock(rows[0])

    def release_lock(
        self,
        company_id: str,
        competencia_ano: int,
        competencia_mes: int,
        *,
        operator: str,
    ) -> CompetenciaLockRecord:
        row = {
            "empresa_id": company_id,
            "competencia_ano": competencia_ano,
            "competencia_mes": competencia_mes,
            "status": LOCK_OPEN,
            "bloqueado_por": operator,
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }
        response = (
            self._client.table(self._locks_table)
            .upsert(row, on_conflict=PERIOD_CONFLICT_KEY)
            .execute()
        )
        rows = response.data or [row]
        return _row_to_lock(rows[0])

    def get_credit_control(
        self, company_id: str, competencia_ano: int, competencia_mes: int
    ) -> Optional[CreditControlRecord]:
        response = self._period_query(
            self._credit_control_table, company_id, competencia_ano, competencia_mes
        ).execute()
        rows = response.data or []
        if not rows:
            return None
        return _row_to_credit_control(rows[0])

    def save_credit_control(self, record: CreditControlRecord) -> CreditControlRecord:
        row = {
            "empresa_id": record.company_id,
            "competencia_ano": record.competencia_ano,
            "competencia_mes": record.competencia_mes,
            "saldo_anterior": record.saldo_anterior,
            "credito_periodo": record.credito_periodo,
            "utilizado_periodo": record.utilizado_periodo,
            "estornado_periodo": record.estornado_periodo,
            "saldo_final": record.saldo_final,
            "total_guias": record.total_guias,
            "guias_utilizaveis": record.guias_utilizaveis,
            "guias_utilizadas": record.guias_utilizadas,
            "guias_nao_pagas": record.guias_nao_pagas,
            "status": record.status,
            "observacoes": record.observacoes,
            "conferido_por": record.conferido_por,
            "conferido_em": record.conferido_em,
        }
        response = (
            self._client.table(self._credit_control_table)
            .upsert(row, on_conflict=PERIOD_CONFLICT_KEY)
            .execute()
        )
        rows = response.data or [row]
        return _row_to_credit_control(rows[0])

    @staticmethod
    def _locked_error(
        company_id: str,
        competencia_ano: int,
        competencia_mes: int,
        current: CompetenciaLockRecord,
    ) -> CompetenciaLockedError:
        return CompetenciaLockedError(
            "Competência already confirmed by another operator",
            company_id=company_id,
            competencia=f"{competencia_ano:04d}-{competencia_mes:02d}",
            locked_by=current.locked_by,
        )
