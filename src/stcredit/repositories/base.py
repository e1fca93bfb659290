"""Repository interfaces for balance snapshot persistence."""

from dataclasses import dataclass, replace
from typing import Optional, Protocol

LOCK_CONFIRMED = "confirmed"
LOCK_OPEN = "open"


@dataclass(frozen=True)
class SnapshotKey:
    """Upsert key of a balance snapshot."""

    company_id: str
    guia_id: str
    competencia_ano: int
    competencia_mes: int

    def as_dict(self) -> dict:
        return {
            "empresa_id": self.company_id,
            "guia_id": self.guia_id,
            "competencia_ano": self.competencia_ano,
            "competencia_mes": self.competencia_mes,
        }


@dataclass(frozen=True)
class BalanceSnapshot:
    """Persisted per-note balance for a competência."""

    company_id: str
    guia_id: str
    note_number: str
    competencia_ano: int
    competencia_mes: int
    saldo_remanescente: float
    quantidade_original: float
    quantidade_consumida: float = 0.0
    saldo_anterior: float = 0.0
    confirmed: bool = True

    @property
    def key(self) -> SnapshotKey:
        return SnapshotKey(
            company_id=self.company_id,
            guia_id=self.guia_id,
            competencia_ano=self.competencia_ano,
            competencia_mes=self.competencia_mes,
        )

    def with_values(self, **changes: object) -> "BalanceSnapshot":
        return replace(self, **changes)


@dataclass(frozen=True)
class CompetenciaLockRecord:
    """Storage-level lock row, unique per company and competência."""

    company_id: str
    competencia_ano: int
    competencia_mes: int
    status: str
    locked_by: Optional[str]
    updated_at: str


@dataclass(frozen=True)
class CreditControlRecord:
    """Persisted ICMS-ST credit summary for a competência."""

    company_id: str
    competencia_ano: int
    competencia_mes: int
    saldo_anterior: float
    credito_periodo: float
    utilizado_periodo: float
    estornado_periodo: float
    saldo_final: float
    total_guias: int
    guias_utilizaveis: int
    guias_utilizadas: int
    guias_nao_pagas: int
    status: str = "aberto"
    observacoes: Optional[str] = None
    conferido_por: Optional[str] = None
    conferido_em: Optional[str] = None


class BalanceRepository(Protocol):
    """Persistence operations required by the credit engine."""

    def list_snapshots(
        self, company_id: str, competencia_ano: int, competencia_mes: int
    ) -> list[BalanceSnapshot]:
        ...

    def upsert_snapshots(self, snapshots: list[BalanceSnapshot]) -> None:
        ...

    def delete_snapshot(self, key: SnapshotKey) -> None:
        ...

    def get_lock(
        self, company_id: str, competencia_ano: int, competencia_mes: int
    ) -> Optional[CompetenciaLockRecord]:
        ...

    def acquire_lock(
        self,
        company_id: str,
        competencia_ano: int,
        competencia_mes: int,
        *,
        operator: str,
    ) -> CompetenciaLockRecord:
        ...

    def release_lock(
        self,
        company_id: str,
        competencia_ano: int,
        competencia_mes: int,
        *,
        operator: str,
    ) -> CompetenciaLockRecord:
        ...

    def get_credit_control(
        self, company_id: str, competencia_ano: int, competencia_mes: int
    ) -> Optional[CreditControlRecord]:
        ...

    def save_credit_control(self, record: CreditControlRecord) -> CreditControlRecord:
        ...
