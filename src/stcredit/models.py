"""Pydantic data models for invoices, guias, balances and allocation."""

import datetime as dt
import math
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator

from stcredit.normalizer import normalize_note_number, parse_br_number

GuiaStatus = Literal[
    "UTILIZAVEL",
    "NAO PAGO",
    "UTILIZADO",
    "NAO UTILIZAVEL",
    "VENDA INTERNA",
]
ConsumptionStatus = Literal["UTILIZADO", "PARCIAL", "PENDENTE"]
MovementType = Literal["entrada", "saida"]
CreditControlStatus = Literal["aberto", "conferido", "fechado"]


def compute_current_balance(quantity: float, opening_balance: float) -> float:
    """Current balance is quantity minus opening balance when one is set."""
    if opening_balance > 0:
        return quantity - opening_balance
    return quantity


class Competencia(BaseModel):
    """Accounting period (year + month)."""

    model_config = {"frozen": True}

    year: int = Field(..., ge=2000, le=2100)
    month: int = Field(..., ge=1, le=12)

    @classmethod
    def from_date(cls, value: dt.date) -> "Competencia":
        return cls(year=value.year, month=value.month)

    def previous(self) -> "Competencia":
        """Prior calendar month; January rolls back to December."""
        if self.month == 1:
            return Competencia(year=self.year - 1, month=12)
        return Competencia(year=self.year, month=self.month - 1)

    def next(self) -> "Competencia":
        if self.month == 12:
            return Competencia(year=self.year + 1, month=1)
        return Competencia(year=self.year, month=self.month + 1)

    @property
    def label(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"

    def __str__(self) -> str:
        return self.label


class Invoice(BaseModel):
    """Purchase invoice (NF-e) row from the external import pipeline."""

    note_number: str = Field(..., min_length=1, description="Note number, may be zero-padded")
    quantity: float = Field(0.0, ge=0, description="Invoiced quantity")
    icms_proprio: float = Field(0.0, description="ICMS-próprio amount on the invoice")
    icms_st: float = Field(0.0, description="ICMS-ST amount on the invoice")
    access_key: Optional[str] = Field(None, description="44-digit NF-e access key")
    competencia: Optional[dt.date] = Field(None, description="Competência date")

    @field_validator("quantity", "icms_proprio", "icms_st", mode="before")
    @classmethod
    def parse_amounts(cls, v: object) -> float:
        return parse_br_number(v)

    @field_validator("access_key")
    @classmethod
    def validate_access_key(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        cleaned = "".join(ch for ch in v if not ch.isspace())
        if not cleaned:
            return None
        if len(cleaned) != 44 or not cleaned.isdigit():
            raise ValueError("access_key must have 44 digits")
        return cleaned

    @property
    def normalized_number(self) -> str:
        return normalize_note_number(self.note_number)


class PaymentRecord(BaseModel):
    """Payment receipt ("guia") evidencing ICMS-ST paid for a note."""

    guia_id: str = Field(..., min_length=1)
    note_number: str = Field(..., min_length=1)
    status: GuiaStatus = Field("NAO PAGO", description="Missing status means unpaid")
    icms_proprio_credit: float = Field(0.0, description="Credited ICMS-próprio")
    icms_st_credit: float = Field(0.0, description="Credited ICMS-ST")
    payment_doc: Optional[str] = None
    barcode: Optional[str] = None
    note_date: Optional[dt.date] = None
    guia_value: float = 0.0

    @field_validator("status", mode="before")
    @classmethod
    def default_status(cls, v: object) -> object:
        if v is None or (isinstance(v, str) and not v.strip()):
            return "NAO PAGO"
        if isinstance(v, str):
            return " ".join(v.strip().upper().replace("_", " ").split())
        return v

    @field_validator("icms_proprio_credit", "icms_st_credit", "guia_value", mode="before")
    @classmethod
    def parse_amounts(cls, v: object) -> float:
        return parse_br_number(v)

    @property
    def is_usable(self) -> bool:
        return self.status == "UTILIZAVEL"

    @property
    def normalized_number(self) -> str:
        return normalize_note_number(self.note_number)


class EnrichedRow(BaseModel):
    """Guia joined with its invoice, with per-unit amounts and balances."""

    guia: PaymentRecord
    quantity: float
    opening_balance: float
    current_balance: float
    icms_proprio_total: float
    icms_st_total: float
    icms_proprio_per_unit: float
    icms_st_per_unit: float
    access_key: Optional[str] = None
    matched: bool = False
    warnings: List[str] = Field(default_factory=list)

    @property
    def guia_id(self) -> str:
        return self.guia.guia_id

    @property
    def note_number(self) -> str:
        return self.guia.note_number


class NoteBalanceView(BaseModel):
    """Carry-forward state of a single note, as exposed to operators."""

    guia_id: str
    note_number: str
    quantity: float
    opening_balance: float
    current_balance: float
    state: Literal["EMPTY", "SUGGESTED", "RESTORED", "EDITED", "CONFIRMED"]
    confirmed: bool
    warnings: List[str] = Field(default_factory=list)


class StockMovementRecord(BaseModel):
    """Single entry or exit line of the stock movement report."""

    date: dt.date
    document: str
    nf_number: Optional[str] = None
    type: MovementType
    quantity: float = Field(..., ge=0)
    unit_value: float = 0.0
    total_value: float = 0.0
    running_balance: float = 0.0
    average_value: float = 0.0
    balance_value: float = 0.0


class StockMovementReport(BaseModel):
    """Parsed stock movement report with period aggregates."""

    company: str = ""
    product: str = ""
    period: str = ""
    opening_quantity: float = 0.0
    opening_average_value: float = 0.0
    opening_total_value: float = 0.0
    movements: List[StockMovementRecord] = Field(default_factory=list)
    total_entries: float = 0.0
    total_exits: float = 0.0
    total_entry_value: float = 0.0
    total_exit_value: float = 0.0

    @property
    def closing_quantity(self) -> float:
        return self.opening_quantity + self.total_entries - self.total_exits

    @model_validator(mode="after")
    def validate_totals_finite(self) -> "StockMovementReport":
        for value, field_name in (
            (self.total_entries, "total_entries"),
            (self.total_exits, "total_exits"),
            (self.opening_quantity, "opening_quantity"),
        ):
            if not math.isfinite(value):
                raise ValueError(f"{field_name} must be finite")
        return self


class AllocationRow(BaseModel):
    """FIFO consumption result for one note."""

    guia_id: str
    note_number: str
    opening: float
    consumed: float
    closing: float
    status: ConsumptionStatus


class AllocationResult(BaseModel):
    """FIFO consumption result for a period."""

    total_exits: float
    rows: List[AllocationRow]
    fully_consumed_count: int
    total_consumed: float
    unallocated_exits: float


class BalanceInput(BaseModel):
    """Note balance payload submitted for confirmation."""

    guia_id: str = Field(..., min_length=1)
    note_number: str = Field(..., min_length=1)
    quantity: float = Field(..., ge=0)
    opening_balance: float = 0.0

    @model_validator(mode="after")
    def validate_numeric_finite(self) -> "BalanceInput":
        for value, field_name in (
            (self.quantity, "quantity"),
            (self.opening_balance, "opening_balance"),
        ):
            if not math.isfinite(value):
                raise ValueError(f"{field_name} must be finite")
        return self

    @property
    def current_balance(self) -> float:
        return compute_current_balance(self.quantity, self.opening_balance)


class AllocationInputRow(BaseModel):
    """Note current balance submitted for FIFO allocation."""

    guia_id: str = Field(..., min_length=1)
    note_number: str = Field(..., min_length=1)
    current_balance: float
    opening_balance: float = 0.0

    @field_validator("current_balance")
    @classmethod
    def validate_finite(cls, v: float) -> float:
        if not math.isfinite(v):
            raise ValueError("current_balance must be finite")
        return v


class CompetenciaStatusResponse(BaseModel):
    """Lock status of a company/competência pair."""

    company_id: str
    competencia: str
    confirmed: bool
    locked_by: Optional[str] = None
    source: Literal["lock", "snapshots", "none"]


class SyncFailureResponse(BaseModel):
    key: dict
    error: str


class SyncReportResponse(BaseModel):
    """Outcome of a snapshot upsert batch."""

    succeeded: List[dict]
    failed: List[SyncFailureResponse]


class CreditControlResponse(BaseModel):
    """Per-period ICMS-ST credit summary."""

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
    status: CreditControlStatus
    observacoes: Optional[str] = None
    conferido_por: Optional[str] = None
    conferido_em: Optional[str] = None


class PeriodRequest(BaseModel):
    """Company and competência addressed by an API request."""

    company_id: str = Field(..., min_length=1)
    year: int = Field(..., ge=2000, le=2100)
    month: int = Field(..., ge=1, le=12)

    @property
    def competencia(self) -> Competencia:
        return Competencia(year=self.year, month=self.month)


class EnrichmentPreviewRequest(PeriodRequest):
    payments: List[PaymentRecord]
    invoices: List[Invoice] = Field(default_factory=list)


class EnrichmentPreviewResponse(BaseModel):
    rows: List[EnrichedRow]
    balances: List[NoteBalanceView]


class BalanceConfirmRequest(PeriodRequest):
    balances: List[BalanceInput] = Field(..., min_length=1)


class BalanceEditRequest(PeriodRequest):
    guia_id: str = Field(..., min_length=1)
    note_number: str = Field(..., min_length=1)
    quantity: float = Field(..., ge=0)
    opening_balance: Optional[Union[float, str]] = None


class BalanceUnconfirmRequest(PeriodRequest):
    guia_id: str = Field(..., min_length=1)
    note_number: str = Field(..., min_length=1)
    quantity: float = Field(0.0, ge=0)


class AllocationRequest(PeriodRequest):
    total_exits: float = Field(..., ge=0)
    rows: List[AllocationInputRow]

    @field_validator("total_exits")
    @classmethod
    def validate_finite(cls, v: float) -> float:
        if not math.isfinite(v):
            raise ValueError("total_exits must be finite")
        return v


class AllocationSaveResponse(BaseModel):
    allocation: AllocationResult
    sync: SyncReportResponse


class CreditControlBuildRequest(PeriodRequest):
    payments: List[PaymentRecord]


class CreditControlTransitionRequest(BaseModel):
    status: CreditControlStatus


class CreditControlObservationsRequest(BaseModel):
    observacoes: Optional[str] = Field(None, max_length=2000)
