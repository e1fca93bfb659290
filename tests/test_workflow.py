"""End-to-end tests for an operator workflow session."""

import pytest

from stcredit.exceptions import (
    CompetenciaLockedError,
    CompetenciaNotConfirmedError,
    ContractError,
    StockMovementParseError,
)
from stcredit.models import Competencia, Invoice, PaymentRecord
from stcredit.repositories.base import BalanceSnapshot
from stcredit.services.carry_forward import NoteState
from stcredit.services.workflow import WorkflowSession

DEC_2024 = Competencia(year=2024, month=12)
JAN_2025 = Competencia(year=2025, month=1)

STOCK_REPORT = "\n".join(
    [
        ";;;;;ACME",
        ";;;;;01/01/2025;;;;;31/01/2025",
        ";;;;;PRODUTO",
        "Data;;;;;Documento",
        "05/01/2025;;;;;NF 10;;;;;;;;;;;;;120,000;;;;;;;;;",
    ]
)


def _feeds():
    payments = [
        PaymentRecord(guia_id=f"g-{n}", note_number=n, status="UTILIZAVEL", icms_st_credit=q)
        for n, q in (("1", 100), ("2", 50), ("3", 30))
    ]
    invoices = [Invoice(note_number=n, quantity=q) for n, q in (("1", 100), ("2", 50), ("3", 30))]
    return payments, invoices


@pytest.fixture
def session(repository):
    session = WorkflowSession(repository, "ana")
    session.select_competencia("acme", JAN_2025)
    return session


def test_full_month_cycle(session, repository):
    payments, invoices = _feeds()
    session.load(payments, invoices)
    session.confirm_competencia()
    session.confirm_all()

    session.import_stock_movement(STOCK_REPORT)
    result = session.compute_allocation()
    assert [r.consumed for r in result.rows] == [100, 20, 0]

    report = session.save_allocation()

    assert report.ok
    stored = {s.guia_id: s for s in repository.list_snapshots("acme", 2025, 1)}
    assert stored["g-1"].saldo_remanescente == 0
    assert stored["g-2"].quantidade_consumida == 20
    assert stored["g-3"].saldo_remanescente == 30


def test_carry_forward_seeds_current_balances(session, repository):
    repository.upsert_snapshots(
        [
            BalanceSnapshot(
                company_id="acme",
                guia_id="g-1",
                note_number="1",
                competencia_ano=2024,
                competencia_mes=12,
                saldo_remanescente=40,
                quantidade_original=100,
            )
        ]
    )
    rows = session.load(*_feeds())

    assert rows[0].opening_balance == 40
    assert rows[0].current_balance == 60
    assert session.views()[0].state == NoteState.SUGGESTED.value


def test_edit_updates_rows_and_clears_allocation(session):
    session.load(*_feeds())
    session.compute_allocation(total_exits=10)

    session.edit_opening_balance("g-1", "30")

    assert session.rows[0].current_balance == 70
    assert session.allocation is None


def test_confirming_notes_requires_confirmed_competencia(session):
    session.load(*_feeds())
    with pytest.raises(CompetenciaNotConfirmedError):
        session.confirm_all()


def test_saving_allocation_requires_confirmed_competencia(session):
    session.load(*_feeds())
    session.compute_allocation(total_exits=5)
    with pytest.raises(CompetenciaNotConfirmedError):
        session.save_allocation()


def test_selector_is_frozen_while_confirmed(session):
    session.confirm_competencia()

    with pytest.raises(CompetenciaLockedError):
        session.select_competencia("acme", Competencia(year=2025, month=2))

    session.reopen_competencia()
    session.select_competencia("acme", Competencia(year=2025, month=2))
    assert session.competencia == Competencia(year=2025, month=2)


def test_switching_competencia_discards_session_state(session):
    session.load(*_feeds())
    session.import_stock_movement(STOCK_REPORT)

    session.select_competencia("acme", DEC_2024)

    assert session.rows == []
    assert session.stock_report is None
    assert session.carry_forward is None


def test_rejected_report_keeps_previous_state(session):
    session.load(*_feeds())
    session.import_stock_movement(STOCK_REPORT)
    allocation = session.compute_allocation()

    with pytest.raises(StockMovementParseError):
        session.import_stock_movement("no header here")

    assert session.stock_report is not None
    assert session.stock_report.total_exits == 120
    assert session.allocation is allocation


def test_allocation_without_report_or_exits(session):
    session.load(*_feeds())
    with pytest.raises(ContractError) as excinfo:
        session.compute_allocation()
    assert excinfo.value.code == "NO_STOCK_REPORT"


def test_actions_need_a_selection(repository):
    with pytest.raises(ContractError) as excinfo:
        WorkflowSession(repository, "ana").load([], [])
    assert excinfo.value.code == "NO_COMPETENCIA_SELECTED"


def test_confirm_after_saved_allocation_keeps_fifo_outcome(session, repository):
    payments, invoices = _feeds()
    session.load(payments, invoices)
    session.confirm_competencia()
    session.confirm_all()
    session.compute_allocation(total_exits=60)
    session.save_allocation()
    session.confirm_all()
    saved = {s.guia_id: s for s in repository.list_snapshots("acme", 2025, 1)}

    later = WorkflowSession(repository, "ana")
    later.select_competencia("acme", JAN_2025)
    later.load(payments, invoices)
    later.confirm_all()

    stored = {s.guia_id: s for s in repository.list_snapshots("acme", 2025, 1)}
    assert stored == saved
    assert stored["g-1"].saldo_remanescente == 40
    assert stored["g-1"].quantidade_consumida == 60

    february = WorkflowSession(repository, "ana")
    february.select_competencia("acme", Competencia(year=2025, month=2))
    february.load(payments, invoices)
    assert february.carry_forward.get("g-1").opening_balance == 40
