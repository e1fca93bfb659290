"""Tests for opening balance carry-forward between competências."""

import pytest

from stcredit.exceptions import InvalidBalanceError, InvalidTransitionError
from stcredit.models import BalanceInput, Competencia
from stcredit.repositories.base import BalanceSnapshot
from stcredit.services.carry_forward import (
    INVALID_INPUT_COERCED,
    NEGATIVE_OPENING_BALANCE,
    OPENING_EXCEEDS_QUANTITY,
    BalanceCarryForward,
    NoteBalance,
    NoteState,
    coerce_opening_balance,
    edit,
    suggest,
)

JAN_2025 = Competencia(year=2025, month=1)
DEC_2024 = Competencia(year=2024, month=12)


def _note(guia_id="g-1", note_number="123", quantity=100.0):
    return BalanceInput(guia_id=guia_id, note_number=note_number, quantity=quantity)


def _snapshot(competencia, guia_id="g-1", note_number="123", **values):
    defaults = dict(saldo_remanescente=40.0, quantidade_original=100.0)
    defaults.update(values)
    return BalanceSnapshot(
        company_id="acme",
        guia_id=guia_id,
        note_number=note_number,
        competencia_ano=competencia.year,
        competencia_mes=competencia.month,
        **defaults,
    )


def _manager(repository, competencia=JAN_2025, **kwargs):
    return BalanceCarryForward(repository, "acme", competencia, **kwargs)


def test_suggest_only_applies_to_empty_notes():
    empty = NoteBalance(guia_id="g", note_number="1", quantity=10)
    suggested = suggest(empty, 4.0)
    assert suggested.state is NoteState.SUGGESTED
    assert suggested.opening_balance == 4.0

    edited = edit(empty, 7.0)
    assert suggest(edited, 4.0) is edited


def test_previous_period_seeds_opening_balance_across_year_boundary(repository):
    repository.upsert_snapshots([_snapshot(DEC_2024, saldo_remanescente=40.0)])
    manager = _manager(repository)

    [note] = manager.load([_note()])

    assert note.state is NoteState.SUGGESTED
    assert note.opening_balance == 40.0
    assert note.current_balance == 60.0


def test_seeding_happens_once_and_keeps_operator_edits(repository):
    repository.upsert_snapshots([_snapshot(DEC_2024, saldo_remanescente=40.0)])
    manager = _manager(repository)
    manager.load([_note()])

    manager.edit_opening_balance("g-1", "25")
    [note] = manager.load([_note()])

    assert note.opening_balance == 25.0
    assert note.state is NoteState.EDITED


def test_snapshot_matched_by_normalized_note_number(repository):
    repository.upsert_snapshots(
        [_snapshot(DEC_2024, guia_id="other-guia", note_number="000123")]
    )
    [note] = _manager(repository).load([_note(note_number="123")])
    assert note.opening_balance == 40.0


def test_current_period_snapshots_restore_and_skip_suggestion(repository):
    repository.upsert_snapshots(
        [
            _snapshot(DEC_2024, saldo_remanescente=40.0),
            _snapshot(JAN_2025, saldo_remanescente=90.0, saldo_anterior=10.0),
        ]
    )
    [note] = _manager(repository).load([_note()])

    assert note.state is NoteState.RESTORED
    assert note.confirmed
    assert note.opening_balance == 10.0


def test_confirm_writes_snapshot(repository):
    manager = _manager(repository)
    manager.load([_note()])
    manager.edit_opening_balance("g-1", 30)

    report = manager.confirm_one("g-1")

    assert report.ok
    [stored] = repository.list_snapshots("acme", 2025, 1)
    assert stored.saldo_remanescente == 70.0
    assert stored.quantidade_original == 100.0
    assert stored.quantidade_consumida == 0.0
    assert stored.saldo_anterior == 30.0
    assert manager.get("g-1").state is NoteState.CONFIRMED


def test_confirm_is_idempotent(repository):
    manager = _manager(repository)
    manager.load([_note()])

    manager.confirm_one("g-1")
    writes = repository.write_count
    report = manager.confirm_one("g-1")

    assert report.ok
    assert len(repository.list_snapshots("acme", 2025, 1)) == 1
    assert repository.write_count == writes


def test_confirm_all_is_one_batch(repository):
    manager = _manager(repository)
    manager.load([_note(), _note("g-2", "124", 50.0), _note("g-3", "125", 30.0)])

    report = manager.confirm_all()

    assert len(report.succeeded) == 3
    assert repository.write_count == 1
    assert all(n.confirmed for n in manager.notes())


def test_edit_on_confirmed_note_writes_through(repository):
    manager = _manager(repository)
    manager.load([_note()])
    manager.confirm_one("g-1")

    note = manager.edit_opening_balance("g-1", "12,5")

    assert note.state is NoteState.CONFIRMED
    [stored] = repository.list_snapshots("acme", 2025, 1)
    assert stored.saldo_anterior == 12.5
    assert stored.saldo_remanescente == 87.5


def test_out_of_range_edit_is_flagged(repository):
    manager = _manager(repository)
    manager.load([_note(quantity=10.0)])

    assert manager.edit_opening_balance("g-1", -1).warnings == (NEGATIVE_OPENING_BALANCE,)
    assert manager.edit_opening_balance("g-1", 11).warnings == (OPENING_EXCEEDS_QUANTITY,)


def test_strict_mode_rejects_out_of_range_edit(repository):
    manager = _manager(repository, strict=True)
    manager.load([_note(quantity=10.0)])

    with pytest.raises(InvalidBalanceError):
        manager.edit_opening_balance("g-1", 11)
    assert manager.get("g-1").opening_balance == 0.0


def test_non_numeric_edit_is_coerced_to_zero():
    assert coerce_opening_balance("abc") == (0.0, (INVALID_INPUT_COERCED,))
    assert coerce_opening_balance("1.919,000") == (1919.0, ())


def test_unconfirm_deletes_snapshot(repository):
    manager = _manager(repository)
    manager.load([_note()])
    manager.confirm_one("g-1")

    note = manager.unconfirm_one("g-1")

    assert not note.confirmed
    assert repository.list_snapshots("acme", 2025, 1) == []


def test_unconfirm_refused_when_next_period_depends_on_it(repository):
    manager = _manager(repository)
    manager.load([_note()])
    manager.confirm_one("g-1")
    repository.upsert_snapshots([_snapshot(Competencia(year=2025, month=2))])

    with pytest.raises(InvalidTransitionError):
        manager.unconfirm_one("g-1")
    assert len(repository.list_snapshots("acme", 2025, 1)) == 1


@pytest.mark.parametrize("raw", [float("nan"), float("inf"), float("-inf")])
def test_non_finite_edit_is_coerced_to_zero(repository, raw):
    manager = _manager(repository, strict=True)
    manager.load([_note(quantity=10.0)])

    note = manager.edit_opening_balance("g-1", raw)

    assert note.opening_balance == 0.0
    assert note.warnings == (INVALID_INPUT_COERCED,)


def _allocated_snapshot(consumed, opening=0.0, quantity=100.0):
    current = quantity - opening
    return _snapshot(
        JAN_2025,
        saldo_remanescente=current - consumed,
        quantidade_original=current,
        quantidade_consumida=consumed,
        saldo_anterior=opening,
        confirmed=True,
    )


def test_confirm_keeps_saved_consumption(repository):
    saved = _allocated_snapshot(consumed=60.0)
    repository.upsert_snapshots([saved])
    manager = _manager(repository)
    manager.load([_note()])
    writes = repository.write_count

    report = manager.confirm_all()

    assert report.ok
    assert repository.write_count == writes
    assert repository.list_snapshots("acme", 2025, 1) == [saved]


def test_write_through_keeps_saved_consumption(repository):
    repository.upsert_snapshots([_allocated_snapshot(consumed=60.0)])
    manager = _manager(repository)
    manager.load([_note()])

    manager.edit_opening_balance("g-1", 10)

    [stored] = repository.list_snapshots("acme", 2025, 1)
    assert stored.saldo_anterior == 10.0
    assert stored.quantidade_consumida == 60.0
    assert stored.quantidade_original == 90.0
    assert stored.saldo_remanescente == 30.0
