"""Opening balance carry-forward between competências."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from enum import Enum
from typing import Iterable, Optional, Protocol, Union

from stcredit.exceptions import ContractError, InvalidBalanceError, InvalidTransitionError
from stcredit.models import Competencia, NoteBalanceView, compute_current_balance
from stcredit.normalizer import normalize_note_number, parse_br_number
from stcredit.repositories.base import BalanceRepository, BalanceSnapshot, SnapshotKey
from stcredit.services.persistence import BalanceSynchronizer, SyncReport

logger = logging.getLogger(__name__)

NEGATIVE_OPENING_BALANCE = "NEGATIVE_OPENING_BALANCE"
OPENING_EXCEEDS_QUANTITY = "OPENING_EXCEEDS_QUANTITY"
INVALID_INPUT_COERCED = "INVALID_INPUT_COERCED"

_TOLERANCE = 1e-9


class NoteState(str, Enum):
    """Carry-forward state of a note within one competência."""

    EMPTY = "EMPTY"
    SUGGESTED = "SUGGESTED"
    RESTORED = "RESTORED"
    EDITED = "EDITED"
    CONFIRMED = "CONFIRMED"


CONFIRMED_STATES = frozenset({NoteState.RESTORED, NoteState.CONFIRMED})


class NoteSource(Protocol):
    """Enriched row or submitted balance: a guia, its note and quantity."""

    @property
    def guia_id(self) -> str: ...

    @property
    def note_number(self) -> str: ...

    quantity: float


@dataclass(frozen=True)
class NoteBalance:
    """Opening balance of one note and where it came from."""

    guia_id: str
    note_number: str
    quantity: float
    opening_balance: float = 0.0
    state: NoteState = NoteState.EMPTY
    warnings: tuple[str, ...] = ()

    @property
    def confirmed(self) -> bool:
        return self.state in CONFIRMED_STATES

    @property
    def current_balance(self) -> float:
        return compute_current_balance(self.quantity, self.opening_balance)


# Reducers. Each returns the next NoteBalance and never touches storage.


def restore(note: NoteBalance, snapshot: BalanceSnapshot) -> NoteBalance:
    """Seed from the current competência's stored snapshot."""
    state = NoteState.RESTORED if snapshot.confirmed else NoteState.EDITED
    return replace(note, opening_balance=snapshot.saldo_anterior, state=state)


def suggest(note: NoteBalance, value: float) -> NoteBalance:
    """Seed from the prior competência; only an untouched note takes it."""
    if note.state is not NoteState.EMPTY:
        return note
    return replace(note, opening_balance=value, state=NoteState.SUGGESTED)


def edit(note: NoteBalance, value: float, warnings: tuple[str, ...] = ()) -> NoteBalance:
    """Operator override; a confirmed note stays confirmed (written through)."""
    state = NoteState.CONFIRMED if note.confirmed else NoteState.EDITED
    return replace(note, opening_balance=value, state=state, warnings=warnings)


def confirm(note: NoteBalance) -> NoteBalance:
    return replace(note, state=NoteState.CONFIRMED)


def unconfirm(note: NoteBalance) -> NoteBalance:
    if not note.confirmed:
        return note
    return replace(note, state=NoteState.EDITED)


def coerce_opening_balance(raw: Union[str, float, int, None]) -> tuple[float, tuple[str, ...]]:
    """
    Turn operator input into a number.

    Non-numeric input becomes 0 and is flagged instead of rejected.
    """
    try:
        return parse_br_number(raw), ()
    except ValueError:
        logger.warning("non-numeric opening balance %r coerced to 0", raw)
        return 0.0, (INVALID_INPUT_COERCED,)


class BalanceCarryForward:
    """
    Per-competência opening balance manager for one company.

    On the first load, notes are seeded either from snapshots already stored
    for this competência (restored, suggestion skipped) or from the previous
    competência's closing balances (suggested). Seeding happens once per
    manager; operator edits are never overwritten by a later load.
    """

    def __init__(
        self,
        repository: BalanceRepository,
        company_id: str,
        competencia: Competencia,
        *,
        strict: bool = False,
        synchronizer: Optional[BalanceSynchronizer] = None,
    ) -> None:
        self.repository = repository
        self.company_id = company_id
        self.competencia = competencia
        self.strict = strict
        self.synchronizer = synchronizer or BalanceSynchronizer(repository)
        self._notes: dict[str, NoteBalance] = {}
        self._persisted: dict[str, BalanceSnapshot] = {}
        self._seeded = False

    @property
    def seeded(self) -> bool:
        return self._seeded

    def load(self, rows: Iterable[NoteSource]) -> list[NoteBalance]:
        """Register notes and seed opening balances on first load."""
        for row in rows:
            existing = self._notes.get(row.guia_id)
            if existing is None:
                self._notes[row.guia_id] = NoteBalance(
                    guia_id=row.guia_id,
                    note_number=row.note_number,
                    quantity=row.quantity,
                )
            else:
                self._notes[row.guia_id] = replace(
                    existing, note_number=row.note_number, quantity=row.quantity
                )

        if not self._seeded:
            self._seed()
            self._seeded = True

        return self.notes()

    def notes(self) -> list[NoteBalance]:
        return list(self._notes.values())

    def get(self, guia_id: str) -> NoteBalance:
        note = self._notes.get(guia_id)
        if note is None:
            raise ContractError(
                "UNKNOWN_GUIA",
                f"Guia {guia_id} is not loaded in competência {self.competencia}",
                status_code=404,
            )
        return note

    def opening_balances(self) -> dict[str, float]:
        return {guia_id: n.opening_balance for guia_id, n in self._notes.items()}

    def views(self) -> list[NoteBalanceView]:
        return [
            NoteBalanceView(
                guia_id=n.guia_id,
                note_number=n.note_number,
                quantity=n.quantity,
                opening_balance=n.opening_balance,
                current_balance=n.current_balance,
                state=n.state.value,
                confirmed=n.confirmed,
                warnings=list(n.warnings),
            )
            for n in self._notes.values()
        ]

    def _seed(self) -> None:
        current = self.repository.list_snapshots(
            self.company_id, self.competencia.year, self.competencia.month
        )
        if current:
            matched = 0
            for guia_id, note in self._notes.items():
                snapshot = _match_snapshot(note, current)
                if snapshot is None:
                    continue
                self._notes[guia_id] = restore(note, snapshot)
                self._persisted[guia_id] = snapshot
                matched += 1
            logger.info(
                "restored %d notes from %d snapshots of %s",
                matched,
                len(current),
                self.competencia,
            )
            return

        previous = self.competencia.previous()
        prior = self.repository.list_snapshots(self.company_id, previous.year, previous.month)
        suggested = 0
        for guia_id, note in self._notes.items():
            snapshot = _match_snapshot(note, prior)
            if snapshot is None:
                continue
            updated = suggest(note, snapshot.saldo_remanescente)
            if updated is not note:
                suggested += 1
            self._notes[guia_id] = updated
        logger.info("suggested %d opening balances from %s", suggested, previous)

    def _validate(self, note: NoteBalance, value: float) -> tuple[str, ...]:
        warnings: list[str] = []
        if value < 0:
            warnings.append(NEGATIVE_OPENING_BALANCE)
        if value > note.quantity:
            warnings.append(OPENING_EXCEEDS_QUANTITY)
        if warnings and self.strict:
            raise InvalidBalanceError(
                f"Opening balance {value} out of range for note {note.note_number}",
                guia_id=note.guia_id,
                quantity=note.quantity,
                reasons=warnings,
            )
        if warnings:
            logger.warning(
                "opening balance %s for note %s flagged: %s",
                value,
                note.note_number,
                ", ".join(warnings),
            )
        return tuple(warnings)

    def snapshot_for(self, note: NoteBalance) -> BalanceSnapshot:
        """
        Snapshot written when a note's opening balance is confirmed.

        Consumption already saved for the period is kept: the remaining balance
        becomes the new current balance minus what FIFO consumed.
        """
        stored = self._persisted.get(note.guia_id)
        consumed = stored.quantidade_consumida if stored is not None else 0.0
        current = note.current_balance
        return BalanceSnapshot(
            company_id=self.company_id,
            guia_id=note.guia_id,
            note_number=note.note_number,
            competencia_ano=self.competencia.year,
            competencia_mes=self.competencia.month,
            saldo_remanescente=current - consumed,
            quantidade_original=current if consumed > 0 else note.quantity,
            quantidade_consumida=consumed,
            saldo_anterior=note.opening_balance,
            confirmed=True,
        )

    def _unchanged(self, note: NoteBalance) -> bool:
        stored = self._persisted.get(note.guia_id)
        return (
            note.confirmed
            and stored is not None
            and stored.confirmed
            and math.isclose(stored.saldo_anterior, note.opening_balance, abs_tol=_TOLERANCE)
        )

    def edit_opening_balance(
        self, guia_id: str, raw: Union[str, float, int, None]
    ) -> NoteBalance:
        """
        Apply an operator edit.

        The in-memory value changes immediately. A confirmed note is written
        through to storage before returning; a failed write raises
        PersistenceError and the in-memory edit stays applied.
        """
        note = self.get(guia_id)
        value, coerced = coerce_opening_balance(raw)
        warnings = coerced + self._validate(note, value)
        updated = edit(note, value, warnings)
        self._notes[guia_id] = updated

        if updated.confirmed:
            snapshot = self.snapshot_for(updated)
            report = self.synchronizer.upsert([snapshot])
            report.raise_for_failures()
            self._persisted[guia_id] = snapshot

        return updated

    def confirm_one(self, guia_id: str) -> SyncReport:
        return self._confirm([self.get(guia_id)])

    def confirm_all(self) -> SyncReport:
        return self._confirm(list(self._notes.values()))

    def _confirm(self, notes: list[NoteBalance]) -> SyncReport:
        pending: list[BalanceSnapshot] = []
        unchanged: list[SnapshotKey] = []
        for note in notes:
            snapshot = self.snapshot_for(note)
            if self._unchanged(note):
                unchanged.append(snapshot.key)
                continue
            pending.append(snapshot)

        report = self.synchronizer.upsert(pending)
        by_key = {s.key: s for s in pending}
        for key in report.succeeded:
            snapshot = by_key[key]
            self._notes[key.guia_id] = confirm(self._notes[key.guia_id])
            self._persisted[key.guia_id] = snapshot

        report.succeeded.extend(unchanged)
        logger.info(
            "confirmed %d notes in %s (%d unchanged, %d failed)",
            len(report.succeeded),
            self.competencia,
            len(unchanged),
            len(report.failed),
        )
        return report

    def unconfirm_one(self, guia_id: str) -> NoteBalance:
        """Drop a note's confirmation while no later competência depends on it."""
        note = self.get(guia_id)
        if not note.confirmed:
            return note

        following = self.competencia.next()
        later = self.repository.list_snapshots(self.company_id, following.year, following.month)
        if any(s.guia_id == guia_id for s in later):
            raise InvalidTransitionError(
                f"Note {note.note_number} is carried forward into {following}",
                guia_id=guia_id,
            )

        key = SnapshotKey(
            company_id=self.company_id,
            guia_id=guia_id,
            competencia_ano=self.competencia.year,
            competencia_mes=self.competencia.month,
        )
        self.repository.delete_snapshot(key)
        self._persisted.pop(guia_id, None)
        updated = unconfirm(note)
        self._notes[guia_id] = updated
        return updated

    def mark_persisted(self, snapshots: Iterable[BalanceSnapshot]) -> None:
        """Record snapshots written by another step (FIFO save) for this period."""
        for snapshot in snapshots:
            note = self._notes.get(snapshot.guia_id)
            if note is None:
                continue
            self._notes[snapshot.guia_id] = confirm(note)
            self._persisted[snapshot.guia_id] = snapshot


def _match_snapshot(
    note: NoteBalance, snapshots: list[BalanceSnapshot]
) -> Optional[BalanceSnapshot]:
    for snapshot in snapshots:
        if snapshot.guia_id == note.guia_id:
            return snapshot

    normalized = normalize_note_number(note.note_number)
    for snapshot in snapshots:
        if normalize_note_number(snapshot.note_number) == normalized:
            return snapshot
    return None
