from __future__ import annotations

import datetime as dt
from collections.abc import Iterable, Sequence
from typing import NamedTuple, Protocol

from .groups import group_token
from .models import Reservation, Space, Superseded
from .timeutil import format_time, times_equal


class SlotGuard(NamedTuple):
    # version of the group slot read before the occupants were looked up
    key: str
    version: int


class SlotStore(Protocol):
    def find_by_spaces_and_date(self, space_ids: Iterable[str], on: dt.date) -> list[Reservation]: ...

    def slot_version(self, key: str) -> int: ...

    def insert_reservation(
        self,
        reservation: Reservation,
        superseded: Sequence[Reservation] = (),
        guard: SlotGuard | None = None,
    ) -> Reservation: ...


def _slot_suffix(on: dt.date, start: dt.time | None) -> str:
    return f"{on.isoformat()}#{format_time(start) or 'all-day'}"


def slot_key(space_id: str, on: dt.date, start: dt.time | None) -> str:
    """Key of the lock an active reservation holds on its own space."""
    return f"{space_id}#{_slot_suffix(on, start)}"


def group_slot_key(space: Space, on: dt.date, start: dt.time | None) -> str:
    return f"group#{group_token(space)}#{_slot_suffix(on, start)}"


def in_slot(reservation: Reservation, space_ids: Iterable[str], on: dt.date, start: dt.time | None) -> bool:
    return (
        reservation.space_id in set(space_ids)
        and reservation.date == on
        and times_equal(reservation.start_time, start)
    )


def read_guard(store: SlotStore, space: Space, on: dt.date, start: dt.time | None) -> SlotGuard:
    key = group_slot_key(space, on, start)
    return SlotGuard(key=key, version=store.slot_version(key))


def find_slot_occupants(
    store: SlotStore, group: Iterable[str], on: dt.date, start: dt.time | None
) -> list[Reservation]:
    members = sorted(group)
    return [r for r in store.find_by_spaces_and_date(members, on) if in_slot(r, members, on, start)]


def claim_slot(
    store: SlotStore,
    reservation: Reservation,
    occupants: Sequence[Reservation],
    guard: SlotGuard | None = None,
) -> list[Superseded]:
    """Insert ``reservation``, removing every one of ``occupants`` (any status).

    Raises ReservationAlreadyExists when another create claimed the slot
    after ``occupants`` (and ``guard``) were read.
    """
    store.insert_reservation(reservation, superseded=occupants, guard=guard)
    return [Superseded(reservation=occupant) for occupant in occupants]


def matches_booking(candidate: Reservation, reservation: Reservation) -> bool:
    return (
        candidate.user_name == reservation.user_name
        and candidate.date == reservation.date
        and times_equal(candidate.start_time, reservation.start_time)
        and times_equal(candidate.end_time, reservation.end_time)
    )
