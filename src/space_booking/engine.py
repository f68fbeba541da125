from __future__ import annotations

import datetime as dt
import uuid
from collections.abc import Iterable, Sequence
from typing import Protocol

from aws_lambda_powertools import Logger, Tracer

from . import dal
from .conflicts import SlotGuard, claim_slot, find_slot_occupants, matches_booking, read_guard, slot_key
from .errors import (
    CannotUpdateCancelled,
    DateInPast,
    DateTooFarInFuture,
    IncompleteTimeRange,
    NotAMeetingRoom,
    ReservationNotFound,
    SpaceNotFound,
    StartAfterEnd,
)
from .groups import SpaceCatalog, group_of, is_grouped
from .models import (
    Cancelled,
    CreateResult,
    GroupCleanup,
    RecordOutcome,
    Reservation,
    ReservationCreate,
    ReservationFilters,
    ReservationUpdate,
    Retained,
    Space,
    SpaceAvailability,
)
from .timeutil import Clock, is_ordered, parse_date, parse_time_of_day, times_equal, utc_now

logger = Logger()
tracer = Tracer()

BOOKING_WINDOW_DAYS = 7


class ReservationStore(Protocol):
    def get_reservation(self, reservation_id: str) -> Reservation: ...

    def find_reservations(self, filters: ReservationFilters) -> list[Reservation]: ...

    def find_by_spaces_and_date(self, space_ids: Iterable[str], on: dt.date) -> list[Reservation]: ...

    def slot_version(self, key: str) -> int: ...

    def insert_reservation(
        self,
        reservation: Reservation,
        superseded: Sequence[Reservation] = (),
        guard: SlotGuard | None = None,
    ) -> Reservation: ...

    def update_reservation(self, current: Reservation, updated: Reservation) -> Reservation: ...

    def cancel_reservations(self, reservations: Sequence[Reservation], now: dt.datetime) -> list[Reservation]: ...


class ReservationEngine:
    def __init__(
        self,
        store: ReservationStore | None = None,
        catalog: SpaceCatalog | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._store: ReservationStore = store or dal  # type: ignore[assignment]
        self._catalog: SpaceCatalog = catalog or dal  # type: ignore[assignment]
        self._clock: Clock = clock or utc_now

    @tracer.capture_method
    def create_reservation(self, payload: ReservationCreate) -> CreateResult:
        space = self._find_space(payload.space_id)
        on = self._check_booking_date(payload.date)
        start = _parse_optional_time(payload.start_time)
        end = _parse_optional_time(payload.end_time)
        _check_time_range(start, end)

        group = group_of(space, self._catalog)
        # read before the occupants so a create committed in between is detected
        guard = read_guard(self._store, space, on, start) if is_grouped(space) else None
        occupants = find_slot_occupants(self._store, group, on, start)

        now = self._clock()
        reservation = Reservation(
            reservation_id=str(uuid.uuid4()),
            space_id=space.space_id,
            user_id=payload.user_id,
            user_name=payload.user_name,
            date=on,
            start_time=start,
            end_time=end,
            status="active",
            notes=payload.notes,
            created_at=now,
            updated_at=now,
            slot_key=slot_key(space.space_id, on, start),
        )
        superseded = claim_slot(self._store, reservation, occupants, guard)
        if superseded:
            logger.info(
                "Reservation superseded previous bookings",
                extra={
                    "reservation_id": reservation.reservation_id,
                    "group_size": len(group),
                    "superseded": [s.reservation.reservation_id for s in superseded],
                },
            )
        return CreateResult(reservation=reservation, superseded=superseded)

    @tracer.capture_method
    def update_reservation(self, reservation_id: str, payload: ReservationUpdate) -> Reservation:
        # a move does not overwrite: the store rejects a slot this space already holds
        current = self.get_reservation(reservation_id)
        if not current.is_active:
            raise CannotUpdateCancelled()

        supplied = payload.model_fields_set
        changes: dict[str, object] = {}
        if "user_name" in supplied and payload.user_name is not None:
            changes["user_name"] = payload.user_name
        if "notes" in supplied and payload.notes is not None:
            changes["notes"] = payload.notes
        if "date" in supplied and payload.date is not None:
            changes["date"] = parse_date(payload.date)
        if "start_time" in supplied:
            changes["start_time"] = _parse_optional_time(payload.start_time)
        if "end_time" in supplied:
            changes["end_time"] = _parse_optional_time(payload.end_time)
        if "status" in supplied and payload.status is not None:
            changes["status"] = payload.status

        updated = current.model_copy(update=changes)
        if "start_time" in changes or "end_time" in changes:
            _check_time_range(updated.start_time, updated.end_time)

        if updated.status == "cancelled":
            changes["slot_key"] = None
        elif updated.date != current.date or not times_equal(updated.start_time, current.start_time):
            changes["slot_key"] = slot_key(current.space_id, updated.date, updated.start_time)
        changes["updated_at"] = self._clock()

        return self._store.update_reservation(current, current.model_copy(update=changes))

    @tracer.capture_method
    def cancel_reservation(self, reservation_id: str) -> list[RecordOutcome]:
        reservation = self.get_reservation(reservation_id)
        space = self._find_space(reservation.space_id)
        if not reservation.is_active:
            return [Retained(reservation=reservation)]

        group = group_of(space, self._catalog)
        if len(group) == 1:
            cancelled = self._store.cancel_reservations([reservation], self._clock())
            return [Cancelled(reservation=r) for r in cancelled]

        to_cancel: list[Reservation] = []
        retained: list[RecordOutcome] = []
        for candidate in self._store.find_by_spaces_and_date(sorted(group), reservation.date):
            if not matches_booking(candidate, reservation):
                continue
            if candidate.is_active:
                to_cancel.append(candidate)
            else:
                retained.append(Retained(reservation=candidate))
        if reservation.reservation_id not in {r.reservation_id for r in to_cancel}:
            to_cancel.append(reservation)

        cancelled = self._store.cancel_reservations(to_cancel, self._clock())
        logger.info(
            "Cancelled group booking",
            extra={"reservation_id": reservation_id, "cancelled": [r.reservation_id for r in cancelled]},
        )
        return [*(Cancelled(reservation=r) for r in cancelled), *retained]

    def get_reservation(self, reservation_id: str) -> Reservation:
        try:
            return self._store.get_reservation(reservation_id)
        except KeyError as exc:
            raise ReservationNotFound() from exc

    def list_reservations(self, filters: ReservationFilters | None = None) -> list[Reservation]:
        filters = filters or ReservationFilters()
        if filters.status is None:
            filters = filters.model_copy(update={"status": "active"})
        return self._store.find_reservations(filters)

    def space_availability(self, space_id: str, on: str) -> SpaceAvailability:
        day = parse_date(on)
        space = self._find_space(space_id)
        reservations = self._store.find_reservations(
            ReservationFilters(space_id=space.space_id, date_from=day, date_to=day, status="active")
        )
        return SpaceAvailability(
            space_id=space.space_id, date=day, is_available=not reservations, reservations=reservations
        )

    @tracer.capture_method
    def cleanup_group(self, space_id: str) -> GroupCleanup:
        """Cancel every active reservation, on any date, in the meeting-room group of ``space_id``."""
        space = self._find_space(space_id)
        if not is_grouped(space):
            raise NotAMeetingRoom()

        group = sorted(group_of(space, self._catalog))
        active: list[Reservation] = []
        for member in group:
            active.extend(self._store.find_reservations(ReservationFilters(space_id=member, status="active")))

        cancelled = self._store.cancel_reservations(active, self._clock())
        logger.info("Cleaned up meeting-room group", extra={"space_ids": group, "cancelled": len(cancelled)})
        return GroupCleanup(space_ids=group, cancelled=[Cancelled(reservation=r) for r in cancelled])

    def _find_space(self, space_id: str) -> Space:
        try:
            return self._catalog.find_space(space_id)
        except KeyError as exc:
            raise SpaceNotFound() from exc

    def _check_booking_date(self, value: str) -> dt.date:
        on = parse_date(value)
        today = self._clock().date()
        if on < today:
            raise DateInPast()
        if on > today + dt.timedelta(days=BOOKING_WINDOW_DAYS):
            raise DateTooFarInFuture()
        return on


def _parse_optional_time(value: str | None) -> dt.time | None:
    if value is None or value == "":
        return None
    return parse_time_of_day(value)


def _check_time_range(start: dt.time | None, end: dt.time | None) -> None:
    if start is None and end is None:
        return
    if start is None or end is None:
        raise IncompleteTimeRange()
    if not is_ordered(start, end):
        raise StartAfterEnd()
