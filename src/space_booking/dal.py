from __future__ import annotations

import os
from collections.abc import Callable, Iterable, Sequence
from datetime import UTC, date, datetime, time
from typing import TYPE_CHECKING, Any, TypedDict, cast

import boto3
from aws_lambda_powertools import Logger
from botocore.exceptions import ClientError

if TYPE_CHECKING:
    # Only for static type checking; not imported at runtime
    from mypy_boto3_dynamodb.client import DynamoDBClient
    from mypy_boto3_dynamodb.service_resource import DynamoDBServiceResource
    from mypy_boto3_dynamodb.service_resource import Table as DynamoDBTable
else:
    # Fallbacks to satisfy annotations at runtime
    DynamoDBClient = Any  # type: ignore[assignment]
    DynamoDBServiceResource = Any  # type: ignore[assignment]
    DynamoDBTable = Any  # type: ignore[assignment]

from .conflicts import SlotGuard
from .errors import ReservationAlreadyExists, StorageError
from .models import Reservation, ReservationFilters, Space, SpaceType
from .timeutil import format_time, parse_time_of_day

logger = Logger()
_SPACES_TABLE_NAME = os.environ.get("SPACES_TABLE_NAME", "spaces")
_RESERVATIONS_TABLE_NAME = os.environ.get("RESERVATIONS_TABLE_NAME", "reservations")
_SLOTS_TABLE_NAME = os.environ.get("SLOTS_TABLE_NAME", "reservation_slots")

_dynamodb: DynamoDBServiceResource = boto3.resource("dynamodb")
_spaces_table: DynamoDBTable = _dynamodb.Table(_SPACES_TABLE_NAME)
_reservations_table: DynamoDBTable = _dynamodb.Table(_RESERVATIONS_TABLE_NAME)
_slots_table: DynamoDBTable = _dynamodb.Table(_SLOTS_TABLE_NAME)
# the resource's client accepts plain Python values, tables included
_client: DynamoDBClient = _dynamodb.meta.client

RESERVATION_NOT_FOUND = "Reservation not found"
SPACE_NOT_FOUND = "Space not found"
_TRANSACTION_CANCELED = "TransactionCanceledException"
# DynamoDB allows 100 items per transaction: one update and one lock release per reservation
_CANCEL_BATCH_SIZE = 50
_MUTABLE_FIELDS = ("user_name", "date", "start_time", "end_time", "status", "notes", "updated_at", "slot_key")


class SpaceItem(TypedDict, total=False):
    space_id: str
    map_id: str
    name: str
    type: str
    x: int
    y: int
    width: int
    height: int
    capacity: int
    group_key: str


class ReservationItem(TypedDict, total=False):
    reservation_id: str
    space_id: str
    user_id: str
    user_name: str
    date: str
    start_time: str
    end_time: str
    status: str
    notes: str
    created_at: str
    updated_at: str
    slot_key: str


def _dt_to_iso(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC).isoformat()


def _iso_to_dt(s: str) -> datetime:
    return datetime.fromisoformat(s)


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


def _storage_failure(action: str, exc: ClientError) -> StorageError:
    logger.exception(f"Failed to {action}", extra={"error_code": _error_code(exc)})
    return StorageError(f"Failed to {action}")


def _collect(operation: Callable[..., Any], **kwargs: Any) -> list[dict[str, Any]]:
    items: list[dict[str, Any]] = []
    while True:
        resp = cast(dict[str, Any], operation(**kwargs))
        items.extend(it for it in resp.get("Items", []) if isinstance(it, dict))
        last_key = resp.get("LastEvaluatedKey")
        if not last_key:
            return items
        kwargs["ExclusiveStartKey"] = last_key


# Space catalog (read-only)


def find_space(space_id: str) -> Space:
    try:
        resp = cast(dict[str, Any], _spaces_table.get_item(Key={"space_id": space_id}))
    except ClientError as exc:
        raise _storage_failure("fetch space", exc) from exc
    item = resp.get("Item")
    if not isinstance(item, dict):
        raise KeyError(SPACE_NOT_FOUND)
    return _to_space(cast(SpaceItem, item))


def find_spaces_by_type_and_map(space_type: SpaceType, map_id: str) -> list[Space]:
    try:
        items = _collect(
            _spaces_table.query,
            IndexName="map_id_index",
            KeyConditionExpression="map_id = :mid",
            FilterExpression="#t = :t",
            ExpressionAttributeNames={"#t": "type"},
            ExpressionAttributeValues={":mid": map_id, ":t": space_type},
        )
    except ClientError as exc:
        raise _storage_failure("fetch spaces", exc) from exc
    return [_to_space(cast(SpaceItem, it)) for it in items]


# Reservations


def get_reservation(reservation_id: str) -> Reservation:
    try:
        resp = cast(dict[str, Any], _reservations_table.get_item(Key={"reservation_id": reservation_id}))
    except ClientError as exc:
        raise _storage_failure("fetch reservation", exc) from exc
    item = resp.get("Item")
    if not isinstance(item, dict):
        raise KeyError(RESERVATION_NOT_FOUND)
    return _to_model(cast(ReservationItem, item))


def find_by_spaces_and_date(space_ids: Iterable[str], on: date) -> list[Reservation]:
    """Return every reservation, whatever its status, of ``space_ids`` on ``on``."""
    items: list[dict[str, Any]] = []
    try:
        for space_id in space_ids:
            items.extend(
                _collect(
                    _reservations_table.query,
                    IndexName="space_id_index",
                    KeyConditionExpression="space_id = :sid AND #d = :d",
                    ExpressionAttributeNames={"#d": "date"},
                    ExpressionAttributeValues={":sid": space_id, ":d": on.isoformat()},
                )
            )
    except ClientError as exc:
        raise _storage_failure("fetch reservations", exc) from exc
    return [_to_model(cast(ReservationItem, it)) for it in items]


def find_reservations(filters: ReservationFilters) -> list[Reservation]:
    try:
        if filters.space_id is not None:
            items = _collect(
                _reservations_table.query,
                IndexName="space_id_index",
                KeyConditionExpression="space_id = :sid",
                ExpressionAttributeValues={":sid": filters.space_id},
            )
        elif filters.user_id is not None:
            items = _collect(
                _reservations_table.query,
                IndexName="user_id_index",
                KeyConditionExpression="user_id = :uid",
                ExpressionAttributeValues={":uid": filters.user_id},
            )
        else:
            items = _collect(_reservations_table.scan)
    except ClientError as exc:
        raise _storage_failure("fetch reservations", exc) from exc

    reservations = [_to_model(cast(ReservationItem, it)) for it in items]
    return sorted((r for r in reservations if _matches(r, filters)), key=_schedule_order)


def slot_version(key: str) -> int:
    try:
        resp = cast(dict[str, Any], _slots_table.get_item(Key={"slot_key": key}))
    except ClientError as exc:
        raise _storage_failure("fetch slot", exc) from exc
    item = resp.get("Item")
    if not isinstance(item, dict):
        return 0
    return int(item.get("version", 0))


def insert_reservation(
    reservation: Reservation, superseded: Sequence[Reservation] = (), guard: SlotGuard | None = None
) -> Reservation:
    """Delete ``superseded`` and insert ``reservation`` in one transaction.

    ``guard`` bumps the group slot version; the transaction is cancelled if it
    moved since it was read.
    """
    transact_items: list[dict[str, Any]] = [
        {"Delete": {"TableName": _RESERVATIONS_TABLE_NAME, "Key": {"reservation_id": old.reservation_id}}}
        for old in superseded
    ]

    stale_locks: dict[str, list[str]] = {}
    for old in superseded:
        if old.is_active and old.slot_key is not None and old.slot_key != reservation.slot_key:
            stale_locks.setdefault(old.slot_key, []).append(old.reservation_id)
    transact_items.extend(_release_lock(key, holders) for key, holders in stale_locks.items())

    if reservation.slot_key is not None:
        transact_items.append(
            _claim_lock(reservation.slot_key, reservation.reservation_id, [old.reservation_id for old in superseded])
        )
    if guard is not None:
        transact_items.append(_bump_guard(guard))
    transact_items.append(
        {
            "Put": {
                "TableName": _RESERVATIONS_TABLE_NAME,
                "Item": _to_item(reservation),
                "ConditionExpression": "attribute_not_exists(reservation_id)",
            }
        }
    )

    logger.info(
        "Creating reservation",
        extra={
            "reservation_id": reservation.reservation_id,
            "space_id": reservation.space_id,
            "slot_key": reservation.slot_key,
            "superseded": [old.reservation_id for old in superseded],
        },
    )
    try:
        _client.transact_write_items(TransactItems=transact_items)  # type: ignore[arg-type]
    except ClientError as exc:
        if _error_code(exc) == _TRANSACTION_CANCELED:
            logger.warning("Slot claimed by a concurrent request", extra={"slot_key": reservation.slot_key})
            raise ReservationAlreadyExists() from exc
        raise _storage_failure("create reservation", exc) from exc
    return reservation


def update_reservation(current: Reservation, updated: Reservation) -> Reservation:
    """Write the fields that differ between ``current`` and ``updated``.

    Moving to another slot moves the slot lock too; a slot already held by
    another reservation cancels the transaction.
    """
    set_parts: list[str] = []
    remove_parts: list[str] = []
    names: dict[str, str] = {"#_status": "status"}
    values: dict[str, Any] = {":expected_status": current.status}

    def set_attr(name: str, value: Any) -> None:
        names[f"#_{name}"] = name
        values[f":{name}"] = value
        set_parts.append(f"#_{name} = :{name}")

    def remove_attr(name: str) -> None:
        names[f"#_{name}"] = name
        remove_parts.append(f"#_{name}")

    before, after = cast(dict[str, Any], _to_item(current)), cast(dict[str, Any], _to_item(updated))
    for name in _MUTABLE_FIELDS:
        if name in after:
            if before.get(name) != after[name]:
                set_attr(name, after[name])
        elif name in before:
            remove_attr(name)

    if not set_parts and not remove_parts:
        return updated

    update_expr = " ".join(
        part
        for part in (
            ("SET " + ", ".join(set_parts)) if set_parts else "",
            ("REMOVE " + ", ".join(remove_parts)) if remove_parts else "",
        )
        if part
    )

    transact_items: list[dict[str, Any]] = [
        {
            "Update": {
                "TableName": _RESERVATIONS_TABLE_NAME,
                "Key": {"reservation_id": current.reservation_id},
                "UpdateExpression": update_expr,
                "ConditionExpression": "#_status = :expected_status",
                "ExpressionAttributeNames": names,
                "ExpressionAttributeValues": values,
            }
        }
    ]
    if current.slot_key != updated.slot_key:
        if current.slot_key is not None:
            transact_items.append(_release_lock(current.slot_key, [current.reservation_id]))
        if updated.slot_key is not None:
            transact_items.append(_claim_lock(updated.slot_key, updated.reservation_id, []))

    logger.info(
        "Updating reservation",
        extra={"reservation_id": current.reservation_id, "fields": sorted(names.values())},
    )
    try:
        _client.transact_write_items(TransactItems=transact_items)  # type: ignore[arg-type]
    except ClientError as exc:
        raise _storage_failure("update reservation", exc) from exc
    return updated


def cancel_reservations(reservations: Sequence[Reservation], now: datetime) -> list[Reservation]:
    """Flip every reservation to cancelled and release its slot lock.

    Up to ``_CANCEL_BATCH_SIZE`` reservations are cancelled atomically; larger
    sets are written in consecutive transactions.
    """
    cancelled: list[Reservation] = []
    for offset in range(0, len(reservations), _CANCEL_BATCH_SIZE):
        cancelled.extend(_cancel_batch(reservations[offset : offset + _CANCEL_BATCH_SIZE], now))
    return cancelled


def _cancel_batch(reservations: Sequence[Reservation], now: datetime) -> list[Reservation]:
    updated_at = _dt_to_iso(now)
    transact_items: list[dict[str, Any]] = []
    locks: dict[str, list[str]] = {}
    for reservation in reservations:
        transact_items.append(
            {
                "Update": {
                    "TableName": _RESERVATIONS_TABLE_NAME,
                    "Key": {"reservation_id": reservation.reservation_id},
                    "UpdateExpression": "SET #s = :s, #u = :u REMOVE slot_key",
                    "ConditionExpression": "#s = :active",
                    "ExpressionAttributeNames": {"#s": "status", "#u": "updated_at"},
                    "ExpressionAttributeValues": {":s": "cancelled", ":u": updated_at, ":active": "active"},
                }
            }
        )
        if reservation.slot_key is not None:
            locks.setdefault(reservation.slot_key, []).append(reservation.reservation_id)
    transact_items.extend(_release_lock(key, holders) for key, holders in locks.items())

    logger.info("Cancelling reservations", extra={"reservation_ids": [r.reservation_id for r in reservations]})
    try:
        _client.transact_write_items(TransactItems=transact_items)  # type: ignore[arg-type]
    except ClientError as exc:
        raise _storage_failure("cancel reservation", exc) from exc
    return [
        r.model_copy(update={"status": "cancelled", "updated_at": _iso_to_dt(updated_at), "slot_key": None})
        for r in reservations
    ]


def _bump_guard(guard: SlotGuard) -> dict[str, Any]:
    put: dict[str, Any] = {
        "TableName": _SLOTS_TABLE_NAME,
        "Item": {"slot_key": guard.key, "version": guard.version + 1},
        "ConditionExpression": "attribute_not_exists(slot_key)",
    }
    if guard.version:
        put["ConditionExpression"] = "#v = :v"
        put["ExpressionAttributeNames"] = {"#v": "version"}
        put["ExpressionAttributeValues"] = {":v": guard.version}
    return {"Put": put}


def _lock_condition(holders: Sequence[str]) -> tuple[str, dict[str, str]]:
    values = {f":h{index}": holder for index, holder in enumerate(holders)}
    expression = " OR ".join(["attribute_not_exists(slot_key)", *(f"holder = {name}" for name in values)])
    return expression, values


def _claim_lock(key: str, holder: str, replaceable: Sequence[str]) -> dict[str, Any]:
    condition, values = _lock_condition(replaceable)
    put: dict[str, Any] = {
        "TableName": _SLOTS_TABLE_NAME,
        "Item": {"slot_key": key, "holder": holder},
        "ConditionExpression": condition,
    }
    if values:
        put["ExpressionAttributeValues"] = values
    return {"Put": put}


def _release_lock(key: str, holders: Sequence[str]) -> dict[str, Any]:
    # a lock held by anything but ``holders`` belongs to a newer reservation
    condition, values = _lock_condition(holders)
    delete: dict[str, Any] = {
        "TableName": _SLOTS_TABLE_NAME,
        "Key": {"slot_key": key},
        "ConditionExpression": condition,
    }
    if values:
        delete["ExpressionAttributeValues"] = values
    return {"Delete": delete}


def _matches(reservation: Reservation, filters: ReservationFilters) -> bool:
    if filters.date_from is not None and reservation.date < filters.date_from:
        return False
    if filters.date_to is not None and reservation.date > filters.date_to:
        return False
    if filters.user_id is not None and reservation.user_id != filters.user_id:
        return False
    if filters.space_id is not None and reservation.space_id != filters.space_id:
        return False
    return filters.status is None or reservation.status == filters.status


def _schedule_order(reservation: Reservation) -> tuple[date, bool, time]:
    # all-day bookings sort before timed ones on the same date
    start = reservation.start_time
    return reservation.date, start is not None, start or time.min


def _parse_stored_time(value: Any) -> time | None:
    if value is None:
        return None
    return parse_time_of_day(str(value), allow_seconds=True)


def _to_space(item: SpaceItem) -> Space:
    return Space(
        space_id=item["space_id"],
        map_id=item["map_id"],
        name=item["name"],
        type=item["type"],  # type: ignore[arg-type]
        x=int(item.get("x", 0)),
        y=int(item.get("y", 0)),
        width=int(item.get("width", 1)),
        height=int(item.get("height", 1)),
        capacity=int(item.get("capacity", 1)),
        group_key=item.get("group_key"),
    )


def _to_item(reservation: Reservation) -> ReservationItem:
    item: ReservationItem = {
        "reservation_id": reservation.reservation_id,
        "space_id": reservation.space_id,
        "user_id": reservation.user_id,
        "user_name": reservation.user_name,
        "date": reservation.date.isoformat(),
        "status": reservation.status,
        "notes": reservation.notes,
        "created_at": _dt_to_iso(reservation.created_at),
        "updated_at": _dt_to_iso(reservation.updated_at),
    }
    start_time, end_time = format_time(reservation.start_time), format_time(reservation.end_time)
    if start_time is not None:
        item["start_time"] = start_time
    if end_time is not None:
        item["end_time"] = end_time
    if reservation.slot_key is not None:
        item["slot_key"] = reservation.slot_key
    return item


def _to_model(item: ReservationItem) -> Reservation:
    return Reservation(
        reservation_id=item["reservation_id"],
        space_id=item["space_id"],
        user_id=item["user_id"],
        user_name=item.get("user_name", ""),
        date=date.fromisoformat(item["date"]),
        start_time=_parse_stored_time(item.get("start_time")),
        end_time=_parse_stored_time(item.get("end_time")),
        status=item.get("status", "active"),  # type: ignore[arg-type]
        notes=item.get("notes", ""),
        created_at=_iso_to_dt(item["created_at"]),
        updated_at=_iso_to_dt(item["updated_at"]),
        slot_key=item.get("slot_key"),
    )
