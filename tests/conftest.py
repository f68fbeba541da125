from __future__ import annotations

import os
import re
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import pytest
from botocore.exceptions import ClientError

os.environ.setdefault("AWS_DEFAULT_REGION", "us-east-1")
os.environ.setdefault("POWERTOOLS_TRACE_DISABLED", "true")
os.environ.setdefault("POWERTOOLS_METRICS_NAMESPACE", "SpaceBooking")

from space_booking import dal  # noqa: E402

_CLAUSE_RE = re.compile(r"^(?P<fn>attribute_exists|attribute_not_exists)\((?P<name>[#\w]+)\)$")


def _resolve(name: str, names: dict[str, str]) -> str:
    return names.get(name, name)


def _conditions_hold(item: dict[str, Any] | None, expression: str, names: dict[str, str], values: dict[str, Any]) -> bool:
    # supports "a = :v" and attribute_(not_)exists clauses joined by OR or AND
    def clause(text: str) -> bool:
        text = text.strip()
        match = _CLAUSE_RE.match(text)
        if match:
            exists = item is not None and _resolve(match.group("name"), names) in item
            return exists if match.group("fn") == "attribute_exists" else not exists
        left, right = (part.strip() for part in text.split("="))
        return item is not None and item.get(_resolve(left, names)) == values[right]

    return any(all(clause(part) for part in alt.split(" AND ")) for alt in expression.split(" OR "))


class FakeTable:
    def __init__(self, key: str):
        self.key = key
        self.items: dict[str, dict[str, Any]] = {}

    def put_item(self, Item):  # noqa NOSONAR
        self.items[Item[self.key]] = dict(Item)

    def get_item(self, Key):  # noqa NOSONAR
        item = self.items.get(Key[self.key])
        return {"Item": dict(item)} if item else {}

    def query(self, **kwargs):
        names = kwargs.get("ExpressionAttributeNames") or {}
        values = kwargs.get("ExpressionAttributeValues") or {}
        expression = kwargs["KeyConditionExpression"]
        if "FilterExpression" in kwargs:
            expression = f"{expression} AND {kwargs['FilterExpression']}"
        items = [dict(it) for it in self.items.values() if _conditions_hold(it, expression, names, values)]
        return {"Items": items}

    def scan(self, **kwargs):
        return {"Items": [dict(it) for it in self.items.values()]}

    def apply_update(self, key: str, update_expr: str, names: dict[str, str], values: dict[str, Any]) -> None:
        attrs = self.items[key]
        set_part, _, remove_part = update_expr.partition("REMOVE")
        set_part = set_part.replace("SET", "", 1)
        for assign in [s.strip() for s in set_part.split(",") if s.strip()]:
            name, val = [s.strip() for s in assign.split("=")]
            attrs[_resolve(name, names)] = values[val]
        for name in [s.strip() for s in remove_part.split(",") if s.strip()]:
            attrs.pop(_resolve(name, names), None)


class FakeClient:
    def __init__(self, tables: dict[str, FakeTable]):
        self.tables = tables
        self.fail_with: str | None = None
        self.calls: list[list[dict[str, Any]]] = []

    def transact_write_items(self, TransactItems):  # noqa NOSONAR
        self.calls.append(TransactItems)
        if self.fail_with is not None:
            raise ClientError({"Error": {"Code": self.fail_with, "Message": "injected"}}, "TransactWriteItems")

        for entry in TransactItems:
            (op, params), = entry.items()
            table = self.tables[params["TableName"]]
            key = params["Item"][table.key] if op == "Put" else params["Key"][table.key]
            condition = params.get("ConditionExpression")
            if condition and not _conditions_hold(
                table.items.get(key),
                condition,
                params.get("ExpressionAttributeNames") or {},
                params.get("ExpressionAttributeValues") or {},
            ):
                raise ClientError(
                    {"Error": {"Code": "TransactionCanceledException", "Message": "ConditionalCheckFailed"}},
                    "TransactWriteItems",
                )

        for entry in TransactItems:
            (op, params), = entry.items()
            table = self.tables[params["TableName"]]
            if op == "Put":
                table.put_item(Item=params["Item"])
            elif op == "Delete":
                table.items.pop(params["Key"][table.key], None)
            elif op == "Update":
                table.apply_update(
                    params["Key"][table.key],
                    params["UpdateExpression"],
                    params.get("ExpressionAttributeNames") or {},
                    params.get("ExpressionAttributeValues") or {},
                )


class FakeDynamo:
    def __init__(self) -> None:
        self.spaces = FakeTable("space_id")
        self.reservations = FakeTable("reservation_id")
        self.slots = FakeTable("slot_key")
        self.client = FakeClient(
            {
                dal._SPACES_TABLE_NAME: self.spaces,
                dal._RESERVATIONS_TABLE_NAME: self.reservations,
                dal._SLOTS_TABLE_NAME: self.slots,
            }
        )

    def add_space(self, space_id: str, name: str, type: str = "workstation", map_id: str = "m1", **extra: Any) -> None:
        self.spaces.put_item(Item={"space_id": space_id, "map_id": map_id, "name": name, "type": type, **extra})

    def add_reservation(self, reservation_id: str, space_id: str, date: str, **fields: Any) -> dict[str, Any]:
        stamp = datetime(2026, 3, 1, 8, 0, tzinfo=UTC).isoformat()
        item = {
            "reservation_id": reservation_id,
            "space_id": space_id,
            "user_id": "u1",
            "user_name": "Ada",
            "date": date,
            "status": "active",
            "notes": "",
            "created_at": stamp,
            "updated_at": stamp,
            **fields,
        }
        self.reservations.put_item(Item=item)
        return item

    def active_in(self, *space_ids: str) -> list[dict[str, Any]]:
        return [
            it for it in self.reservations.items.values() if it["space_id"] in space_ids and it["status"] == "active"
        ]


@pytest.fixture()
def fake_dynamo(monkeypatch: pytest.MonkeyPatch) -> FakeDynamo:
    fake = FakeDynamo()
    monkeypatch.setattr(dal, "_spaces_table", fake.spaces)
    monkeypatch.setattr(dal, "_reservations_table", fake.reservations)
    monkeypatch.setattr(dal, "_slots_table", fake.slots)
    monkeypatch.setattr(dal, "_client", fake.client)
    return fake


@pytest.fixture()
def fixed_clock() -> Callable[[], datetime]:
    # Monday 2 March 2026, 09:30 UTC
    return lambda: datetime(2026, 3, 2, 9, 30, tzinfo=UTC)
