from __future__ import annotations

import datetime as dt
from typing import Annotated, Literal

from pydantic import BaseModel, Field, computed_field

SpaceType = Literal["workstation", "meeting_room", "cubicle"]
ReservationStatus = Literal["active", "cancelled"]


class Space(BaseModel):
    space_id: str
    map_id: str
    name: str
    type: SpaceType
    # geometry is carried for the floor-plan, never read by the engine
    x: int = 0
    y: int = 0
    width: int = 1
    height: int = 1
    capacity: int = Field(default=1, ge=0)
    # booking group computed when the space was saved; legacy rows lack it
    group_key: str | None = None


class Reservation(BaseModel):
    reservation_id: str
    space_id: str
    user_id: str
    user_name: str = ""
    date: dt.date
    start_time: dt.time | None = None
    end_time: dt.time | None = None
    status: ReservationStatus = "active"
    notes: str = ""
    created_at: dt.datetime
    updated_at: dt.datetime
    slot_key: str | None = Field(default=None, exclude=True)

    @property
    def is_active(self) -> bool:
        return self.status == "active"


class ReservationCreate(BaseModel):
    space_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    user_name: str = ""
    # YYYY-MM-DD and HH:MM, validated by the engine
    date: str
    start_time: str | None = None
    end_time: str | None = None
    notes: str = ""


class ReservationUpdate(BaseModel):
    user_name: str | None = None
    date: str | None = None
    start_time: str | None = None
    end_time: str | None = None
    status: ReservationStatus | None = None
    notes: str | None = None


class ReservationFilters(BaseModel):
    date_from: dt.date | None = None
    date_to: dt.date | None = None
    user_id: str | None = None
    space_id: str | None = None
    # None means the default view: active reservations only
    status: ReservationStatus | None = None


class Retained(BaseModel):
    kind: Literal["retained"] = "retained"
    reservation: Reservation


class Cancelled(BaseModel):
    kind: Literal["cancelled"] = "cancelled"
    reservation: Reservation


class Superseded(BaseModel):
    kind: Literal["superseded"] = "superseded"
    reservation: Reservation


RecordOutcome = Annotated[Retained | Cancelled | Superseded, Field(discriminator="kind")]


class CreateResult(BaseModel):
    reservation: Reservation
    superseded: list[Superseded] = Field(default_factory=list)


class SpaceAvailability(BaseModel):
    space_id: str
    date: dt.date
    is_available: bool
    reservations: list[Reservation] = Field(default_factory=list)


class GroupCleanup(BaseModel):
    space_ids: list[str]
    cancelled: list[Cancelled] = Field(default_factory=list)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def cancelled_count(self) -> int:
        return len(self.cancelled)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def space_count(self) -> int:
        return len(self.space_ids)
