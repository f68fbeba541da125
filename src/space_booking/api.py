from __future__ import annotations

from typing import Literal

from aws_lambda_powertools import Logger
from aws_lambda_powertools.metrics import Metrics, MetricUnit
from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse
from starlette.responses import Response

from space_booking.engine import ReservationEngine
from space_booking.errors import (
    CannotUpdateCancelled,
    ConflictError,
    NotFoundError,
    ReservationError,
    ReservationValidationError,
    StorageError,
)
from space_booking.models import (
    CreateResult,
    GroupCleanup,
    RecordOutcome,
    Reservation,
    ReservationCreate,
    ReservationFilters,
    ReservationUpdate,
    SpaceAvailability,
)
from space_booking.timeutil import parse_date

logger = Logger()
metrics = Metrics(namespace="SpaceBooking")

app = FastAPI(title="Space Booking API", version="0.1.0")
engine = ReservationEngine()

_STATUS_CODES: list[tuple[type[ReservationError], int]] = [
    (NotFoundError, 404),
    (ReservationValidationError, 400),
    (CannotUpdateCancelled, 400),
    (ConflictError, 409),
]


@app.exception_handler(ReservationError)
def reservation_error(request: Request, exc: ReservationError) -> JSONResponse:
    status_code = next((code for kind, code in _STATUS_CODES if isinstance(exc, kind)), 400)
    logger.info("Reservation request rejected", extra={"code": exc.code, "path": request.url.path})
    return JSONResponse(status_code=status_code, content={"code": exc.code, "detail": str(exc)})


@app.exception_handler(StorageError)
def storage_error(request: Request, exc: StorageError) -> JSONResponse:
    return JSONResponse(status_code=500, content={"code": "internal_error", "detail": "Internal failure"})


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/reservations", response_model=CreateResult, status_code=201)
def create_reservation(payload: ReservationCreate) -> CreateResult:
    result = engine.create_reservation(payload)
    metrics.add_metric(name="CreateReservation", value=1, unit=MetricUnit.Count)
    if result.superseded:
        metrics.add_metric(name="SupersededReservations", value=len(result.superseded), unit=MetricUnit.Count)
    return result


@app.get("/reservations", response_model=list[Reservation])
def list_reservations(
    date_from: str | None = Query(default=None, alias="from"),
    date_to: str | None = Query(default=None, alias="to"),
    user_id: str | None = None,
    space_id: str | None = None,
    status: Literal["active", "cancelled"] | None = None,
) -> list[Reservation]:
    filters = ReservationFilters(
        date_from=parse_date(date_from) if date_from else None,
        date_to=parse_date(date_to) if date_to else None,
        user_id=user_id,
        space_id=space_id,
        status=status,
    )
    return engine.list_reservations(filters)


@app.get("/reservations/{reservation_id}", response_model=Reservation)
def get_reservation(reservation_id: str) -> Reservation:
    return engine.get_reservation(reservation_id)


@app.put("/reservations/{reservation_id}", response_model=Reservation)
def update_reservation(reservation_id: str, payload: ReservationUpdate) -> Reservation:
    try:
        return engine.update_reservation(reservation_id, payload)
    except CannotUpdateCancelled:
        metrics.add_metric(name="UpdateCancelledRejected", value=1, unit=MetricUnit.Count)
        raise


@app.delete("/reservations/{reservation_id}")
def delete_reservation(reservation_id: str) -> Response:
    engine.cancel_reservation(reservation_id)
    metrics.add_metric(name="CancelReservation", value=1, unit=MetricUnit.Count)
    return Response(status_code=204)


@app.post("/reservations/{reservation_id}/cancel", response_model=list[RecordOutcome])
def cancel_reservation(reservation_id: str) -> list[RecordOutcome]:
    outcomes = engine.cancel_reservation(reservation_id)
    metrics.add_metric(name="CancelReservation", value=1, unit=MetricUnit.Count)
    return outcomes


@app.post("/reservations/cleanup/meeting-room/{space_id}", response_model=GroupCleanup)
def cleanup_meeting_room_group(space_id: str) -> GroupCleanup:
    result = engine.cleanup_group(space_id)
    metrics.add_metric(name="GroupCleanup", value=1, unit=MetricUnit.Count)
    return result


@app.get("/spaces/{space_id}/availability", response_model=SpaceAvailability)
def space_availability(space_id: str, date: str = Query(...)) -> SpaceAvailability:
    return engine.space_availability(space_id, date)
