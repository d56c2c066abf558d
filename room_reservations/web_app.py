from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable
import os

from flask import Flask, jsonify, request

from .allocation import BookingRequest, find_room, reserve_room, update_reservation
from .booking import (
    ReservationConflictError,
    ReservationNotFoundError,
    ReservationValidationError,
    TimeWindow,
    parse_instant,
    validate_group_size,
)
from .inventory import Inventory, load_inventory
from .yaml_store import DEFAULT_LOCK_TIMEOUT, UPCOMING_WINDOW_DAYS, ReservationRecord, ReservationStorageError, ReservationYamlRepository

NO_ROOM_MESSAGE = "No room available for that size and time across buildings"


def create_app(
    data_dir: str | Path = "data",
    inventory: Inventory | None = None,
    now_provider: Callable[[], datetime] | None = None,
    lock_timeout: float | None = DEFAULT_LOCK_TIMEOUT,
) -> Flask:
    app = Flask(__name__)
    repository = ReservationYamlRepository(data_dir, inventory=inventory, lock_timeout=lock_timeout)
    clock: Callable[[], datetime] = now_provider or (lambda: datetime.now(timezone.utc))
    app.config["REPOSITORY"] = repository

    @app.after_request
    def add_cors_headers(response: Any) -> Any:
        response.headers["Access-Control-Allow-Origin"] = "*"
        response.headers["Access-Control-Allow-Methods"] = "GET,POST,OPTIONS"
        response.headers["Access-Control-Allow-Headers"] = "Content-Type"
        return response

    @app.errorhandler(ReservationStorageError)
    def storage_unavailable(error: ReservationStorageError) -> Any:
        app.logger.warning("Reservation store unavailable: %s", error)
        return jsonify({"ok": False, "retryable": True, "message": "Reservation store is temporarily unavailable."}), 503

    @app.get("/")
    def index() -> Any:
        return jsonify({"ok": True, "service": "room-reservations"})

    @app.post("/reserve")
    def reserve() -> Any:
        payload = request.get_json(silent=True) or {}
        if not all(payload.get(key) not in (None, "") for key in ("userId", "groupSize", "startTime", "endTime")):
            return jsonify({"ok": False, "message": "userId, groupSize, startTime, endTime are required"}), 400

        try:
            booking = BookingRequest(
                user_id=str(payload.get("userId", "")),
                group_size=payload.get("groupSize"),
                start=parse_instant(payload.get("startTime", "")),
                end=parse_instant(payload.get("endTime", "")),
                building_preference=_optional_text(payload.get("building")),
                equipment=payload.get("equipment"),
                strict=_as_flag(payload.get("strict")),
            )
        except ReservationValidationError as error:
            return jsonify({"ok": False, "message": str(error)}), 400

        result = reserve_room(repository, booking, now=clock())
        if not result.available:
            return jsonify({"ok": True, "available": False, "message": NO_ROOM_MESSAGE})

        return jsonify(
            {
                "ok": True,
                "available": True,
                "strategy": result.strategy,
                "reservation": _serialize_reservation(result.reservation),
            }
        )

    @app.get("/get")
    def get_reservation() -> Any:
        reservation_id = str(request.args.get("id", "")).strip()
        if not reservation_id:
            return jsonify({"ok": False, "message": "id is required"}), 400

        record = repository.get_reservation(reservation_id)
        if record is None:
            return jsonify({"ok": False, "message": "Reservation not found"}), 404
        return jsonify({"ok": True, "reservation": _serialize_reservation(record)})

    @app.get("/availability")
    def availability() -> Any:
        start_text = str(request.args.get("start", "")).strip()
        end_text = str(request.args.get("end", "")).strip()
        if not start_text or not end_text or not request.args.get("groupSize"):
            return jsonify({"ok": False, "message": "start, end, groupSize are required"}), 400

        try:
            group_size = validate_group_size(request.args.get("groupSize"))
            window = TimeWindow(parse_instant(start_text), parse_instant(end_text))
        except ReservationValidationError as error:
            return jsonify({"ok": False, "message": str(error)}), 400

        chosen = find_room(
            repository,
            _optional_text(request.args.get("building")),
            group_size,
            window,
            strict=_as_flag(request.args.get("strict")),
        )
        if chosen is None:
            return jsonify({"ok": True, "available": False})

        return jsonify(
            {
                "ok": True,
                "available": True,
                "building": chosen.building,
                "room": chosen.room,
                "capacity": chosen.capacity,
            }
        )

    @app.post("/update")
    def update() -> Any:
        payload = request.get_json(silent=True) or {}
        reservation_id = str(payload.get("reservationId", "")).strip()
        updates = payload.get("updates")
        if not reservation_id or not isinstance(updates, dict):
            return jsonify({"ok": False, "message": "reservationId and updates object are required"}), 400

        try:
            result = update_reservation(repository, reservation_id, updates, now=clock())
        except ReservationNotFoundError as error:
            return jsonify({"ok": False, "message": str(error)}), 404
        except ReservationConflictError as error:
            return jsonify({"ok": False, "message": str(error)}), 409
        except ReservationValidationError as error:
            return jsonify({"ok": False, "message": str(error)}), 400

        if not result.available:
            return jsonify({"ok": True, "updated": False, "available": False, "message": NO_ROOM_MESSAGE})

        return jsonify(
            {
                "ok": True,
                "updated": True,
                "strategy": result.strategy,
                "reservation": _serialize_reservation(result.reservation),
            }
        )

    @app.post("/cancel")
    def cancel() -> Any:
        payload = request.get_json(silent=True) or {}
        reservation_id = str(payload.get("reservationId", "")).strip()
        if not reservation_id:
            return jsonify({"ok": False, "message": "reservationId is required"}), 400

        try:
            repository.cancel_reservation(reservation_id, now=clock())
        except ReservationNotFoundError as error:
            return jsonify({"ok": False, "message": str(error)}), 404
        return jsonify({"ok": True, "deleted": True, "reservationId": reservation_id})

    @app.get("/reservations/upcoming")
    def upcoming() -> Any:
        user_id = str(request.args.get("userId", "")).strip()
        if not user_id:
            return jsonify({"ok": False, "message": "userId is required"}), 400

        days = _positive_int(request.args.get("days")) or UPCOMING_WINDOW_DAYS
        records = repository.upcoming_reservations(user_id, now=clock(), days=days)
        return jsonify({"ok": True, "items": [_serialize_reservation(record) for record in records]})

    @app.post("/cancel/by-user")
    def cancel_by_user() -> Any:
        payload = request.get_json(silent=True) or {}
        user_id = str(payload.get("userId", "")).strip()
        pick_index = payload.get("pickIndex")
        if not user_id or pick_index is None:
            return jsonify({"ok": False, "message": "userId and pickIndex are required"}), 400

        index = _positive_int(pick_index)
        if index is None:
            return jsonify({"ok": False, "message": "pickIndex must be a positive integer"}), 400

        try:
            cancelled = repository.cancel_by_pick(user_id, index, now=clock())
        except ReservationNotFoundError as error:
            return jsonify({"ok": False, "message": str(error)}), 404

        if cancelled is None:
            return jsonify({"ok": True, "deleted": False, "message": "No upcoming reservations to cancel."})
        return jsonify({"ok": True, "deleted": True, "reservation": _serialize_reservation(cancelled)})

    @app.get("/list")
    def list_reservations() -> Any:
        user_id = str(request.args.get("userId", "")).strip()
        if not user_id:
            return jsonify({"ok": False, "message": "userId is required"}), 400

        records = repository.list_reservations(user_id)
        return jsonify({"ok": True, "items": [_serialize_reservation(record) for record in records]})

    return app


def _serialize_reservation(record: ReservationRecord) -> dict[str, Any]:
    return {
        "reservationId": record.reservation_id,
        "userId": record.user_id,
        "building": record.building,
        "room": record.room,
        "groupSize": record.group_size,
        "startTime": record.start.isoformat(),
        "endTime": record.end.isoformat(),
        "equipment": record.equipment,
        "status": record.status,
        "createdAt": record.created_at.isoformat(timespec="seconds"),
        "updatedAt": record.updated_at.isoformat(timespec="seconds"),
    }


def _optional_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _as_flag(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() == "true"


def _positive_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = int(str(value).strip())
    except ValueError:
        return None
    return number if number > 0 else None


if __name__ == "__main__":
    inventory_path = os.environ.get("ROOM_RESERVATIONS_INVENTORY")
    app = create_app(
        data_dir=os.environ.get("ROOM_RESERVATIONS_DATA_DIR", "data"),
        inventory=load_inventory(inventory_path) if inventory_path else None,
    )
    app.run(host=os.environ.get("HOST", "127.0.0.1"), port=int(os.environ.get("PORT", "3000")), debug=False)
