from __future__ import annotations

from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Iterable, Iterator
import hashlib
import logging
import re
import shutil
from uuid import uuid4

import yaml

from .booking import (
    ReservationConflictError,
    ReservationNotFoundError,
    ReservationValidationError,
    TimeWindow,
    conflicts,
    normalize_equipment,
    to_utc,
    validate_group_size,
)
from .inventory import Inventory, Room, default_inventory

logger = logging.getLogger(__name__)

STATUS_CONFIRMED = "CONFIRMED"
DEFAULT_LOCK_TIMEOUT = 5.0
UPCOMING_WINDOW_DAYS = 30
_LOCATE_ATTEMPTS = 3


@dataclass(frozen=True)
class ReservationRecord:
    reservation_id: str
    user_id: str
    building: str
    room: str
    start: datetime
    end: datetime
    created_at: datetime
    updated_at: datetime
    group_size: int | None = None
    equipment: str | None = None
    status: str = STATUS_CONFIRMED

    @property
    def window(self) -> TimeWindow:
        return TimeWindow(self.start, self.end)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "reservation_id": self.reservation_id,
            "user_id": self.user_id,
            "building": self.building,
            "room": self.room,
            "group_size": self.group_size,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "status": self.status,
            "created_at": self.created_at.isoformat(timespec="seconds"),
            "updated_at": self.updated_at.isoformat(timespec="seconds"),
        }
        if self.equipment is not None:
            payload["equipment"] = self.equipment
        return payload

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "ReservationRecord":
        group_size = data.get("group_size")
        return ReservationRecord(
            reservation_id=str(data["reservation_id"]),
            user_id=str(data["user_id"]),
            building=str(data["building"]),
            room=str(data["room"]),
            start=to_utc(datetime.fromisoformat(str(data["start"]))),
            end=to_utc(datetime.fromisoformat(str(data["end"]))),
            created_at=to_utc(datetime.fromisoformat(str(data["created_at"]))),
            updated_at=to_utc(datetime.fromisoformat(str(data["updated_at"]))),
            group_size=(int(group_size) if group_size is not None else None),
            equipment=(str(data.get("equipment")) if data.get("equipment") is not None else None),
            status=str(data.get("status") or STATUS_CONFIRMED),
        )


class ReservationStorageError(RuntimeError):
    """The store could not be read or written in time; safe to retry."""


_SHARED_LOCKS: dict[tuple[str, ...], Lock] = {}
_SHARED_LOCKS_GUARD = Lock()


def _shared_lock(*key: str) -> Lock:
    # Keyed by store directory so separate repository objects on one
    # directory still exclude each other.
    with _SHARED_LOCKS_GUARD:
        lock = _SHARED_LOCKS.get(key)
        if lock is None:
            lock = _SHARED_LOCKS[key] = Lock()
        return lock


class ReservationYamlRepository:
    """Reservations persisted as one YAML file per room.

    Every mutation of a room file happens while holding that room's lock,
    so the conflict re-check and the write form one atomic step. Rooms do
    not share files or locks, which keeps unrelated commits independent.
    """

    def __init__(
        self,
        base_dir: str | Path = "data",
        inventory: Inventory | None = None,
        lock_timeout: float | None = DEFAULT_LOCK_TIMEOUT,
    ) -> None:
        self.base_dir = Path(base_dir)
        self.inventory = inventory or default_inventory()
        self.lock_timeout = lock_timeout
        self.rooms_dir = self.base_dir / "reservations"
        self.log_file = self.base_dir / "reservation_events.yaml"
        self._ensure_files()
        self._lock_scope = str(self.base_dir.resolve())

    def _ensure_files(self) -> None:
        try:
            self.rooms_dir.mkdir(parents=True, exist_ok=True)
            if not self.log_file.exists():
                self.log_file.write_text("[]\n", encoding="utf-8")
        except OSError as error:
            raise ReservationStorageError(f"Failed to prepare data directory: {self.base_dir}") from error

    def _room_file(self, building: str, room: str) -> Path:
        return self.rooms_dir / _file_key(building) / f"{_file_key(room)}.yaml"

    def _read_yaml_list(self, path: Path, recover: bool = False) -> list[dict[str, Any]]:
        try:
            payload = yaml.safe_load(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return []
        except (OSError, UnicodeDecodeError, yaml.YAMLError) as error:
            if recover:
                return self._recover_corrupted_yaml(path, error)
            raise ReservationStorageError(f"Failed to read YAML file: {path}") from error

        if payload is None:
            return []
        if not isinstance(payload, list):
            if recover:
                return self._recover_corrupted_yaml(path, ValueError("top-level YAML is not a list"))
            raise ReservationStorageError(f"YAML file does not hold a list: {path}")

        sanitized: list[dict[str, Any]] = []
        for index, row in enumerate(payload):
            if isinstance(row, dict):
                sanitized.append(row)
            elif not recover:
                raise ReservationStorageError(f"Row {index} of {path} is not a mapping")
        return sanitized

    def _write_yaml_list(self, path: Path, rows: list[dict[str, Any]]) -> None:
        temp_path = path.with_suffix(path.suffix + ".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            temp_path.write_text(yaml.safe_dump(rows, allow_unicode=True, sort_keys=False), encoding="utf-8")
            temp_path.replace(path)
        except OSError as error:
            raise ReservationStorageError(f"Failed to write YAML file: {path}") from error
        finally:
            if temp_path.exists():
                temp_path.unlink(missing_ok=True)

    def _recover_corrupted_yaml(self, path: Path, error: Exception) -> list[dict[str, Any]]:
        timestamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
        backup_path = path.with_name(f"{path.stem}.corrupt.{timestamp}{path.suffix}")
        try:
            if path.exists():
                shutil.copy2(path, backup_path)
        except OSError:
            logger.warning("Could not back up corrupted YAML file %s", path)

        recovered = [
            _event_entry(
                "YAML_RECOVERED",
                {"file": str(path.name), "backup": str(backup_path.name), "reason": str(error)},
            )
        ]
        self._write_yaml_list(path, recovered)
        return recovered

    def _log_event(self, event_type: str, payload: dict[str, Any], event_time: datetime | None = None) -> None:
        try:
            with self._acquire(_shared_lock(self._lock_scope, "events"), "event log"):
                events = self._read_yaml_list(self.log_file, recover=True)
                events.append(_event_entry(event_type, payload, event_time))
                self._write_yaml_list(self.log_file, events)
        except ReservationStorageError:
            # The reservation files are the source of truth; a lost audit
            # entry must not turn a completed commit into a reported failure.
            logger.warning("Failed to record %s event", event_type, exc_info=True)

    @contextmanager
    def _acquire(self, lock: Lock, label: str) -> Iterator[None]:
        timeout = -1 if self.lock_timeout is None else self.lock_timeout
        if not lock.acquire(timeout=timeout):
            raise ReservationStorageError(f"Timed out waiting for the {label} lock")
        try:
            yield
        finally:
            lock.release()

    @contextmanager
    def room_lock(self, *targets: tuple[str, str]) -> Iterator[None]:
        """Hold the exclusive locks of the given (building, room) pairs.

        Locks are taken in sorted order so two callers locking the same pair
        of rooms cannot deadlock.
        """
        with ExitStack() as stack:
            keyed = {str(self._room_file(building, room)): (building, room) for building, room in targets}
            for key in sorted(keyed):
                building, room = keyed[key]
                stack.enter_context(self._acquire(_shared_lock(self._lock_scope, "room", key), f"room {building}/{room}"))
            yield

    def _load_room(self, building: str, room: str) -> list[ReservationRecord]:
        rows = self._read_yaml_list(self._room_file(building, room))
        try:
            return [ReservationRecord.from_dict(row) for row in rows]
        except (KeyError, TypeError, ValueError) as error:
            raise ReservationStorageError(f"Malformed reservation row for {building}/{room}") from error

    def _store_room(self, building: str, room: str, records: Iterable[ReservationRecord]) -> None:
        ordered = sorted(records, key=lambda record: (record.start, record.created_at))
        self._write_yaml_list(self._room_file(building, room), [record.to_dict() for record in ordered])

    def _all_reservations(self) -> list[ReservationRecord]:
        records: list[ReservationRecord] = []
        for building in self.inventory.list_buildings():
            for room in self.inventory.rooms_of(building):
                records.extend(self._load_room(building, room.code))
        return records

    def _require_room(self, building: str, room: str) -> Room:
        room_spec = self.inventory.find_room(building, room)
        if room_spec is None:
            raise ReservationValidationError(f"Unknown room: {building} {room}")
        return room_spec

    def _locate(self, reservation_id: str) -> ReservationRecord:
        found = self.get_reservation(reservation_id)
        if found is None:
            raise ReservationNotFoundError("Reservation not found")
        return found

    @contextmanager
    def _locked_reservation(
        self,
        reservation_id: str,
        *extra_rooms: tuple[str, str],
    ) -> Iterator[tuple[ReservationRecord, list[ReservationRecord]]]:
        # The record can move between the lookup and the lock; look again.
        for _ in range(_LOCATE_ATTEMPTS):
            located = self._locate(reservation_id)
            with self.room_lock((located.building, located.room), *extra_rooms):
                records = self._load_room(located.building, located.room)
                current = next((record for record in records if record.reservation_id == reservation_id), None)
                if current is not None:
                    yield current, records
                    return
        raise ReservationNotFoundError("Reservation not found")

    def conflicting_reservations(self, building: str, window: TimeWindow) -> list[ReservationRecord]:
        """Return confirmed reservations in a building that may overlap the window.

        The filter is inclusive of touching boundaries; callers decide exact
        conflicts with ``conflicts``. The result is a snapshot only and says
        nothing about what a later commit will find.
        """
        found: list[ReservationRecord] = []
        for room in self.inventory.rooms_of(building):
            for record in self._load_room(building, room.code):
                if record.status != STATUS_CONFIRMED:
                    continue
                if record.start <= window.end and record.end >= window.start:
                    found.append(record)
        return found

    def commit(
        self,
        user_id: str,
        building: str,
        room: str,
        group_size: int | None,
        window: TimeWindow,
        equipment: str | None = None,
        now: datetime | None = None,
    ) -> ReservationRecord:
        user_id = _normalize_user_id(user_id)
        room_spec = self._require_room(building, room)
        size = validate_group_size(group_size, required=False)
        if size is not None and size > room_spec.capacity:
            raise ReservationValidationError(f"Room {building} {room} seats {room_spec.capacity}, not {size}.")
        effective_now = to_utc(now or datetime.now(timezone.utc))

        with self.room_lock((building, room)):
            existing = self._load_room(building, room)
            clash = _first_conflict(window, existing)
            if clash is None:
                record = ReservationRecord(
                    reservation_id=str(uuid4()),
                    user_id=user_id,
                    building=building,
                    room=room,
                    start=window.start,
                    end=window.end,
                    created_at=effective_now,
                    updated_at=effective_now,
                    group_size=size,
                    equipment=normalize_equipment(equipment),
                )
                self._store_room(building, room, existing + [record])

        if clash is not None:
            self._log_event(
                "RESERVATION_CONFLICT",
                {
                    "building": building,
                    "room": room,
                    "start": window.start.isoformat(timespec="seconds"),
                    "end": window.end.isoformat(timespec="seconds"),
                    "conflicting_reservation_id": clash.reservation_id,
                },
                effective_now,
            )
            raise ReservationConflictError(f"Room {building} {room} is already booked for an overlapping time.")

        self._log_event(
            "RESERVATION_CREATED",
            {
                "reservation_id": record.reservation_id,
                "user_id": user_id,
                "building": building,
                "room": room,
                "start": record.start.isoformat(timespec="seconds"),
                "end": record.end.isoformat(timespec="seconds"),
            },
            effective_now,
        )
        return record

    def relocate(
        self,
        reservation_id: str,
        building: str,
        room: str,
        window: TimeWindow,
        group_size: int | None = None,
        equipment: str | None = None,
        now: datetime | None = None,
    ) -> ReservationRecord:
        """Move a reservation to a room and window, re-checking conflicts.

        Source and target rooms are locked together. When the target write
        succeeds but removing the source copy fails, the target write is
        undone so the record never exists twice. An ``equipment`` of None
        keeps the current note; an empty value clears it.
        """
        room_spec = self._require_room(building, room)
        size = validate_group_size(group_size, required=False)
        effective_now = to_utc(now or datetime.now(timezone.utc))

        with self._locked_reservation(reservation_id, (building, room)) as (current, source_records):
            effective_size = size if size is not None else current.group_size
            if effective_size is not None and effective_size > room_spec.capacity:
                raise ReservationValidationError(f"Room {building} {room} seats {room_spec.capacity}, not {effective_size}.")

            same_room = (current.building, current.room) == (building, room)
            target_records = source_records if same_room else self._load_room(building, room)
            others = [record for record in target_records if record.reservation_id != reservation_id]
            clash = _first_conflict(window, others)
            if clash is None:
                moved = replace(
                    current,
                    building=building,
                    room=room,
                    start=window.start,
                    end=window.end,
                    group_size=effective_size,
                    equipment=current.equipment if equipment is None else normalize_equipment(equipment),
                    updated_at=effective_now,
                )
                if same_room:
                    self._store_room(building, room, others + [moved])
                else:
                    self._store_room(building, room, target_records + [moved])
                    remaining = [record for record in source_records if record.reservation_id != reservation_id]
                    try:
                        self._store_room(current.building, current.room, remaining)
                    except ReservationStorageError:
                        self._store_room(building, room, target_records)
                        raise

        if clash is not None:
            self._log_event(
                "RESERVATION_CONFLICT",
                {
                    "reservation_id": reservation_id,
                    "building": building,
                    "room": room,
                    "start": window.start.isoformat(timespec="seconds"),
                    "end": window.end.isoformat(timespec="seconds"),
                    "conflicting_reservation_id": clash.reservation_id,
                },
                effective_now,
            )
            raise ReservationConflictError(f"Room {building} {room} is already booked for an overlapping time.")

        self._log_event(
            "RESERVATION_MOVED",
            {
                "reservation_id": reservation_id,
                "from": f"{current.building} {current.room}",
                "to": f"{building} {room}",
                "start": moved.start.isoformat(timespec="seconds"),
                "end": moved.end.isoformat(timespec="seconds"),
            },
            effective_now,
        )
        return moved

    def update_details(
        self,
        reservation_id: str,
        *,
        group_size: int | None = None,
        equipment: str | None = None,
        now: datetime | None = None,
    ) -> ReservationRecord:
        """Change fields that never affect allocation: group size within the
        current room's capacity, and the equipment note (empty clears it)."""
        size = validate_group_size(group_size, required=False)
        effective_now = to_utc(now or datetime.now(timezone.utc))

        with self._locked_reservation(reservation_id) as (current, records):
            if size is not None:
                room_spec = self._require_room(current.building, current.room)
                if size > room_spec.capacity:
                    raise ReservationValidationError(
                        f"Room {current.building} {current.room} seats {room_spec.capacity}, not {size}."
                    )
            updated = replace(
                current,
                group_size=size if size is not None else current.group_size,
                equipment=normalize_equipment(equipment) if equipment is not None else current.equipment,
                updated_at=effective_now,
            )
            others = [record for record in records if record.reservation_id != reservation_id]
            self._store_room(current.building, current.room, others + [updated])

        self._log_event(
            "RESERVATION_UPDATED",
            {
                "reservation_id": reservation_id,
                "group_size": updated.group_size,
                "equipment": updated.equipment,
            },
            effective_now,
        )
        return updated

    def get_reservation(self, reservation_id: str) -> ReservationRecord | None:
        target = str(reservation_id).strip()
        for record in self._all_reservations():
            if record.reservation_id == target:
                return record
        return None

    def list_reservations(self, user_id: str) -> list[ReservationRecord]:
        owned = [record for record in self._all_reservations() if record.user_id == user_id]
        return sorted(owned, key=lambda record: (record.start, record.building, record.room))

    def upcoming_reservations(
        self,
        user_id: str,
        now: datetime | None = None,
        days: int | None = UPCOMING_WINDOW_DAYS,
    ) -> list[ReservationRecord]:
        if days is not None and days <= 0:
            raise ReservationValidationError("days must be greater than zero")

        effective_now = to_utc(now or datetime.now(timezone.utc))
        horizon = effective_now + timedelta(days=days) if days is not None else None
        return [
            record
            for record in self.list_reservations(user_id)
            if record.start >= effective_now and (horizon is None or record.start <= horizon)
        ]

    def cancel_reservation(
        self,
        reservation_id: str,
        user_id: str | None = None,
        now: datetime | None = None,
    ) -> ReservationRecord:
        effective_now = to_utc(now or datetime.now(timezone.utc))

        with self._locked_reservation(reservation_id) as (current, records):
            if user_id is not None and current.user_id != user_id:
                raise ReservationNotFoundError("Reservation not found")
            remaining = [record for record in records if record.reservation_id != reservation_id]
            self._store_room(current.building, current.room, remaining)

        self._log_event(
            "RESERVATION_CANCELLED",
            {
                "reservation_id": current.reservation_id,
                "user_id": current.user_id,
                "building": current.building,
                "room": current.room,
            },
            effective_now,
        )
        return current

    def cancel_by_pick(self, user_id: str, pick_index: int, now: datetime | None = None) -> ReservationRecord | None:
        """Cancel the n-th (1-based) upcoming reservation of a user.

        Returns None when the user has nothing upcoming to cancel.
        """
        if isinstance(pick_index, bool) or not isinstance(pick_index, int) or pick_index < 1:
            raise ReservationValidationError("pickIndex must be a positive integer")

        upcoming = self.upcoming_reservations(user_id, now=now, days=None)
        if not upcoming:
            return None
        if pick_index > len(upcoming):
            raise ReservationNotFoundError("Selection not found")

        chosen = upcoming[pick_index - 1]
        return self.cancel_reservation(chosen.reservation_id, user_id=user_id, now=now)


def _event_entry(event_type: str, payload: dict[str, Any], event_time: datetime | None = None) -> dict[str, Any]:
    timestamp = to_utc(event_time or datetime.now(timezone.utc)).isoformat(timespec="seconds")
    return {"event_time": timestamp, "event_type": event_type, "payload": payload}


def _first_conflict(window: TimeWindow, records: Iterable[ReservationRecord]) -> ReservationRecord | None:
    for record in records:
        if record.status == STATUS_CONFIRMED and conflicts(window, record.window):
            return record
    return None


def _normalize_user_id(user_id: str | None) -> str:
    if user_id is None:
        raise ReservationValidationError("userId is required")

    normalized = str(user_id).strip()
    if not normalized:
        raise ReservationValidationError("userId is required")
    return normalized


def _file_key(name: str) -> str:
    # Readable prefix plus a digest of the exact name, so distinct names that
    # differ only in case or punctuation never share a file.
    readable = re.sub(r"[^a-z0-9]+", "_", name.lower()).strip("_") or "_"
    digest = hashlib.sha256(name.encode("utf-8")).hexdigest()[:16]
    return f"{readable}-{digest}"
