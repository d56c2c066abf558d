from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Mapping

from .booking import (
    ReservationConflictError,
    ReservationNotFoundError,
    ReservationValidationError,
    TimeWindow,
    conflicts,
    normalize_equipment,
    parse_instant,
    to_utc,
    validate_group_size,
)
from .inventory import Inventory
from .yaml_store import ReservationRecord, ReservationYamlRepository

UPDATABLE_FIELDS = {
    "building": "building",
    "room": "room",
    "groupSize": "group_size",
    "group_size": "group_size",
    "startTime": "start",
    "start": "start",
    "endTime": "end",
    "end": "end",
    "equipment": "equipment",
}
_ALLOCATING_FIELDS = {"building", "room", "group_size", "start", "end"}


@dataclass(frozen=True)
class RoomChoice:
    building: str
    room: str
    capacity: int


@dataclass(frozen=True)
class BookingRequest:
    user_id: str
    group_size: int
    start: datetime
    end: datetime
    building_preference: str | None = None
    equipment: str | None = None
    strict: bool = False

    def __post_init__(self) -> None:
        user_id = str(self.user_id or "").strip()
        if not user_id:
            raise ReservationValidationError("userId is required")
        object.__setattr__(self, "user_id", user_id)
        object.__setattr__(self, "group_size", validate_group_size(self.group_size))
        object.__setattr__(self, "start", to_utc(self.start))
        object.__setattr__(self, "end", to_utc(self.end))
        object.__setattr__(self, "equipment", normalize_equipment(self.equipment))
        TimeWindow(self.start, self.end)

    @property
    def window(self) -> TimeWindow:
        return TimeWindow(self.start, self.end)


@dataclass(frozen=True)
class ReservationAttemptResult:
    strategy: str
    reservation: ReservationRecord | None
    attempts: int = 0
    lost_races: tuple[tuple[str, str], ...] = field(default_factory=tuple)

    @property
    def available(self) -> bool:
        return self.reservation is not None


def candidate_buildings(inventory: Inventory, building_preference: str | None, strict: bool) -> list[str]:
    """Order buildings for a search.

    An unrecognised preference yields nothing to try under strict search and
    is ignored otherwise.
    """
    buildings = list(inventory.list_buildings())
    if building_preference is None or not str(building_preference).strip():
        return buildings

    preferred = inventory.normalize(building_preference)
    if preferred is None:
        return [] if strict else buildings
    if strict:
        return [preferred]
    return [preferred] + [building for building in buildings if building != preferred]


def find_room(
    repository: ReservationYamlRepository,
    building_preference: str | None,
    group_size: Any,
    window: TimeWindow,
    strict: bool = False,
    exclude: Iterable[tuple[str, str]] = (),
) -> RoomChoice | None:
    """Return the first free room that seats the group, or None.

    Buildings are visited in ``candidate_buildings`` order and rooms in
    catalog order, so the smallest sufficient room wins in the reference
    inventory. Nothing is locked or written here.
    """
    size = validate_group_size(group_size)
    inventory = repository.inventory
    excluded = set(exclude)

    for building in candidate_buildings(inventory, building_preference, strict):
        rooms = [
            room
            for room in inventory.rooms_of(building)
            if room.capacity >= size and (building, room.code) not in excluded
        ]
        if not rooms:
            continue

        taken = repository.conflicting_reservations(building, window)
        for room in rooms:
            if not any(record.room == room.code and conflicts(record.window, window) for record in taken):
                return RoomChoice(building=building, room=room.code, capacity=room.capacity)
    return None


def reserve_room(
    repository: ReservationYamlRepository,
    request: BookingRequest,
    now: datetime | None = None,
) -> ReservationAttemptResult:
    """Search for a room and commit it, retrying when a commit loses a race.

    A room that lost a race is excluded from the next search, so the loop
    ends after at most one attempt per room in the inventory.
    """
    window = request.window
    lost: list[tuple[str, str]] = []

    for attempt in range(1, repository.inventory.room_count() + 1):
        choice = find_room(
            repository,
            request.building_preference,
            request.group_size,
            window,
            strict=request.strict,
            exclude=lost,
        )
        if choice is None:
            break

        try:
            created = repository.commit(
                user_id=request.user_id,
                building=choice.building,
                room=choice.room,
                group_size=request.group_size,
                window=window,
                equipment=request.equipment,
                now=now,
            )
        except ReservationConflictError:
            lost.append((choice.building, choice.room))
            continue

        return ReservationAttemptResult(
            strategy=_strategy_for(repository.inventory, request.building_preference, created.building),
            reservation=created,
            attempts=attempt,
            lost_races=tuple(lost),
        )

    return ReservationAttemptResult(strategy="unavailable", reservation=None, attempts=len(lost), lost_races=tuple(lost))


def update_reservation(
    repository: ReservationYamlRepository,
    reservation_id: str,
    updates: Mapping[str, Any],
    now: datetime | None = None,
) -> ReservationAttemptResult:
    """Apply a partial update restricted to ``UPDATABLE_FIELDS``.

    Changes to building, room, time or group size are re-validated against
    other reservations. With an explicit room the reservation moves there or
    the call raises ``ReservationConflictError``. Without one the current
    room is kept when it still fits and is free, otherwise another room of
    the target building is searched.
    """
    if not isinstance(updates, Mapping) or not updates:
        raise ReservationValidationError("updates must be a non-empty object")
    unknown = sorted(key for key in updates if key not in UPDATABLE_FIELDS)
    if unknown:
        raise ReservationValidationError(f"Unsupported update fields: {', '.join(unknown)}")

    changes = {UPDATABLE_FIELDS[key]: value for key, value in updates.items()}
    current = repository.get_reservation(reservation_id)
    if current is None:
        raise ReservationNotFoundError("Reservation not found")

    if not _ALLOCATING_FIELDS & changes.keys():
        updated = repository.update_details(
            current.reservation_id,
            equipment=normalize_equipment(changes["equipment"]) or "",
            now=now,
        )
        return ReservationAttemptResult(strategy="details", reservation=updated, attempts=0)

    inventory = repository.inventory
    building = current.building
    if "building" in changes:
        building = inventory.normalize(changes["building"])
        if building is None:
            raise ReservationValidationError(f"Unknown building: {changes['building']}")

    size = validate_group_size(changes.get("group_size", current.group_size), required=False)
    start = parse_instant(changes["start"]) if "start" in changes else current.start
    end = parse_instant(changes["end"]) if "end" in changes else current.end
    window = TimeWindow(start, end)
    equipment = (normalize_equipment(changes["equipment"]) or "") if "equipment" in changes else None

    if "room" in changes:
        room = str(changes["room"] or "").strip()
        moved = repository.relocate(
            current.reservation_id, building, room, window, group_size=size, equipment=equipment, now=now
        )
        return ReservationAttemptResult(strategy="requested_room", reservation=moved, attempts=1)

    candidates: list[str] = []
    current_room = inventory.find_room(building, current.room) if building == current.building else None
    if current_room is not None and (size is None or current_room.capacity >= size):
        candidates.append(current.room)

    lost: list[tuple[str, str]] = []
    for attempt in range(1, inventory.room_count() + 1):
        if candidates:
            target = candidates.pop()
        else:
            # The reservation's own room is already tried or unusable.
            choice = find_room(
                repository,
                building,
                size or 1,
                window,
                strict=True,
                exclude=lost + [(current.building, current.room)],
            )
            if choice is None:
                break
            target = choice.room

        try:
            moved = repository.relocate(
                current.reservation_id, building, target, window, group_size=size, equipment=equipment, now=now
            )
        except ReservationConflictError:
            lost.append((building, target))
            continue

        strategy = "same_room" if (moved.building, moved.room) == (current.building, current.room) else "other_room"
        return ReservationAttemptResult(strategy=strategy, reservation=moved, attempts=attempt)

    return ReservationAttemptResult(strategy="unavailable", reservation=None, attempts=len(lost), lost_races=tuple(lost))


def _strategy_for(inventory: Inventory, building_preference: str | None, chosen_building: str) -> str:
    preferred = inventory.normalize(building_preference) if building_preference else None
    if preferred is None:
        return "any_building"
    if preferred == chosen_building:
        return "preferred_building"
    return "other_building"
