from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

import yaml


class InventoryConfigError(ValueError):
    pass


class UnknownBuildingError(LookupError):
    pass


@dataclass(frozen=True)
class Room:
    code: str
    capacity: int


@dataclass(frozen=True)
class Building:
    name: str
    rooms: tuple[Room, ...]


DEFAULT_INVENTORY: dict[str, list[dict[str, Any]]] = {
    "Library": [
        {"room": "L201", "capacity": 5},
        {"room": "L202", "capacity": 8},
        {"room": "L203", "capacity": 10},
        {"room": "L204", "capacity": 12},
        {"room": "L205", "capacity": 15},
    ],
    "Engineering": [
        {"room": "E101", "capacity": 5},
        {"room": "E102", "capacity": 7},
        {"room": "E103", "capacity": 9},
        {"room": "E104", "capacity": 12},
        {"room": "E105", "capacity": 15},
    ],
    "Science": [
        {"room": "S301", "capacity": 5},
        {"room": "S302", "capacity": 6},
        {"room": "S303", "capacity": 8},
        {"room": "S304", "capacity": 10},
        {"room": "S305", "capacity": 14},
    ],
    "Business": [
        {"room": "B401", "capacity": 5},
        {"room": "B402", "capacity": 6},
        {"room": "B403", "capacity": 9},
        {"room": "B404", "capacity": 11},
        {"room": "B405", "capacity": 15},
    ],
    "Student Center": [
        {"room": "SC501", "capacity": 5},
        {"room": "SC502", "capacity": 7},
        {"room": "SC503", "capacity": 8},
        {"room": "SC504", "capacity": 12},
        {"room": "SC505", "capacity": 15},
    ],
}


def _name_key(name: str) -> str:
    return " ".join(str(name).split()).lower()


class Inventory:
    """Read-only catalog of buildings and their rooms.

    Declaration order matters: buildings are tried in the order they are
    declared and rooms within a building likewise, so the reference
    inventory (ascending capacity) yields a smallest-room-first search.
    """

    def __init__(self, buildings: tuple[Building, ...]) -> None:
        if not buildings:
            raise InventoryConfigError("inventory must declare at least one building")
        self._buildings = buildings
        self._by_name = {building.name: building for building in buildings}
        self._by_key = {_name_key(building.name): building.name for building in buildings}
        if len(self._by_key) != len(buildings):
            raise InventoryConfigError("building names must be unique ignoring case and spacing")

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any]) -> "Inventory":
        if not isinstance(mapping, Mapping):
            raise InventoryConfigError("inventory must be a mapping of building -> rooms")

        buildings: list[Building] = []
        for raw_name, raw_rooms in mapping.items():
            name = " ".join(str(raw_name).split())
            if not name:
                raise InventoryConfigError("building name must not be empty")
            if not isinstance(raw_rooms, list) or not raw_rooms:
                raise InventoryConfigError(f"building {name!r} must list at least one room")

            rooms: list[Room] = []
            seen_codes: set[str] = set()
            for entry in raw_rooms:
                if not isinstance(entry, Mapping):
                    raise InventoryConfigError(f"room entries of {name!r} must be mappings")
                code = str(entry.get("room", "")).strip()
                capacity = entry.get("capacity")
                if not code:
                    raise InventoryConfigError(f"room code missing in building {name!r}")
                if code in seen_codes:
                    raise InventoryConfigError(f"duplicate room {code!r} in building {name!r}")
                if isinstance(capacity, bool) or not isinstance(capacity, int) or capacity <= 0:
                    raise InventoryConfigError(f"room {code!r} in {name!r} needs a positive integer capacity")
                seen_codes.add(code)
                rooms.append(Room(code=code, capacity=capacity))
            buildings.append(Building(name=name, rooms=tuple(rooms)))

        return cls(tuple(buildings))

    def list_buildings(self) -> tuple[str, ...]:
        return tuple(building.name for building in self._buildings)

    def rooms_of(self, building: str) -> tuple[Room, ...]:
        try:
            return self._by_name[building].rooms
        except KeyError:
            raise UnknownBuildingError(f"Unknown building: {building}") from None

    def normalize(self, raw_name: str | None) -> str | None:
        if raw_name is None:
            return None
        return self._by_key.get(_name_key(raw_name))

    def find_room(self, building: str, code: str) -> Room | None:
        target = self._by_name.get(building)
        if target is None:
            return None
        for room in target.rooms:
            if room.code == code:
                return room
        return None

    def room_count(self) -> int:
        return sum(len(building.rooms) for building in self._buildings)


def load_inventory(path: str | Path) -> Inventory:
    try:
        payload = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, yaml.YAMLError) as error:
        raise InventoryConfigError(f"Failed to read inventory file: {path}") from error
    return Inventory.from_mapping(payload or {})


def default_inventory() -> Inventory:
    return Inventory.from_mapping(DEFAULT_INVENTORY)
