from .booking import (
	ReservationConflictError,
	ReservationNotFoundError,
	ReservationValidationError,
	TimeWindow,
	can_reserve,
	conflicts,
	has_time_overlap,
)
from .inventory import DEFAULT_INVENTORY, Inventory, InventoryConfigError, Room, UnknownBuildingError, load_inventory
from .yaml_store import ReservationRecord, ReservationStorageError, ReservationYamlRepository
from .allocation import (
	BookingRequest,
	ReservationAttemptResult,
	RoomChoice,
	find_room,
	reserve_room,
	update_reservation,
)

__all__ = [
	"TimeWindow",
	"conflicts",
	"has_time_overlap",
	"can_reserve",
	"ReservationValidationError",
	"ReservationConflictError",
	"ReservationNotFoundError",
	"DEFAULT_INVENTORY",
	"Inventory",
	"InventoryConfigError",
	"Room",
	"UnknownBuildingError",
	"load_inventory",
	"ReservationRecord",
	"ReservationStorageError",
	"ReservationYamlRepository",
	"BookingRequest",
	"ReservationAttemptResult",
	"RoomChoice",
	"find_room",
	"reserve_room",
	"update_reservation",
]
