from __future__ import annotations

from enum import Enum


class Role(str, Enum):
    ADMIN = "admin"
    LEADER = "leader"
    SCOUT = "scout"
    VIEWER = "viewer"


class ItemCategory(str, Enum):
    PERMANENT = "permanent"
    STAPLES = "staples"


class LocationSide(str, Enum):
    LEFT = "left"
    RIGHT = "right"


class LocationLevel(str, Enum):
    LOW = "low"
    MIDDLE = "middle"
    HIGH = "high"


class ItemStatus(str, Enum):
    AVAILABLE = "available"
    CHECKED_OUT = "checked_out"
    NEEDS_REPAIR = "needs_repair"


class TransactionAction(str, Enum):
    CHECK_OUT = "check_out"
    CHECK_IN = "check_in"


# Workflow transitions: the only way status changes outside administrative updates.
CIRCULATION_TRANSITIONS: dict[TransactionAction, tuple[ItemStatus, ItemStatus]] = {
    TransactionAction.CHECK_OUT: (ItemStatus.AVAILABLE, ItemStatus.CHECKED_OUT),
    TransactionAction.CHECK_IN: (ItemStatus.CHECKED_OUT, ItemStatus.AVAILABLE),
}

# Administrative transitions; needs_repair is only left through an explicit update.
ADMIN_TRANSITIONS: dict[ItemStatus, frozenset[ItemStatus]] = {
    ItemStatus.AVAILABLE: frozenset({ItemStatus.NEEDS_REPAIR}),
    ItemStatus.CHECKED_OUT: frozenset({ItemStatus.NEEDS_REPAIR}),
    ItemStatus.NEEDS_REPAIR: frozenset({ItemStatus.AVAILABLE}),
}
