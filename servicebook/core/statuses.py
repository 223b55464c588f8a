"""Canonical status values for partners and service points.

Historic rows carry Russian labels or numeric codes, and the v2 API spoke of
``working`` where v1 used ``active``. Every read and write goes through
:func:`normalize_status` so that only the canonical set reaches clients.
"""

STATUS_ACTIVE = "active"
STATUS_SUSPENDED = "suspended"
STATUS_CLOSED = "closed"

CANONICAL_STATUSES = (STATUS_ACTIVE, STATUS_SUSPENDED, STATUS_CLOSED)

STATUS_MAPPING = {
    "active": STATUS_ACTIVE,
    "suspended": STATUS_SUSPENDED,
    "closed": STATUS_CLOSED,
    "working": STATUS_ACTIVE,
    "работает": STATUS_ACTIVE,
    "приостановлена": STATUS_SUSPENDED,
    "закрыта": STATUS_CLOSED,
    "0": STATUS_ACTIVE,
    "1": STATUS_SUSPENDED,
    "2": STATUS_CLOSED,
}


def _key(value) -> str:
    if value is None:
        return ""
    return str(value).strip().lower()


def is_known_status(value) -> bool:
    return _key(value) in STATUS_MAPPING


def normalize_status(value) -> str:
    """Map any known alias to its canonical status; anything else is active."""
    return STATUS_MAPPING.get(_key(value), STATUS_ACTIVE)


def is_active_status(value) -> bool:
    return normalize_status(value) == STATUS_ACTIVE


def aliases_of(status: str) -> list[str]:
    """Every stored spelling that normalizes to ``status``."""
    return sorted(key for key, value in STATUS_MAPPING.items() if value == status)
