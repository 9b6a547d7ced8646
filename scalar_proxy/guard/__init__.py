from .access_guard import (
    DISALLOWED_RANGES,
    DisallowedRange,
    address_is_disallowed,
    is_blocked,
)

__all__ = [
    "DISALLOWED_RANGES",
    "DisallowedRange",
    "address_is_disallowed",
    "is_blocked",
]
