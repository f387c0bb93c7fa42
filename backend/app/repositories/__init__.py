"""Repository abstractions for database interactions."""

from .check_in_repository import CheckInRepository
from .claim_repository import ClaimRepository
from .event_repository import EventRepository

__all__ = [
    "CheckInRepository",
    "ClaimRepository",
    "EventRepository",
]
