"""TubeDigest: metered batch summarisation of YouTube channels and videos."""

from .errors import (
    FetchUnavailable,
    InsufficientCapacity,
    InvalidRequest,
    TicketAlreadySettled,
    TubeDigestError,
)
from .models import Account, Entity, ReservationTicket, RunRecord, SummaryState

__version__ = "0.1.0"

__all__ = [
    "Account",
    "Entity",
    "FetchUnavailable",
    "InsufficientCapacity",
    "InvalidRequest",
    "ReservationTicket",
    "RunRecord",
    "SummaryState",
    "TicketAlreadySettled",
    "TubeDigestError",
    "__version__",
]
