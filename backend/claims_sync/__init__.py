"""Identity-claims synchronization for the identity_access context.

Re-export the router and its value types for convenient imports in tests.
"""

from .ports import ClaimsSet, PrincipalCreated, ProfileRecord, ProfileUpdated, SyncOutcome, SyncVersion
from .router import EventRouter

__all__ = [
    "ClaimsSet",
    "EventRouter",
    "PrincipalCreated",
    "ProfileRecord",
    "ProfileUpdated",
    "SyncOutcome",
    "SyncVersion",
]
