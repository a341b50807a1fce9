"""
Claims resolution: map a profile snapshot to the canonical claims set.

Pure and deterministic. No store or network access so version decisions stay
reproducible and tests stay cheap.
"""

from __future__ import annotations

from backend.identity_access.domain import ALLOWED_ROLES, normalize_role

from .ports import ClaimsSet, ClaimsValidationError, ProfileRecord


def resolve(profile: ProfileRecord) -> ClaimsSet:
    """Return the claims for `profile`.

    - role: recognized role (case/whitespace-insensitive), otherwise `student`.
    - email: verbatim; used for display only, never for authorization.
    - name: display name when not blank, otherwise an empty string.
    """
    name = profile.display_name if isinstance(profile.display_name, str) else ""
    if not name.strip():
        name = ""
    return ClaimsSet(
        role=normalize_role(profile.role),
        email=profile.email or "",
        name=name,
    )


def validate_claims(claims: ClaimsSet) -> ClaimsSet:
    """Reject claim sets that must never reach the identity store."""
    if claims.role not in ALLOWED_ROLES:
        raise ClaimsValidationError("role_not_allowed")
    return claims


__all__ = ["resolve", "validate_claims"]
