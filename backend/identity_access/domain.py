"""
Identity domain constants and simple helpers.

Why:
- Centralize allowed roles to avoid drift between the claims resolver, the
  Keycloak adapter and the ingress layer.
- Keep the least-privilege default in one place.
"""

from __future__ import annotations

# Keep roles minimal and explicit. Immutable to prevent accidental mutation.
ALLOWED_ROLES = frozenset({"student", "teacher", "admin"})

# Unknown or missing roles fall back to the least privileged role.
DEFAULT_ROLE = "student"

# Keycloak user attributes that carry the synchronized claims. Written as one set.
# Prefixed so they never collide with the built-in `email` profile attribute;
# protocol mappers expose them as the `role`, `email` and `name` token claims.
CLAIM_ATTRIBUTES = {"role": "claims_role", "email": "claims_email", "name": "claims_name"}


def normalize_role(raw: object) -> str:
    """Return a recognized role for `raw` or the default role."""
    if not isinstance(raw, str):
        return DEFAULT_ROLE
    role = raw.strip().lower()
    return role if role in ALLOWED_ROLES else DEFAULT_ROLE


__all__ = ["ALLOWED_ROLES", "DEFAULT_ROLE", "CLAIM_ATTRIBUTES", "normalize_role"]
