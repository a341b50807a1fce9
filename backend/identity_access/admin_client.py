"""
Keycloak Admin client for claim synchronization.

Design:
- Framework-agnostic; used by the claims-sync router through the
  `ClaimsWriterProtocol` port.
- Claims live in the user's `attributes` under `claims_role`, `claims_email`
  and `claims_name`. They are replaced as one set in a single PUT, never merged field by field.
- HTTP failures are classified: timeouts, connection errors, 429 and 5xx are
  transient; 404 and other 4xx responses are permanent.

Security:
- Do not log credentials, tokens or claim values.
- Expect credentials (client-secret or admin user) from environment in prod.
"""

from __future__ import annotations

from typing import Dict, Optional
import logging
import os
import requests

from backend.claims_sync.ports import ClaimsSet, ClaimsWritePermanentError, ClaimsWriteTransientError
from .domain import CLAIM_ATTRIBUTES

LOG = logging.getLogger(__name__)


class AdminClient:
    """Obtain admin tokens and read/replace user representations."""

    def __init__(
        self,
        *,
        base_url: str | None = None,
        realm: str | None = None,
        timeout_seconds: float = 10,
    ) -> None:
        self.base_url = (base_url or os.getenv("KC_BASE_URL", "http://localhost:8080")).rstrip("/")
        self.realm = realm or os.getenv("KC_REALM", "gustav")
        self.timeout = timeout_seconds
        # Token realm for admin client, typically 'master'
        self._admin_realm = os.getenv("KC_ADMIN_REALM", "master")
        self._admin_client_id = os.getenv("KC_ADMIN_CLIENT_ID", "gustav-admin-cli")
        self._admin_client_secret = os.getenv("KC_ADMIN_CLIENT_SECRET")
        # Legacy fallback (password grant), dev only
        self._admin_username = os.getenv("KC_ADMIN_USERNAME")
        self._admin_password = os.getenv("KC_ADMIN_PASSWORD")
        ca = os.getenv("KEYCLOAK_CA_BUNDLE")
        self._verify = ca if ca else True

    def token(self) -> str:
        """Obtain an admin bearer token.

        Prefers OAuth2 client_credentials using a confidential client. Falls
        back to the password grant only outside production-like environments.
        """
        url = f"{self.base_url}/realms/{self._admin_realm}/protocol/openid-connect/token"
        if self._admin_client_secret:
            data = {
                "grant_type": "client_credentials",
                "client_id": self._admin_client_id,
                "client_secret": self._admin_client_secret,
            }
        else:
            env = (os.getenv("GUSTAV_ENV", "dev") or "").lower()
            if env in {"prod", "production", "stage", "staging"}:
                raise ClaimsWritePermanentError("password_grant_disabled_in_prod")
            if not self._admin_username or not self._admin_password:
                raise ClaimsWritePermanentError("admin_credentials_missing")
            data = {
                "grant_type": "password",
                "client_id": self._admin_client_id,
                "username": self._admin_username,
                "password": self._admin_password,
            }
        # A 404 here means a wrong realm or base URL, not a missing user.
        r = self._send("post", url, data=data, not_found="admin_token_endpoint_not_found")
        tok = (r.json() or {}).get("access_token")
        if not tok:
            raise ClaimsWriteTransientError("admin_token_missing")
        return str(tok)

    def _admin(self, token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}

    def _user_url(self, user_id: str) -> str:
        return f"{self.base_url}/admin/realms/{self.realm}/users/{user_id}"

    def _send(self, method: str, url: str, *, not_found: str = "principal_not_found", **kwargs) -> requests.Response:
        try:
            r = getattr(requests, method)(url, timeout=self.timeout, verify=self._verify, **kwargs)
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise ClaimsWriteTransientError(f"keycloak_unreachable:{type(exc).__name__}") from exc
        if r.status_code == 429 or r.status_code >= 500:
            raise ClaimsWriteTransientError(f"keycloak_status_{r.status_code}")
        if r.status_code == 404:
            raise ClaimsWritePermanentError(not_found)
        if r.status_code >= 400:
            raise ClaimsWritePermanentError(f"keycloak_status_{r.status_code}")
        return r

    def get_user(self, user_id: str, *, token: Optional[str] = None) -> dict:
        tok = token or self.token()
        r = self._send("get", self._user_url(user_id), headers=self._admin(tok))
        return r.json() or {}

    def replace_user(self, user_id: str, representation: dict, *, token: Optional[str] = None) -> None:
        tok = token or self.token()
        self._send("put", self._user_url(user_id), headers=self._admin(tok), json=representation)


def claims_attributes(current: Optional[dict], claims: ClaimsSet) -> dict:
    """Return a full `attributes` map with the claim keys replaced as a set.

    Unrelated attributes are carried over untouched; every claim key is
    overwritten, including with an empty value, so a cleared field never
    survives from an older snapshot.
    """
    managed = set(CLAIM_ATTRIBUTES.values())
    attrs = {k: v for k, v in (current or {}).items() if k not in managed}
    for key, value in claims.as_dict().items():
        attrs[CLAIM_ATTRIBUTES[key]] = [value]
    return attrs


def claims_from_attributes(attributes: Optional[dict]) -> Optional[ClaimsSet]:
    """Read the synchronized claims back from a user's `attributes` map."""
    attrs = attributes or {}
    if not any(name in attrs for name in CLAIM_ATTRIBUTES.values()):
        return None

    def _first(name: str) -> str:
        vals = attrs.get(name)
        if isinstance(vals, list) and vals:
            return str(vals[0] or "")
        return ""

    return ClaimsSet(**{key: _first(name) for key, name in CLAIM_ATTRIBUTES.items()})


class KeycloakClaimsWriter:
    """IdentityClaimsWriter backed by the Keycloak Admin REST API."""

    def __init__(self, client: AdminClient) -> None:
        self.client = client

    def apply(self, principal_id: str, claims: ClaimsSet) -> None:
        token = self.client.token()
        user = self.client.get_user(principal_id, token=token)
        # Only `attributes` is sent so unrelated profile fields are not rewritten.
        payload = {"attributes": claims_attributes(user.get("attributes"), claims)}
        self.client.replace_user(principal_id, payload, token=token)
        LOG.debug("claims_sync.claims_written principal=%s role=%s", principal_id, claims.role)


class InMemoryClaimsWriter:
    """Identity store stand-in for development and tests.

    `claims` holds the materialized set per principal; `writes` counts calls.
    """

    def __init__(self) -> None:
        self.claims: Dict[str, ClaimsSet] = {}
        self.writes = 0

    def apply(self, principal_id: str, claims: ClaimsSet) -> None:
        self.writes += 1
        self.claims[principal_id] = claims


__all__ = [
    "AdminClient",
    "KeycloakClaimsWriter",
    "InMemoryClaimsWriter",
    "claims_attributes",
    "claims_from_attributes",
]
