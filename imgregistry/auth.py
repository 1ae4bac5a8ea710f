"""OAuth2 refresh-token exchange for Docker identity tokens, as an oras auth backend."""

from __future__ import annotations

import logging
from typing import Any

import oras.auth
import oras.auth.utils as auth_utils

from .security import redact_token

logger = logging.getLogger(__name__)

CLIENT_ID = "imgregistry"


class IdentityTokenAuth(oras.auth.TokenAuth):
    """Token auth that trades an identity (refresh) token for an access token.

    The refresh token goes to the realm named in the registry's
    ``WWW-Authenticate`` challenge with ``grant_type=refresh_token``; only the
    returned access token is sent to the registry.
    """

    def __init__(self, identity_token: str) -> None:
        super().__init__()
        self.identity_token = identity_token
        # oras falls back to an anonymous token when no basic auth is set.
        self._basic_auth = None

    @classmethod
    def for_client(cls, client: Any, identity_token: str) -> "IdentityTokenAuth":
        auth = cls(identity_token)
        auth.session = client.session
        auth.prefix = client.prefix
        auth._tls_verify = getattr(client.auth, "_tls_verify", True)
        return auth

    def request_token(self, h: auth_utils.authHeader) -> str | None:
        if not h.realm:
            logger.debug("identity token exchange skipped: challenge has no realm")
            return None
        realm = h.realm if h.realm.startswith("http") else f"{self.prefix}://{h.realm}"
        form = {
            "grant_type": "refresh_token",
            "refresh_token": self.identity_token,
            "client_id": CLIENT_ID,
        }
        if h.service:
            form["service"] = h.service
        if h.scope:
            form["scope"] = h.scope
        logger.debug(
            "identity token exchange realm=%s service=%s scope=%s token=%s",
            realm,
            h.service,
            h.scope,
            redact_token(self.identity_token),
        )
        response = self.session.post(realm, data=form, verify=self._tls_verify)
        if response.status_code != 200:
            raise oras.auth.AuthenticationException(
                f"identity token exchange at {realm} failed with status {response.status_code}"
            )
        payload = response.json()
        return payload.get("access_token") or payload.get("token")
