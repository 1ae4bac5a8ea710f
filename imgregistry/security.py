"""Redaction helpers so credentials never reach log output."""

from __future__ import annotations

from urllib.parse import urlsplit, urlunsplit

from .types import Credential


def redact_token(value: str | None) -> str:
    if not value:
        return ""
    if len(value) <= 6:
        return "***"
    return f"{value[:3]}***{value[-2:]}"


def redact_url(url: str) -> str:
    parsed = urlsplit(url)
    if not parsed.password and not parsed.username:
        return url
    host = parsed.hostname or ""
    if parsed.port:
        host = f"{host}:{parsed.port}"
    return urlunsplit((parsed.scheme, f"***@{host}", parsed.path, parsed.query, parsed.fragment))


def describe_credential(credential: Credential | None) -> str:
    if credential is None or credential.is_anonymous:
        return "anonymous"
    if credential.token:
        return f"token({redact_token(credential.token)})"
    if credential.identity_token:
        return f"identity_token({redact_token(credential.identity_token)})"
    return f"basic(username={credential.username})"
