"""Typed registry client errors."""

from __future__ import annotations

from typing import Sequence


class RegistryError(RuntimeError):
    """Base registry client error."""


class ConfigurationError(RegistryError):
    """Client configuration could not be applied."""


class CertificateReadError(ConfigurationError):
    """A CA certificate file could not be read."""

    def __init__(self, path: str, cause: BaseException) -> None:
        super().__init__(f"Reading CA certificates from '{path}': {cause}")
        self.path = path


class CertificateParseError(ConfigurationError):
    """A CA certificate file holds no usable certificates."""

    def __init__(self, path: str, detail: str = "failed") -> None:
        super().__init__(f"Adding CA certificates from '{path}': {detail}")
        self.path = path


class InvalidReferenceError(RegistryError):
    """Malformed or policy-disallowed image reference."""

    def __init__(self, reference: str, detail: str) -> None:
        super().__init__(f"invalid reference '{reference}': {detail}")
        self.reference = reference


class CredentialError(RegistryError):
    """A credential source failed while resolving a registry host."""

    def __init__(self, host: str, detail: str) -> None:
        super().__init__(f"resolving credentials for '{host}': {detail}")
        self.host = host


class TransportError(RegistryError):
    """Network or TLS failure talking to a registry."""

    def __init__(self, host: str, detail: str) -> None:
        super().__init__(f"request to registry '{host}' failed: {detail}")
        self.host = host


class RegistryProtocolError(RegistryError):
    """Registry answered with a non-2xx or malformed response."""

    def __init__(self, status_code: int, url: str, detail: str = "") -> None:
        message = f"registry returned status {status_code} for {url}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.status_code = status_code
        self.url = url


class RetryExhaustedError(RegistryError):
    """Every retry attempt failed; chained to the last failure."""

    def __init__(self, attempts: int, errors: Sequence[BaseException]) -> None:
        last = errors[-1] if errors else None
        super().__init__(f"retried {attempts} times: {last}")
        self.attempts = attempts
        self.errors = tuple(errors)
        self.last_error = last


class RetryCancelledError(RegistryError):
    """Retry loop was cancelled before an attempt succeeded."""

    def __init__(self, attempts: int, last_error: BaseException | None = None) -> None:
        message = f"cancelled after {attempts} attempts"
        if last_error is not None:
            message = f"{message}: {last_error}"
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


class RegistryWriteError(RegistryError):
    """A write or tag operation failed; the message carries the operation label."""

    def __init__(self, operation: str, cause: BaseException) -> None:
        super().__init__(f"{operation}: {cause}")
        self.operation = operation
