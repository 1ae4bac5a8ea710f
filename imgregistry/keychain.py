"""Registry credential resolution: environment variables, then the Docker login store."""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol

import docker.auth
import docker.errors

from .errors import CredentialError
from .security import describe_credential
from .types import ANONYMOUS, ClientConfig, Credential

logger = logging.getLogger(__name__)

_NON_ALNUM_RE = re.compile(r"[^A-Za-z0-9]")


class Keychain(Protocol):
    def resolve(self, host: str) -> Credential | None:
        """Return a credential for ``host``, or None when this source has none."""


def normalize_host(host: str) -> str:
    """``my.registry.com:5000`` -> ``MY_REGISTRY_COM_5000``."""

    return _NON_ALNUM_RE.sub("_", host.strip()).upper()


@dataclass(frozen=True)
class EnvKeychain:
    """Credentials from ``<PREFIX>_REGISTRY_<HOST>_{USERNAME,PASSWORD,TOKEN}``.

    The environment is read on every call, not snapshotted.
    """

    prefix: str = ""
    environ: Mapping[str, str] | None = field(default=None, repr=False, compare=False)

    def variable_base(self, host: str) -> str:
        base = f"REGISTRY_{normalize_host(host)}"
        prefix = self.prefix.strip().rstrip("_")
        return f"{prefix}_{base}" if prefix else base

    def resolve(self, host: str) -> Credential | None:
        env = os.environ if self.environ is None else self.environ
        base = self.variable_base(host)
        username = env.get(f"{base}_USERNAME") or None
        password = env.get(f"{base}_PASSWORD") or None
        token = env.get(f"{base}_TOKEN") or None
        if username or password:
            if not (username and password):
                raise CredentialError(host, f"both {base}_USERNAME and {base}_PASSWORD must be set")
            return Credential(username=username, password=password)
        if token:
            return Credential(token=token)
        return None


def _credential_from_entry(entry: Mapping[str, Any]) -> Credential | None:
    # docker.auth mixes lower-case keys (config file) and Go-style keys (helpers).
    fields = {str(key).lower(): value for key, value in entry.items()}
    identity_token = fields.get("identitytoken")
    if identity_token:
        return Credential(identity_token=str(identity_token))
    registry_token = fields.get("registrytoken")
    if registry_token:
        return Credential(token=str(registry_token))
    username = fields.get("username")
    password = fields.get("password")
    if username and password:
        return Credential(username=str(username), password=str(password))
    return None


@dataclass(frozen=True)
class DockerConfigKeychain:
    """Credentials stored by ``docker login``: config.json auths, credsStore and credHelpers."""

    config_path: str | None = None

    def resolve(self, host: str) -> Credential | None:
        try:
            auth_config = docker.auth.load_config(config_path=self.config_path)
            entry = docker.auth.resolve_authconfig(auth_config, host)
        except docker.errors.DockerException as exc:
            raise CredentialError(host, str(exc)) from exc
        if not entry:
            return None
        return _credential_from_entry(entry)


class MultiKeychain:
    """Tries each keychain in order; the first definite credential wins."""

    def __init__(self, *keychains: Keychain) -> None:
        self._keychains = tuple(keychains)

    @property
    def keychains(self) -> tuple[Keychain, ...]:
        return self._keychains

    def resolve(self, host: str) -> Credential:
        for keychain in self._keychains:
            credential = keychain.resolve(host)
            if credential is not None and not credential.is_anonymous:
                logger.debug(
                    "registry credentials resolved host=%s source=%s auth=%s",
                    host,
                    type(keychain).__name__,
                    describe_credential(credential),
                )
                return credential
        logger.debug("registry credentials resolved host=%s auth=anonymous", host)
        return ANONYMOUS


DEFAULT_KEYCHAIN: Keychain = DockerConfigKeychain()


def new_keychain(config: ClientConfig, default: Keychain = DEFAULT_KEYCHAIN) -> MultiKeychain:
    return MultiKeychain(EnvKeychain(config.env_auth_prefix), default)
