"""Image reference parsing: registries, repositories, tags and digests."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Union

from .errors import InvalidReferenceError

DEFAULT_REGISTRY = "index.docker.io"
DEFAULT_TAG = "latest"
_DOCKER_HUB_ALIASES = {"docker.io", "registry-1.docker.io", DEFAULT_REGISTRY}

_REGISTRY_RE = re.compile(
    r"^(?:\[[0-9a-fA-F:]+\]|[a-zA-Z0-9](?:[a-zA-Z0-9.-]*[a-zA-Z0-9])?)(?::[0-9]+)?$"
)
_PATH_COMPONENT_RE = re.compile(r"^[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*$")
_TAG_RE = re.compile(r"^[\w][\w.-]{0,127}$")
_DIGEST_RE = re.compile(r"^(?:sha256:[a-f0-9]{64}|sha512:[a-f0-9]{128})$")


@dataclass(frozen=True)
class NameOptions:
    """Reference-parsing policy.

    ``insecure`` permits plain HTTP: explicit ``http://`` references, and a
    fallback to HTTP when a registry cannot be reached over HTTPS.
    """

    insecure: bool = False
    default_registry: str = DEFAULT_REGISTRY


@dataclass(frozen=True)
class Registry:
    """A registry host; HTTPS unless the reference named ``http://``.

    ``insecure`` allows falling back to HTTP; ``plain_http`` skips HTTPS.
    """

    host: str
    insecure: bool = False
    plain_http: bool = False

    @property
    def scheme(self) -> str:
        return "http" if self.plain_http else "https"

    @property
    def schemes(self) -> tuple[str, ...]:
        """Schemes to try, in order."""

        if self.plain_http:
            return ("http",)
        if self.insecure:
            return ("https", "http")
        return ("https",)

    def __str__(self) -> str:
        return self.host


@dataclass(frozen=True)
class Repository:
    registry: Registry
    path: str

    @property
    def name(self) -> str:
        return f"{self.registry.host}/{self.path}"

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class Tag:
    repository: Repository
    tag: str

    @property
    def registry(self) -> Registry:
        return self.repository.registry

    @property
    def identifier(self) -> str:
        return self.tag

    def __str__(self) -> str:
        return f"{self.repository.name}:{self.tag}"


@dataclass(frozen=True)
class Digest:
    repository: Repository
    digest: str

    @property
    def registry(self) -> Registry:
        return self.repository.registry

    @property
    def identifier(self) -> str:
        return self.digest

    def __str__(self) -> str:
        return f"{self.repository.name}@{self.digest}"


Reference = Union[Tag, Digest]


def _strip_scheme(value: str, options: NameOptions) -> tuple[str, bool]:
    """Return the value without its scheme and whether it named plain HTTP."""

    lowered = value.lower()
    if lowered.startswith("http://"):
        if not options.insecure:
            raise InvalidReferenceError(value, "plain HTTP registries require the insecure option")
        return value[len("http://") :], True
    if lowered.startswith("https://"):
        return value[len("https://") :], False
    if "://" in value:
        raise InvalidReferenceError(value, "unsupported scheme")
    return value, False


def new_registry(host: str, options: NameOptions | None = None) -> Registry:
    options = options or NameOptions()
    value, plain_http = _strip_scheme(str(host).strip(), options)
    value = value or options.default_registry
    if "/" in value:
        raise InvalidReferenceError(host, "registry must not contain '/'")
    if not _REGISTRY_RE.match(value):
        raise InvalidReferenceError(host, "registry must be a valid host[:port]")
    if value.lower() in _DOCKER_HUB_ALIASES:
        value = DEFAULT_REGISTRY
    return Registry(host=value, insecure=options.insecure, plain_http=plain_http)


def _looks_like_registry(component: str) -> bool:
    return "." in component or ":" in component or component == "localhost"


def new_repository(name: str, options: NameOptions | None = None) -> Repository:
    options = options or NameOptions()
    raw = str(name).strip()
    if not raw:
        raise InvalidReferenceError(raw, "empty repository")
    value, plain_http = _strip_scheme(raw, options)
    host, sep, path = value.partition("/")
    if not sep or not _looks_like_registry(host):
        host, path = options.default_registry, value
    elif plain_http:
        host = f"http://{host}"
    registry = new_registry(host, options)
    if not path:
        raise InvalidReferenceError(raw, "empty repository path")
    for component in path.split("/"):
        if not _PATH_COMPONENT_RE.match(component):
            raise InvalidReferenceError(
                raw, f"repository component '{component}' must be lowercase alphanumerics separated by . _ -"
            )
    if registry.host == DEFAULT_REGISTRY and "/" not in path:
        path = f"library/{path}"
    return Repository(registry=registry, path=path)


def _split_tag(value: str) -> tuple[str, str | None]:
    slash = value.rfind("/")
    colon = value.rfind(":")
    if colon > slash:
        return value[:colon], value[colon + 1 :]
    return value, None


def new_tag(name: str, options: NameOptions | None = None) -> Tag:
    raw = str(name).strip()
    if "@" in raw:
        raise InvalidReferenceError(raw, "a tag reference must not carry a digest")
    base, tag = _split_tag(raw)
    if tag is None:
        tag = DEFAULT_TAG
    if not _TAG_RE.match(tag):
        raise InvalidReferenceError(raw, f"invalid tag '{tag}'")
    return Tag(repository=new_repository(base, options), tag=tag)


def new_digest(name: str, options: NameOptions | None = None) -> Digest:
    raw = str(name).strip()
    base, sep, digest = raw.partition("@")
    if not sep:
        raise InvalidReferenceError(raw, "a digest reference must contain '@'")
    if not _DIGEST_RE.match(digest):
        raise InvalidReferenceError(raw, f"invalid digest '{digest}'")
    # repo:tag@digest pins the digest; the tag is informational only.
    base, _ = _split_tag(base)
    return Digest(repository=new_repository(base, options), digest=digest)


def parse_reference(name: str, options: NameOptions | None = None) -> Reference:
    raw = str(name)
    if "@" in raw:
        return new_digest(raw, options)
    return new_tag(raw, options)


def qualified(value: Registry | Repository | Tag | Digest) -> str:
    """Render ``value`` so that parsing it again keeps an explicit ``http://``."""

    registry = value if isinstance(value, Registry) else value.registry
    text = str(value)
    return f"http://{text}" if registry.plain_http else text
