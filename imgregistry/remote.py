"""Registry backend: the distribution endpoints, spoken through oras-py."""

from __future__ import annotations

import functools
import json
import logging
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Mapping, Protocol, TypeVar

import oras.auth
import oras.container
import requests
from oras.provider import Registry as OrasRegistry

from .auth import IdentityTokenAuth
from .errors import RegistryProtocolError, TransportError
from .keychain import Keychain
from .name import Digest, Reference, Registry, Repository, Tag
from .security import describe_credential
from .transport import HTTPTransport
from .types import (
    DOCKER_MANIFEST,
    DOCKER_MANIFEST_LIST,
    IMAGE_MEDIA_TYPES,
    INDEX_MEDIA_TYPES,
    OCI_INDEX,
    OCI_MANIFEST,
    Credential,
    Descriptor,
    Image,
    ImageIndex,
    RemoteDescriptor,
    sha256_digest,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

MANIFEST_ACCEPT = ", ".join((OCI_MANIFEST, OCI_INDEX, DOCKER_MANIFEST, DOCKER_MANIFEST_LIST))
DEFAULT_PLATFORM: Mapping[str, str] = {"os": "linux", "architecture": "amd64"}
ACCEPTED = (200, 201, 202)


@dataclass(frozen=True)
class RemoteOptions:
    """Transport and credentials every backend call runs with."""

    transport: HTTPTransport
    keychain: Keychain


class RegistryBackend(Protocol):
    def get(self, ref: Reference, options: RemoteOptions) -> RemoteDescriptor: ...

    def image(self, ref: Reference, options: RemoteOptions) -> Image: ...

    def write_image(self, ref: Reference, image: Image, options: RemoteOptions) -> None: ...

    def index(self, ref: Reference, options: RemoteOptions) -> ImageIndex: ...

    def write_index(self, ref: Reference, index: ImageIndex, options: RemoteOptions) -> None: ...

    def tag(self, tag: Tag, remote: RemoteDescriptor, options: RemoteOptions) -> None: ...

    def list_tags(self, repo: Repository, options: RemoteOptions) -> list[str]: ...


def _error_body_snippet(response: requests.Response, max_chars: int = 200) -> str:
    body = response.text or ""
    compact = " ".join(body.split())
    return compact[:max_chars]


def _container(repo: Repository) -> oras.container.Container:
    container = oras.container.Container(repo.path, registry=repo.registry.host)
    # oras reads a dotted first path component as a registry host.
    namespace, _, name = repo.path.rpartition("/")
    container.registry = repo.registry.host
    container.namespace = namespace or None
    container.repository = name
    return container


def _pick_scheme(registry: Registry, transport: HTTPTransport) -> str:
    """First scheme in ``registry.schemes`` whose ``/v2/`` endpoint answers at all."""

    schemes = registry.schemes
    if len(schemes) == 1:
        return schemes[0]
    last: requests.RequestException | None = None
    # Not closed: closing a session closes the shared adapter's pools.
    session = transport.new_session()
    for scheme in schemes:
        url = f"{scheme}://{registry.host}/v2/"
        try:
            session.get(url)
        except requests.ConnectionError as exc:
            logger.debug("registry ping failed url=%s error=%s", url, exc)
            last = exc
            continue
        except requests.RequestException as exc:
            raise TransportError(registry.host, f"GET {url}: {exc}") from exc
        logger.debug("registry scheme selected host=%s scheme=%s", registry.host, scheme)
        return scheme
    raise TransportError(registry.host, f"no usable scheme among {', '.join(schemes)}: {last}")


class _HostSession:
    """One registry host for the span of one operation; credentials resolved once."""

    def __init__(self, registry: Registry, options: RemoteOptions, factory: Callable[..., Any]) -> None:
        self.registry = registry
        self.credential: Credential = options.keychain.resolve(registry.host)
        self.scheme = _pick_scheme(registry, options.transport)
        self._last_response: requests.Response | None = None
        self.client = factory(
            hostname=registry.host,
            insecure=self.scheme == "http",
            tls_verify=options.transport.verify_certs,
        )
        options.transport.configure(self.client.session)
        self.client.session.hooks["response"].append(self._remember)
        # oras wraps do_request in its own retry loop; retries belong to Retrier.
        raw = getattr(type(self.client).do_request, "__wrapped__", None)
        if raw is not None:
            self.client.do_request = functools.partial(raw, self.client)
        self._authorize()
        logger.debug(
            "registry session host=%s scheme=%s auth=%s",
            registry.host,
            self.scheme,
            describe_credential(self.credential),
        )

    def _authorize(self) -> None:
        credential = self.credential
        if credential.identity_token:
            self.client.auth = IdentityTokenAuth.for_client(self.client, credential.identity_token)
        elif credential.token:
            self.client.auth.set_token_auth(credential.token)
        elif credential.username and credential.password:
            self.client.auth.set_basic_auth(credential.username, credential.password)

    def _remember(self, response: requests.Response, *args: Any, **kwargs: Any) -> requests.Response:
        self._last_response = response
        return response

    def manifest_url(self, repo: Repository, identifier: str) -> str:
        return f"{self.scheme}://{_container(repo).manifest_url(identifier)}"

    def blob_url(self, repo: Repository, digest: str) -> str:
        return f"{self.scheme}://{_container(repo).get_blob_url(digest)}"

    def call(self, url: str, action: Callable[[], T]) -> T:
        """Run an oras call, mapping its failures onto the registry error types."""

        self._last_response = None
        try:
            return action()
        except requests.JSONDecodeError as exc:
            raise self._rejected(url, f"response is not JSON: {exc}") from exc
        except requests.RequestException as exc:
            raise TransportError(self.registry.host, f"{url}: {exc}") from exc
        except (ValueError, oras.auth.AuthenticationException) as exc:
            # oras signals unanswerable auth challenges and non-2xx pages this way.
            raise self._rejected(url, str(exc)) from exc

    def _rejected(self, url: str, detail: str) -> RegistryProtocolError:
        response = self._last_response
        if response is None:
            return RegistryProtocolError(401, url, detail)
        snippet = _error_body_snippet(response)
        return RegistryProtocolError(response.status_code, response.url or url, f"{detail} {snippet}".strip())

    def request(
        self,
        method: str,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
        data: bytes | None = None,
        ok: tuple[int, ...] = (200,),
    ) -> requests.Response:
        logger.debug("registry request method=%s url=%s", method, url)
        response = self.call(url, lambda: self.client.do_request(url, method, data=data, headers=dict(headers or {})))
        _check(response, url, ok)
        return response


def _check(response: requests.Response, url: str, ok: tuple[int, ...] = ACCEPTED) -> None:
    if response.status_code not in ok:
        raise RegistryProtocolError(response.status_code, url, _error_body_snippet(response))


def _sniff_media_type(response: requests.Response, manifest: bytes) -> str:
    header = (response.headers.get("Content-Type") or "").split(";", 1)[0].strip()
    if header in IMAGE_MEDIA_TYPES or header in INDEX_MEDIA_TYPES:
        return header
    try:
        declared = json.loads(manifest.decode("utf-8")).get("mediaType")
    except (ValueError, AttributeError):
        declared = None
    if declared:
        return str(declared)
    return header or OCI_MANIFEST


class OrasRemote:
    """RegistryBackend over oras-py's Registry.

    Tags, blob existence, blob upload and blob download go through oras'
    helpers. Manifests are read and written as raw bytes: oras re-serializes
    manifests, validates them as OCI image manifests and always sends the OCI
    manifest content type, which would change digests and reject indexes and
    Docker media types.
    """

    def __init__(self, registry_factory: Callable[..., Any] = OrasRegistry) -> None:
        self._registry_factory = registry_factory

    def _session(self, registry: Registry, options: RemoteOptions) -> _HostSession:
        return _HostSession(registry, options, self._registry_factory)

    # reads

    def get(self, ref: Reference, options: RemoteOptions) -> RemoteDescriptor:
        return self._get(self._session(ref.registry, options), ref)

    def _get(self, session: _HostSession, ref: Reference) -> RemoteDescriptor:
        url = session.manifest_url(ref.repository, ref.identifier)
        response = session.request("GET", url, headers={"Accept": MANIFEST_ACCEPT})
        manifest = response.content
        computed = sha256_digest(manifest)
        if isinstance(ref, Digest) and ref.digest.startswith("sha256:") and computed != ref.digest:
            raise RegistryProtocolError(response.status_code, url, f"manifest digest mismatch: got {computed}")
        digest = response.headers.get("Docker-Content-Digest") or computed
        descriptor = Descriptor(
            media_type=_sniff_media_type(response, manifest),
            size=len(manifest),
            digest=digest,
        )
        return RemoteDescriptor(ref=str(ref), descriptor=descriptor, manifest=manifest)

    def image(self, ref: Reference, options: RemoteOptions) -> Image:
        session = self._session(ref.registry, options)
        remote = self._get(session, ref)
        if remote.is_index:
            child = _platform_child(ImageIndex(manifest=remote.manifest, media_type=remote.descriptor.media_type))
            if child is None:
                raise RegistryProtocolError(200, remote.ref, f"no manifest for platform {dict(DEFAULT_PLATFORM)}")
            remote = self._get(session, Digest(ref.repository, child.digest))
        if remote.descriptor.media_type not in IMAGE_MEDIA_TYPES:
            raise RegistryProtocolError(200, remote.ref, f"unexpected media type {remote.descriptor.media_type}")
        return self._image_handle(ref.repository, remote, options)

    def index(self, ref: Reference, options: RemoteOptions) -> ImageIndex:
        remote = self.get(ref, options)
        if not remote.is_index:
            raise RegistryProtocolError(200, remote.ref, f"unexpected media type {remote.descriptor.media_type}")
        return self._index_handle(ref.repository, remote, options)

    def list_tags(self, repo: Repository, options: RemoteOptions) -> list[str]:
        session = self._session(repo.registry, options)
        container = _container(repo)
        url = f"{session.scheme}://{container.tags_url()}"
        tags = session.call(url, lambda: session.client.get_tags(container))
        return [str(tag) for tag in tags]

    def _image_handle(self, repo: Repository, remote: RemoteDescriptor, options: RemoteOptions) -> Image:
        return Image(
            manifest=remote.manifest,
            media_type=remote.descriptor.media_type,
            fetch_blob=functools.partial(self._fetch_blob, repo, options),
        )

    def _index_handle(self, repo: Repository, remote: RemoteDescriptor, options: RemoteOptions) -> ImageIndex:
        return ImageIndex(
            manifest=remote.manifest,
            media_type=remote.descriptor.media_type,
            fetch_child=functools.partial(self._fetch_child, repo, options),
        )

    def _fetch_blob(self, repo: Repository, options: RemoteOptions, digest: str) -> bytes:
        session = self._session(repo.registry, options)
        url = session.blob_url(repo, digest)
        response = session.call(url, lambda: session.client.get_blob(_container(repo), digest))
        _check(response, url, (200,))
        data = response.content
        if digest.startswith("sha256:") and sha256_digest(data) != digest:
            raise RegistryProtocolError(200, url, "blob digest mismatch")
        return data

    def _fetch_child(self, repo: Repository, options: RemoteOptions, descriptor: Descriptor) -> Image | ImageIndex:
        remote = self.get(Digest(repo, descriptor.digest), options)
        if remote.is_index:
            return self._index_handle(repo, remote, options)
        return self._image_handle(repo, remote, options)

    # writes

    def write_image(self, ref: Reference, image: Image, options: RemoteOptions) -> None:
        self._write_image(self._session(ref.registry, options), ref, image)

    def write_index(self, ref: Reference, index: ImageIndex, options: RemoteOptions) -> None:
        self._write_index(self._session(ref.registry, options), ref, index)

    def tag(self, tag: Tag, remote: RemoteDescriptor, options: RemoteOptions) -> None:
        session = self._session(tag.registry, options)
        self._put_manifest(session, tag, remote.manifest, remote.descriptor.media_type)

    def _write_image(self, session: _HostSession, ref: Reference, image: Image) -> None:
        for descriptor in image.referenced_blobs():
            self._ensure_blob(session, ref.repository, descriptor, image)
        self._put_manifest(session, ref, image.manifest, image.media_type)

    def _write_index(self, session: _HostSession, ref: Reference, index: ImageIndex) -> None:
        for descriptor in index.manifests():
            child_ref = Digest(ref.repository, descriptor.digest)
            if self._manifest_exists(session, child_ref):
                continue
            child = index.child(descriptor)
            if isinstance(child, ImageIndex):
                self._write_index(session, child_ref, child)
            else:
                self._write_image(session, child_ref, child)
        self._put_manifest(session, ref, index.manifest, index.media_type)

    def _manifest_exists(self, session: _HostSession, ref: Digest) -> bool:
        url = session.manifest_url(ref.repository, ref.digest)
        response = session.request("HEAD", url, headers={"Accept": MANIFEST_ACCEPT}, ok=(200, 404))
        return response.status_code == 200

    def _ensure_blob(self, session: _HostSession, repo: Repository, descriptor: Descriptor, image: Image) -> None:
        container = _container(repo)
        layer = descriptor.to_dict()
        url = session.blob_url(repo, descriptor.digest)
        if session.call(url, lambda: session.client.blob_exists(layer, container)):
            logger.debug("blob exists digest=%s repo=%s", descriptor.digest, repo)
            return
        data = image.blob(descriptor.digest)
        layer["size"] = len(data)
        with tempfile.TemporaryDirectory(prefix="imgregistry-") as tmpdir:
            path = Path(tmpdir) / "blob"
            path.write_bytes(data)
            response = session.call(url, lambda: session.client.put_upload(str(path), container, layer))
        _check(response, url, (201, 202, 204))
        logger.debug("blob uploaded digest=%s size=%s repo=%s", descriptor.digest, len(data), repo)

    def _put_manifest(self, session: _HostSession, ref: Reference, manifest: bytes, media_type: str) -> None:
        url = session.manifest_url(ref.repository, ref.identifier)
        session.request("PUT", url, headers={"Content-Type": media_type}, data=manifest, ok=ACCEPTED)
        logger.debug("manifest written ref=%s media_type=%s", ref, media_type)


def _platform_child(index: ImageIndex, platform: Mapping[str, str] = DEFAULT_PLATFORM) -> Descriptor | None:
    for descriptor in index.manifests():
        candidate = descriptor.platform or {}
        if all(candidate.get(key) == value for key, value in platform.items()):
            return descriptor
    return None
