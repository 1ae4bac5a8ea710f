"""Registry client datatypes and configuration."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Sequence, Union

OCI_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
OCI_INDEX = "application/vnd.oci.image.index.v1+json"
OCI_CONFIG = "application/vnd.oci.image.config.v1+json"
OCI_LAYER = "application/vnd.oci.image.layer.v1.tar+gzip"
DOCKER_MANIFEST = "application/vnd.docker.distribution.manifest.v2+json"
DOCKER_MANIFEST_LIST = "application/vnd.docker.distribution.manifest.list.v2+json"

INDEX_MEDIA_TYPES = frozenset({OCI_INDEX, DOCKER_MANIFEST_LIST})
IMAGE_MEDIA_TYPES = frozenset({OCI_MANIFEST, DOCKER_MANIFEST})


def sha256_digest(data: bytes) -> str:
    return "sha256:" + hashlib.sha256(data).hexdigest()


@dataclass(frozen=True)
class ClientConfig:
    """Settings a RegistryClient is built from.

    ``verify_certs`` defaults to True. Setting it to False disables server
    certificate verification for every registry the client talks to; it
    exists for self-signed and test registries only.
    """

    ca_cert_paths: tuple[str, ...] = ()
    verify_certs: bool = True
    insecure: bool = False
    env_auth_prefix: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "ca_cert_paths", tuple(str(path) for path in self.ca_cert_paths))
        object.__setattr__(self, "env_auth_prefix", str(self.env_auth_prefix or "").strip())


@dataclass(frozen=True)
class Credential:
    """Basic auth, a registry bearer ``token``, or an OAuth2 ``identity_token``.

    An identity token is a refresh token; it is exchanged at the registry's
    token realm and never sent to the registry itself.
    """

    username: str | None = None
    password: str | None = field(default=None, repr=False)
    token: str | None = field(default=None, repr=False)
    identity_token: str | None = field(default=None, repr=False)

    @property
    def is_anonymous(self) -> bool:
        return not (self.username or self.password or self.token or self.identity_token)


ANONYMOUS = Credential()


@dataclass(frozen=True)
class Descriptor:
    media_type: str
    size: int
    digest: str
    annotations: Mapping[str, str] | None = None
    platform: Mapping[str, Any] | None = None

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Descriptor":
        try:
            return cls(
                media_type=str(payload["mediaType"]),
                size=int(payload["size"]),
                digest=str(payload["digest"]),
                annotations=payload.get("annotations"),
                platform=payload.get("platform"),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"invalid descriptor {dict(payload)!r}: {exc}") from exc

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "mediaType": self.media_type,
            "size": self.size,
            "digest": self.digest,
        }
        if self.annotations:
            payload["annotations"] = dict(self.annotations)
        if self.platform:
            payload["platform"] = dict(self.platform)
        return payload


def _manifest_json(manifest: bytes) -> dict[str, Any]:
    payload = json.loads(manifest.decode("utf-8"))
    if not isinstance(payload, dict):
        raise ValueError("manifest must be a JSON object")
    return payload


@dataclass(frozen=True)
class Image:
    """A single image manifest and a way to reach the blobs it references.

    Images read from a registry carry ``fetch_blob`` and pull blobs on demand;
    images built locally carry their blobs in ``blobs``.
    """

    manifest: bytes
    media_type: str = OCI_MANIFEST
    blobs: Mapping[str, bytes] = field(default_factory=dict, repr=False)
    fetch_blob: Callable[[str], bytes] | None = field(default=None, repr=False, compare=False)

    @property
    def digest(self) -> str:
        return sha256_digest(self.manifest)

    def descriptor(self) -> Descriptor:
        return Descriptor(media_type=self.media_type, size=len(self.manifest), digest=self.digest)

    def config(self) -> Descriptor | None:
        payload = _manifest_json(self.manifest).get("config")
        if not isinstance(payload, Mapping):
            return None
        return Descriptor.from_dict(payload)

    def layers(self) -> list[Descriptor]:
        payload = _manifest_json(self.manifest).get("layers") or []
        return [Descriptor.from_dict(item) for item in payload]

    def referenced_blobs(self) -> list[Descriptor]:
        config = self.config()
        return ([config] if config is not None else []) + self.layers()

    def blob(self, digest: str) -> bytes:
        if digest in self.blobs:
            return self.blobs[digest]
        if self.fetch_blob is not None:
            return self.fetch_blob(digest)
        raise KeyError(f"blob {digest} is not available for image {self.digest}")

    @classmethod
    def from_blobs(
        cls,
        config: bytes,
        layers: Sequence[bytes] = (),
        *,
        config_media_type: str = OCI_CONFIG,
        layer_media_type: str = OCI_LAYER,
        annotations: Mapping[str, str] | None = None,
    ) -> "Image":
        config_desc = Descriptor(config_media_type, len(config), sha256_digest(config))
        layer_descs = [Descriptor(layer_media_type, len(data), sha256_digest(data)) for data in layers]
        payload: dict[str, Any] = {
            "schemaVersion": 2,
            "mediaType": OCI_MANIFEST,
            "config": config_desc.to_dict(),
            "layers": [desc.to_dict() for desc in layer_descs],
        }
        if annotations:
            payload["annotations"] = dict(annotations)
        blobs = {config_desc.digest: config}
        blobs.update({desc.digest: data for desc, data in zip(layer_descs, layers)})
        manifest = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
        return cls(manifest=manifest, media_type=OCI_MANIFEST, blobs=blobs)


Artifact = Union[Image, "ImageIndex"]


@dataclass(frozen=True)
class ImageIndex:
    """A multi-platform index and a way to reach the manifests it lists."""

    manifest: bytes
    media_type: str = OCI_INDEX
    children: Mapping[str, Artifact] = field(default_factory=dict, repr=False)
    fetch_child: Callable[[Descriptor], Artifact] | None = field(default=None, repr=False, compare=False)

    @property
    def digest(self) -> str:
        return sha256_digest(self.manifest)

    def descriptor(self) -> Descriptor:
        return Descriptor(media_type=self.media_type, size=len(self.manifest), digest=self.digest)

    def manifests(self) -> list[Descriptor]:
        payload = _manifest_json(self.manifest).get("manifests") or []
        return [Descriptor.from_dict(item) for item in payload]

    def child(self, descriptor: Descriptor) -> Artifact:
        if descriptor.digest in self.children:
            return self.children[descriptor.digest]
        if self.fetch_child is not None:
            return self.fetch_child(descriptor)
        raise KeyError(f"manifest {descriptor.digest} is not available for index {self.digest}")

    @classmethod
    def from_children(
        cls,
        children: Sequence[Artifact],
        *,
        platforms: Sequence[Mapping[str, Any] | None] | None = None,
    ) -> "ImageIndex":
        platforms = list(platforms or [None] * len(children))
        if len(platforms) != len(children):
            raise ValueError("platforms must match children one to one")
        entries = []
        for child, platform in zip(children, platforms):
            desc = child.descriptor()
            entries.append(Descriptor(desc.media_type, desc.size, desc.digest, platform=platform).to_dict())
        payload = {"schemaVersion": 2, "mediaType": OCI_INDEX, "manifests": entries}
        manifest = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
        return cls(
            manifest=manifest,
            media_type=OCI_INDEX,
            children={child.digest: child for child in children},
        )


@dataclass(frozen=True)
class RemoteDescriptor:
    """Descriptor of a manifest fetched from a registry, with its raw bytes."""

    ref: str
    descriptor: Descriptor
    manifest: bytes = field(repr=False)

    @property
    def is_index(self) -> bool:
        return self.descriptor.media_type in INDEX_MEDIA_TYPES
