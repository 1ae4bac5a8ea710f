"""Registry client facade: reference policy, transport, keychain and write retries."""

from __future__ import annotations

import logging
import ssl
from typing import Callable, Union

from .errors import RegistryWriteError, RetryCancelledError, RetryExhaustedError
from .keychain import DEFAULT_KEYCHAIN, Keychain, new_keychain
from .name import (
    Digest,
    NameOptions,
    Reference,
    Repository,
    Tag,
    new_digest,
    new_repository,
    new_tag,
    parse_reference,
    qualified,
)
from .remote import OrasRemote, RegistryBackend, RemoteOptions
from .retry import NEVER_CANCEL, CancellationToken, Retrier
from .transport import new_http_transport
from .types import ClientConfig, Descriptor, Image, ImageIndex

logger = logging.getLogger(__name__)

RefLike = Union[str, Tag, Digest]
RepoLike = Union[str, Repository, Tag, Digest]

WRITING_IMAGE = "Writing image"
WRITING_INDEX = "Writing image index"
WRITING_TAG = "Writing image tag"


def _text(value: RepoLike) -> str:
    return value if isinstance(value, str) else qualified(value)


class RegistryClient:
    """Typed registry operations sharing one transport, keychain and reference policy.

    Construction fails with a ConfigurationError when a CA file cannot be
    loaded. After that the client holds only immutable state and can be used
    from several threads at once. Reads are not retried; writes and tags go
    through the Retrier and fail with a RegistryWriteError.
    """

    def __init__(
        self,
        config: ClientConfig | None = None,
        *,
        default_keychain: Keychain = DEFAULT_KEYCHAIN,
        backend: RegistryBackend | None = None,
        retrier: Retrier | None = None,
        cert_pool: ssl.SSLContext | None = None,
    ) -> None:
        self.config = config or ClientConfig()
        transport = new_http_transport(self.config, cert_pool)
        self._remote_options = RemoteOptions(
            transport=transport,
            keychain=new_keychain(self.config, default_keychain),
        )
        self._name_options = NameOptions(insecure=self.config.insecure)
        self._backend: RegistryBackend = backend or OrasRemote()
        self._retrier = retrier or Retrier()
        logger.debug(
            "registry client ready ca_files=%s verify_certs=%s insecure=%s env_prefix=%s",
            len(self.config.ca_cert_paths),
            self.config.verify_certs,
            self.config.insecure,
            self.config.env_auth_prefix or "-",
        )

    @property
    def remote_options(self) -> RemoteOptions:
        return self._remote_options

    @property
    def name_options(self) -> NameOptions:
        return self._name_options

    def parse(self, ref: RefLike) -> Reference:
        return parse_reference(_text(ref), self._name_options)

    def generic(self, ref: RefLike) -> Descriptor:
        parsed = self.parse(ref)
        return self._backend.get(parsed, self._remote_options).descriptor

    def image(self, ref: RefLike) -> Image:
        return self._backend.image(self.parse(ref), self._remote_options)

    def write_image(self, ref: RefLike, image: Image, *, cancel: CancellationToken = NEVER_CANCEL) -> None:
        parsed = self.parse(ref)
        self._retry(WRITING_IMAGE, lambda: self._backend.write_image(parsed, image, self._remote_options), cancel)

    def index(self, ref: RefLike) -> ImageIndex:
        return self._backend.index(self.parse(ref), self._remote_options)

    def write_index(self, ref: RefLike, index: ImageIndex, *, cancel: CancellationToken = NEVER_CANCEL) -> None:
        parsed = self.parse(ref)
        self._retry(WRITING_INDEX, lambda: self._backend.write_index(parsed, index, self._remote_options), cancel)

    def write_tag(
        self,
        dst: str | Tag,
        src: str | Digest,
        *,
        cancel: CancellationToken = NEVER_CANCEL,
    ) -> None:
        dst_tag = new_tag(_text(dst), self._name_options)
        src_digest = new_digest(_text(src), self._name_options)

        def _tag_once() -> None:
            remote = self._backend.get(src_digest, self._remote_options)
            self._backend.tag(dst_tag, remote, self._remote_options)

        self._retry(WRITING_TAG, _tag_once, cancel)

    def list_tags(self, repo: RepoLike) -> list[str]:
        if isinstance(repo, (Tag, Digest)):
            repo = repo.repository
        repository = new_repository(_text(repo), self._name_options)
        return self._backend.list_tags(repository, self._remote_options)

    def _retry(self, operation: str, attempt: Callable[[], None], cancel: CancellationToken) -> None:
        try:
            self._retrier.run(attempt, cancel=cancel, label=operation)
        except (RetryExhaustedError, RetryCancelledError) as exc:
            raise RegistryWriteError(operation, exc) from exc
