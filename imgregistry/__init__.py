"""OCI/Docker registry client with hardened transport, layered keychain and write retries."""

from .certs import build_cert_pool
from .client import RegistryClient
from .errors import (
    CertificateParseError,
    CertificateReadError,
    ConfigurationError,
    CredentialError,
    InvalidReferenceError,
    RegistryError,
    RegistryProtocolError,
    RegistryWriteError,
    RetryCancelledError,
    RetryExhaustedError,
    TransportError,
)
from .keychain import (
    DEFAULT_KEYCHAIN,
    DockerConfigKeychain,
    EnvKeychain,
    Keychain,
    MultiKeychain,
    new_keychain,
)
from .name import (
    Digest,
    NameOptions,
    Registry,
    Repository,
    Tag,
    new_digest,
    new_repository,
    new_tag,
    parse_reference,
)
from .remote import OrasRemote, RegistryBackend, RemoteOptions
from .retry import NEVER_CANCEL, CancellationToken, FixedBackoff, Retrier, RetryStrategy
from .transport import HTTPTransport, new_http_transport
from .types import (
    ANONYMOUS,
    ClientConfig,
    Credential,
    Descriptor,
    Image,
    ImageIndex,
    RemoteDescriptor,
)

__all__ = [
    "RegistryClient",
    "ClientConfig",
    "Credential",
    "ANONYMOUS",
    "Descriptor",
    "Image",
    "ImageIndex",
    "RemoteDescriptor",
    "RegistryError",
    "ConfigurationError",
    "CertificateReadError",
    "CertificateParseError",
    "InvalidReferenceError",
    "CredentialError",
    "TransportError",
    "RegistryProtocolError",
    "RetryExhaustedError",
    "RetryCancelledError",
    "RegistryWriteError",
    "build_cert_pool",
    "HTTPTransport",
    "new_http_transport",
    "Keychain",
    "EnvKeychain",
    "DockerConfigKeychain",
    "MultiKeychain",
    "DEFAULT_KEYCHAIN",
    "new_keychain",
    "NameOptions",
    "Registry",
    "Repository",
    "Tag",
    "Digest",
    "parse_reference",
    "new_tag",
    "new_digest",
    "new_repository",
    "RegistryBackend",
    "OrasRemote",
    "RemoteOptions",
    "RetryStrategy",
    "FixedBackoff",
    "Retrier",
    "CancellationToken",
    "NEVER_CANCEL",
]
