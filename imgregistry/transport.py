"""HTTP transport for registry traffic: timeouts, pooling, proxies and TLS trust.

urllib3 has no separate TLS handshake, idle-connection or expect-continue
timeouts. The handshake runs under the connect timeout, idle pooled
connections are dropped when the server closes them, and request bodies are
sent without waiting for ``100 Continue``.
"""

from __future__ import annotations

import logging
import socket
import ssl
from dataclasses import dataclass
from urllib.request import getproxies

import requests
from requests.adapters import HTTPAdapter
from urllib3.connection import HTTPConnection

from .certs import build_cert_pool
from .security import redact_url
from .types import ClientConfig

logger = logging.getLogger(__name__)

DIAL_TIMEOUT_SECONDS = 30.0
KEEP_ALIVE_SECONDS = 30
MAX_IDLE_CONNECTIONS = 100
RESPONSE_HEADER_TIMEOUT_SECONDS = 10.0

DEFAULT_TIMEOUT = (DIAL_TIMEOUT_SECONDS, RESPONSE_HEADER_TIMEOUT_SECONDS)


def keepalive_socket_options() -> list[tuple[int, int, int]]:
    options = list(HTTPConnection.default_socket_options)
    options.append((socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1))
    if hasattr(socket, "TCP_KEEPIDLE"):
        options.append((socket.IPPROTO_TCP, socket.TCP_KEEPIDLE, KEEP_ALIVE_SECONDS))
    if hasattr(socket, "TCP_KEEPINTVL"):
        options.append((socket.IPPROTO_TCP, socket.TCP_KEEPINTVL, KEEP_ALIVE_SECONDS))
    return options


class RegistryHTTPAdapter(HTTPAdapter):
    """Connection pool bound to one TLS context, with default timeouts.

    urllib3 resolves hosts with AF_UNSPEC, so dialing is dual-stack.
    """

    def __init__(
        self,
        ssl_context: ssl.SSLContext,
        *,
        verify_certs: bool = True,
        timeout: tuple[float, float] = DEFAULT_TIMEOUT,
    ) -> None:
        self.ssl_context = ssl_context
        self.verify_certs = verify_certs
        self.timeout = timeout
        super().__init__(
            pool_connections=MAX_IDLE_CONNECTIONS,
            pool_maxsize=MAX_IDLE_CONNECTIONS,
            max_retries=0,
        )

    def init_poolmanager(self, connections, maxsize, block=False, **pool_kwargs):
        pool_kwargs.setdefault("ssl_context", self.ssl_context)
        pool_kwargs.setdefault("socket_options", keepalive_socket_options())
        super().init_poolmanager(connections, maxsize, block=block, **pool_kwargs)

    def proxy_manager_for(self, proxy, **proxy_kwargs):
        proxy_kwargs.setdefault("ssl_context", self.ssl_context)
        proxy_kwargs.setdefault("socket_options", keepalive_socket_options())
        return super().proxy_manager_for(proxy, **proxy_kwargs)

    def send(self, request, stream=False, timeout=None, verify=True, cert=None, proxies=None):
        if timeout is None:
            timeout = self.timeout
        if not self.verify_certs:
            verify = False
        return super().send(request, stream=stream, timeout=timeout, verify=verify, cert=cert, proxies=proxies)


def unverified_context() -> ssl.SSLContext:
    """A fresh client context that skips hostname and certificate checks."""

    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    return context


@dataclass(frozen=True)
class HTTPTransport:
    """Shared adapter plus verification mode; hands out configured sessions."""

    adapter: RegistryHTTPAdapter
    verify_certs: bool = True

    def configure(self, session: requests.Session) -> requests.Session:
        session.mount("https://", self.adapter)
        session.mount("http://", self.adapter)
        session.verify = self.verify_certs
        # HTTP_PROXY / HTTPS_PROXY / NO_PROXY
        session.trust_env = True
        return session

    def new_session(self) -> requests.Session:
        return self.configure(requests.Session())


def new_http_transport(config: ClientConfig, cert_pool: ssl.SSLContext | None = None) -> HTTPTransport:
    """Build the registry transport; raises ConfigurationError for bad CA files."""

    pool = cert_pool if cert_pool is not None else build_cert_pool(config.ca_cert_paths)
    if not config.verify_certs:
        # Security-relevant: every registry certificate is accepted as-is.
        pool = unverified_context()
        logger.warning("registry TLS certificate verification is disabled")
    proxies = {scheme: redact_url(url) for scheme, url in getproxies().items()}
    if proxies:
        logger.debug("registry transport proxies=%s", proxies)
    adapter = RegistryHTTPAdapter(pool, verify_certs=config.verify_certs)
    return HTTPTransport(adapter=adapter, verify_certs=config.verify_certs)
