"""TLS trust store assembly from the system pool and user PEM bundles."""

from __future__ import annotations

import logging
import re
import ssl
from pathlib import Path
from typing import Iterable

from .errors import CertificateParseError, CertificateReadError

logger = logging.getLogger(__name__)

_PEM_CERT_RE = re.compile(
    r"-----BEGIN CERTIFICATE-----\s+.+?\s+-----END CERTIFICATE-----",
    re.DOTALL,
)


def system_cert_pool() -> ssl.SSLContext:
    """Return a client context seeded with the host trust store, or an empty one."""

    try:
        return ssl.create_default_context(ssl.Purpose.SERVER_AUTH)
    except (ssl.SSLError, OSError) as exc:
        logger.warning("system trust store unavailable, starting from an empty pool error=%s", exc)
        return ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)


def pem_certificates(text: str) -> list[str]:
    return [match.group(0) for match in _PEM_CERT_RE.finditer(text)]


def append_certs_from_file(pool: ssl.SSLContext, path: str | Path) -> int:
    """Load every certificate in a PEM file into ``pool``; return how many were found."""

    label = str(path)
    try:
        text = Path(path).read_text(encoding="utf-8", errors="replace")
    except OSError as exc:
        raise CertificateReadError(label, exc) from exc
    blocks = pem_certificates(text)
    if not blocks:
        raise CertificateParseError(label, "no PEM certificates found")
    for block in blocks:
        try:
            pool.load_verify_locations(cadata=block)
        except (ssl.SSLError, ValueError) as exc:
            raise CertificateParseError(label, str(exc)) from exc
    logger.debug("loaded CA certificates path=%s count=%s", label, len(blocks))
    return len(blocks)


def build_cert_pool(paths: Iterable[str | Path] = ()) -> ssl.SSLContext:
    """System trust store plus every certificate from ``paths``, failing on the first bad file."""

    pool = system_cert_pool()
    for path in paths:
        append_certs_from_file(pool, path)
    return pool


def pool_size(pool: ssl.SSLContext) -> int:
    return int(pool.cert_store_stats().get("x509", 0))
