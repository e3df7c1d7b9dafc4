"""Mutual-TLS authority and the node-side server."""

from server.httpd import (
    NodeServer,
    DEFAULT_PORT,
    DEFAULT_BIND,
)
from server.tls import (
    Authority,
    Credentials,
    get_cert_fingerprint,
)

__all__ = [
    # Server
    "NodeServer",
    "DEFAULT_PORT",
    "DEFAULT_BIND",
    # TLS
    "Authority",
    "Credentials",
    "get_cert_fingerprint",
]
