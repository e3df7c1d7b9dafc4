"""Node-side HTTPS server.

Serves /health on the node's port. Every connection must present a
client certificate issued by the fleet authority.
"""

import json
import logging
import signal
import socket
import sys
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Optional
from urllib.parse import urlparse

from server.tls import Authority

logger = logging.getLogger(__name__)

DEFAULT_PORT = 443
DEFAULT_BIND = "0.0.0.0"


class NodeHandler(BaseHTTPRequestHandler):
    """HTTP request handler for a fleet node."""

    # Class-level state (shared across requests)
    node_name: str = ""
    system: str = ""

    def log_message(self, format: str, *args):
        """Override to use Python logging."""
        logger.info("%s - %s", self.address_string(), format % args)

    def send_json(self, data: dict, status: int = 200):
        """Send JSON response."""
        body = json.dumps(data, indent=2).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def do_GET(self):
        path = urlparse(self.path).path.rstrip("/")

        if path == "/health":
            peer = self.connection.getpeercert() or {}
            subject = dict(item[0] for item in peer.get("subject", ()))
            self.send_json({
                "status": "ok",
                "node": self.node_name,
                "system": self.system,
                "peer": subject.get("commonName", ""),
            })
            return

        self.send_json({"error": f"Unknown endpoint: {path}"}, 404)


class NodeServer:
    """Mutual-TLS server run inside a node container."""

    def __init__(
        self,
        authority: Authority,
        bind: str = DEFAULT_BIND,
        port: int = DEFAULT_PORT,
        system: str = "",
        node_name: Optional[str] = None,
    ):
        self.authority = authority
        self.bind = bind
        self.port = port
        self.system = system
        self.node_name = node_name or socket.gethostname()
        self.server: Optional[ThreadingHTTPServer] = None

    @property
    def address(self) -> tuple[str, int]:
        """Bound (host, port); the port is real even when 0 was requested."""
        if not self.server:
            raise RuntimeError("Server not started")
        return self.server.server_address[:2]

    def start(self):
        """Bind the socket and wrap it with the authority's server context."""
        if self.port < 1024:
            logger.warning("Port %d is privileged; the node needs elevated permissions", self.port)

        NodeHandler.node_name = self.node_name
        NodeHandler.system = self.system

        self.server = ThreadingHTTPServer((self.bind, self.port), NodeHandler)
        context = self.authority.server_context()
        self.server.socket = context.wrap_socket(self.server.socket, server_side=True)

        logger.info("Node %s serving on https://%s:%d", self.node_name, self.bind, self.address[1])

    def serve_forever(self):
        """Serve requests until interrupted."""
        if not self.server:
            raise RuntimeError("Server not started")

        signal.signal(signal.SIGTERM, self._handle_sigterm)
        try:
            self.server.serve_forever()
        except KeyboardInterrupt:
            logger.info("Shutdown requested")
        finally:
            self.shutdown()

    def shutdown(self):
        logger.info("Shutting down node server")
        if self.server:
            self.server.server_close()
            self.server = None

    def _handle_sigterm(self, signum, frame):
        logger.info("Received SIGTERM")
        self.shutdown()
        sys.exit(0)
