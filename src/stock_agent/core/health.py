"""Health check endpoint for container orchestration.

Serves the facade's health report over HTTP for Docker/Kubernetes probes:
- ``/health``: full health report, 503 when unhealthy
- ``/ready``: 200 once the service holds data, 503 before that
"""

from __future__ import annotations

import json
from collections.abc import Callable
from http.server import BaseHTTPRequestHandler, HTTPServer
from threading import Thread
from typing import Any

from .logging import get_logger

logger = get_logger(__name__)

StatusProvider = Callable[[], dict[str, Any]]


class HealthCheckHandler(BaseHTTPRequestHandler):
    """HTTP handler for health check requests."""

    status_provider: StatusProvider = staticmethod(lambda: {"status": "healthy"})

    def _send_json(self, status_code: int, body: dict[str, Any]) -> None:
        self.send_response(status_code)
        self.send_header("Content-Type", "application/json")
        self.end_headers()
        self.wfile.write(json.dumps(body, default=str).encode())

    def do_GET(self) -> None:
        """Handle GET requests for health check."""
        if self.path not in ("/health", "/ready"):
            self.send_response(404)
            self.end_headers()
            return

        try:
            report = self.status_provider()
        except Exception as e:
            logger.error("Health status provider failed", error=str(e))
            self._send_json(503, {"status": "unhealthy", "error": str(e)})
            return

        if self.path == "/health":
            code = 503 if report.get("status") == "unhealthy" else 200
            self._send_json(code, report)
        else:
            ready = report.get("records", 0) > 0
            self._send_json(200 if ready else 503, {"status": "ready" if ready else "not_ready"})

    def log_message(self, format: str, *args) -> None:
        """Override to use structured logging."""
        logger.debug("Health check request", request=format % args)


class HealthCheckServer:
    """Health check HTTP server running in background thread."""

    def __init__(self, status_provider: StatusProvider, host: str = "0.0.0.0", port: int = 8080):
        """Initialize health check server.

        Args:
            status_provider: Callable returning the current health report
            host: Host to bind to (default: 0.0.0.0)
            port: Port to listen on (default: 8080)
        """
        self.host = host
        self.port = port
        self.handler = type(
            "BoundHealthCheckHandler",
            (HealthCheckHandler,),
            {"status_provider": staticmethod(status_provider)},
        )
        self.server: HTTPServer | None = None
        self.thread: Thread | None = None

    def start(self) -> None:
        """Start the health check server in background thread."""
        self.server = HTTPServer((self.host, self.port), self.handler)
        self.port = self.server.server_address[1]
        self.thread = Thread(target=self.server.serve_forever, daemon=True)
        self.thread.start()
        logger.info("Health check server started", host=self.host, port=self.port)

    def stop(self) -> None:
        """Stop the health check server."""
        if self.server:
            self.server.shutdown()
            self.server.server_close()
            logger.info("Health check server stopped")
