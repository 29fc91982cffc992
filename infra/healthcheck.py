"""HTTP health and status endpoints for the signal service."""

from __future__ import annotations

import json
import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)

StatusProvider = Callable[[], Dict[str, Any]]


class HealthServer:
    """
    JSON server on a daemon thread.

    GET /health -> liveness summary; 503 when the payload has ok=False
    GET /status -> full service status (breakers, cache, window, next tick, jobs)
    """

    def __init__(self, port: int, status_provider: StatusProvider, host: str = "0.0.0.0"):
        self._host = host
        self._port = int(port)
        self._status_provider = status_provider
        self._server: Optional[ThreadingHTTPServer] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def port(self) -> Optional[int]:
        if self._server is None:
            return None
        return self._server.server_port

    def start(self) -> None:
        if self._thread:
            return

        self._server = ThreadingHTTPServer((self._host, self._port), self._build_handler(self._status_provider))
        self._thread = threading.Thread(target=self._server.serve_forever, name="HealthServer", daemon=True)
        self._thread.start()
        logger.info("Health server listening on %s:%s", self._host, self._server.server_port)

    def stop(self) -> None:
        if not self._server:
            return
        self._server.shutdown()
        self._server.server_close()
        if self._thread:
            self._thread.join(timeout=3)
        self._thread = None
        self._server = None

    @staticmethod
    def health_summary(status: Dict[str, Any]) -> Dict[str, Any]:
        breakers = status.get("breakers", {})
        open_breakers = sorted(name for name, snap in breakers.items() if snap.get("state") == "OPEN")
        return {
            # Degraded only when no provider can be called
            "ok": not breakers or len(open_breakers) < len(breakers),
            "open_breakers": open_breakers,
            "window_open": status.get("window_open"),
            "next_tick": status.get("next_tick"),
        }

    @classmethod
    def _build_handler(cls, status_provider: StatusProvider):
        summarize = cls.health_summary

        class StatusHandler(BaseHTTPRequestHandler):
            def do_GET(self):  # type: ignore[override]
                path = self.path.split("?", 1)[0]
                if path not in ("/", "/health", "/healthz", "/status"):
                    self.send_response(404)
                    self.end_headers()
                    return

                try:
                    status = status_provider() or {}
                except Exception as exc:
                    logger.error("Status provider failed: %s", exc, exc_info=True)
                    self._write(500, {"ok": False, "error": str(exc)})
                    return

                if path == "/status":
                    self._write(200, status)
                    return
                summary = summarize(status)
                self._write(200 if summary["ok"] else 503, summary)

            def _write(self, code: int, payload: Dict[str, Any]) -> None:
                body = json.dumps(payload, default=str).encode("utf-8")
                self.send_response(code)
                self.send_header("Content-Type", "application/json")
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)

            def log_message(self, format: str, *args: Any) -> None:  # pragma: no cover - suppress noisy logs
                return

        return StatusHandler


__all__ = ["HealthServer"]
