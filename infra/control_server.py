"""JSON HTTP control surface for operators and dashboards."""

from __future__ import annotations

import hmac
import json
import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import parse_qs, urlparse

from core.exceptions import DecisionError, ExchangeError

logger = logging.getLogger(__name__)

MAX_BODY_BYTES = 64 * 1024

Response = Tuple[int, Any]


class ControlServer:
    """
    Routes requests to a ControlService on a daemon thread.

    Public: GET /health, /status, /signals/<pair>.
    Everything else needs the X-API-Key header to match `api_key`; with no
    key configured those routes answer 503.
    """

    def __init__(self, service, port: int = 3847, host: str = "0.0.0.0",
                 api_key: Optional[str] = None, cors_origin: Optional[str] = "*"):
        self._service = service
        self._host = host
        self._port = int(port)
        self._api_key = api_key or None
        self._cors_origin = cors_origin
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

        handler_cls = self._build_handler(self)
        self._server = ThreadingHTTPServer((self._host, self._port), handler_cls)
        self._server.daemon_threads = True
        self._thread = threading.Thread(target=self._server.serve_forever, name="ControlServer", daemon=True)
        self._thread.start()
        if not self._api_key:
            logger.warning("BOT_API_KEY not set; authenticated control routes will return 503")
        logger.info("Control API listening on %s:%s", self._host, self._server.server_port)

    def stop(self) -> None:
        if not self._server:
            return
        try:
            self._server.shutdown()
            self._server.server_close()
        except OSError as exc:  # pragma: no cover - defensive logging
            logger.warning("Failed shutting down control server: %s", exc)
        if self._thread:
            self._thread.join(timeout=3)
        self._thread = None
        self._server = None

    # Routing

    def authorize(self, provided: Optional[str]) -> Optional[Response]:
        """None when authorized, otherwise the error response to send."""
        if not self._api_key:
            return 503, {"error": "Control API key not configured"}
        if not provided or not hmac.compare_digest(provided.encode("utf-8"), self._api_key.encode("utf-8")):
            return 401, {"error": "Unauthorized"}
        return None

    def dispatch(self, method: str, raw_path: str, headers: Dict[str, str],
                 body: Optional[Dict[str, Any]]) -> Response:
        parsed = urlparse(raw_path)
        path = parsed.path.rstrip("/") or "/"
        query = {k: v[-1] for k, v in parse_qs(parsed.query).items()}
        service = self._service

        public: Dict[Tuple[str, str], Callable[[], Any]] = {
            ("GET", "/"): service.get_health,
            ("GET", "/health"): service.get_health,
            ("GET", "/status"): service.get_status,
        }
        if (method, path) in public:
            return 200, public[(method, path)]()
        if method == "GET" and path.startswith("/signals/"):
            return 200, service.get_signals(path[len("/signals/"):])

        private: Dict[Tuple[str, str], Callable[[], Any]] = {
            ("GET", "/portfolio"): service.get_portfolio,
            ("GET", "/positions"): service.get_open_positions,
            ("GET", "/trades"): lambda: service.get_trade_history(query.get("date")),
            ("GET", "/recommendations"): lambda: service.get_recommendation_history(
                int(query.get("limit", 50))
            ),
            ("GET", "/emergency-stop"): service.get_emergency_stop,
            ("POST", "/emergency-stop"): lambda: self._emergency_stop(body),
            ("POST", "/config"): lambda: service.update_runtime_config(body or {}),
        }
        route = private.get((method, path))
        if route is None:
            return 404, {"error": f"Not found: {method} {path}"}

        denied = self.authorize(headers.get("x-api-key"))
        if denied is not None:
            return denied
        return 200, route()

    def _emergency_stop(self, body: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        action = str((body or {}).get("action", "")).lower()
        if action not in ("stop", "start"):
            raise ValueError('action must be "stop" or "start"')
        return self._service.set_emergency_stop(action == "stop")

    @staticmethod
    def _build_handler(server: "ControlServer"):
        class ControlHandler(BaseHTTPRequestHandler):
            def _send(self, status: int, payload: Any) -> None:
                body = json.dumps(payload, default=str).encode("utf-8")
                self.send_response(status)
                self.send_header("Content-Type", "application/json")
                self.send_header("Content-Length", str(len(body)))
                self._cors_headers()
                self.end_headers()
                self.wfile.write(body)

            def _cors_headers(self) -> None:
                if server._cors_origin:
                    self.send_header("Access-Control-Allow-Origin", server._cors_origin)
                    self.send_header("Access-Control-Allow-Headers", "Content-Type, X-API-Key")
                    self.send_header("Access-Control-Allow-Methods", "GET, POST, OPTIONS")

            def _read_body(self) -> Optional[Dict[str, Any]]:
                length = int(self.headers.get("Content-Length") or 0)
                if length <= 0:
                    return None
                if length > MAX_BODY_BYTES:
                    raise ValueError("request body too large")
                data = json.loads(self.rfile.read(length).decode("utf-8"))
                if not isinstance(data, dict):
                    raise ValueError("request body must be a JSON object")
                return data

            def _handle(self, method: str) -> None:
                try:
                    body = self._read_body() if method == "POST" else None
                    headers = {k.lower(): v for k, v in self.headers.items()}
                    status, payload = server.dispatch(method, self.path, headers, body)
                except ValueError as exc:
                    status, payload = 400, {"error": str(exc)}
                except (ExchangeError, DecisionError) as exc:
                    status, payload = 502, {"error": str(exc)}
                except Exception as exc:
                    logger.exception("Control request %s %s failed", method, self.path)
                    status, payload = 500, {"error": str(exc)}
                self._send(status, payload)

            def do_GET(self):  # type: ignore[override]
                self._handle("GET")

            def do_POST(self):  # type: ignore[override]
                self._handle("POST")

            def do_OPTIONS(self):  # type: ignore[override]
                self.send_response(204)
                self._cors_headers()
                self.end_headers()

            def log_message(self, format: str, *args: Any) -> None:  # pragma: no cover - suppress noisy logs
                logger.debug("control %s - %s", self.address_string(), format % args)

        return ControlHandler


__all__ = ["ControlServer"]
