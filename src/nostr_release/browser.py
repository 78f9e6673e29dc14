"""Browser extension (NIP-07) signer bridge.

A loopback HTTP server hands signing requests to a bootstrap page, which
forwards them to window.nostr in the user's browser and posts the results
back. Everything the page returns is verified again before it is accepted.
"""

import hmac
import json
import logging
import queue
import secrets
import threading
import time
import webbrowser
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from importlib import resources
from typing import Any

from .errors import InvalidSignerError, SignatureRejectedError, SignerBusyError
from .keys import is_valid_public_key, verify_event
from .models import Event
from .signer import Signer, SignerKind
from .utils import wait_for_result

logger = logging.getLogger(__name__)

DEFAULT_PORT = 17007
HOST = "127.0.0.1"

# Seconds to wait for the user to approve in the browser
DEFAULT_TIMEOUT = 120

# Time the page gets to notice shutdown before the server goes away
SHUTDOWN_GRACE = 0.5

MAX_BODY_SIZE = 4 * 1024 * 1024

MODE_IDLE = "idle"
MODE_PUBLIC_KEY = "requesting-public-key"
MODE_SIGNING = "signing"

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Cache-Control": "no-store",
}


def load_bootstrap_page() -> bytes:
    """Return the HTML page that drives the browser extension."""
    return resources.files("nostr_release").joinpath("templates/browser_signer.html").read_bytes()


class BridgeRequestHandler(BaseHTTPRequestHandler):
    """Routes bridge requests to the owning BrowserExtensionSigner.

    GET  /               bootstrap page
    GET  /api/state      current mode, request payload and session nonce
    GET  /api/shutdown   whether the page should close itself
    POST /public-key     {"publicKey": "<hex>"}
    POST /signed-events  [signed event, ...]
    """

    def log_message(self, format: str, *args: Any) -> None:
        logger.debug("bridge %s - %s", self.address_string(), format % args)

    @property
    def bridge(self) -> "BrowserExtensionSigner":
        return self.server.bridge

    def do_GET(self) -> None:
        if self.path == "/":
            self._send(200, load_bootstrap_page(), "text/html; charset=utf-8")
        elif self.path == "/api/state":
            self._send_json(200, self.bridge.state())
        elif self.path == "/api/shutdown":
            self._send_json(200, {"shouldClose": self.bridge.should_close})
        else:
            self._send_error(404, "Not found")

    def do_POST(self) -> None:
        routes = {
            "/public-key": self._handle_public_key,
            "/signed-events": self._handle_signed_events,
        }

        handler = routes.get(self.path)
        if handler is None:
            self._send_error(404, f"Unknown endpoint: {self.path}")
            return

        if not self._origin_allowed():
            self._send_error(403, "Forbidden: invalid origin")
            return

        nonce = self.headers.get("X-Session-Nonce", "")
        if not hmac.compare_digest(nonce.encode(), self.bridge.session_nonce.encode()):
            self._send_error(403, "Invalid session nonce")
            return

        body = self._read_body()
        if body is None:
            return
        handler(body)

    def _origin_allowed(self) -> bool:
        origin = self.headers.get("Origin")
        if not origin:
            return True
        port = self.bridge.port
        return origin in (f"http://localhost:{port}", f"http://127.0.0.1:{port}")

    def _read_body(self) -> Any:
        try:
            content_length = int(self.headers.get("Content-Length", "0"))
        except ValueError:
            content_length = 0

        if content_length <= 0:
            self._send_error(400, "Request body is empty")
            return None
        if content_length > MAX_BODY_SIZE:
            self._send_error(413, "Payload too large")
            return None

        try:
            return json.loads(self.rfile.read(content_length).decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as err:
            self._send_error(400, f"Invalid JSON: {err}")
            return None

    def _handle_public_key(self, body: Any) -> None:
        public_key = body.get("publicKey") if isinstance(body, dict) else None
        error = self.bridge.accept_public_key(public_key)
        if error:
            self._send_error(400, error)
        else:
            self._send_json(200, {"ok": True})

    def _handle_signed_events(self, body: Any) -> None:
        error = self.bridge.accept_signed_events(body)
        if error:
            self._send_error(400, error)
        else:
            self._send_json(200, {"ok": True})

    def _send(self, status_code: int, payload: bytes, content_type: str) -> None:
        self.send_response(status_code)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(payload)))
        for name, value in SECURITY_HEADERS.items():
            self.send_header(name, value)
        self.end_headers()
        self.wfile.write(payload)

    def _send_json(self, status_code: int, data: dict) -> None:
        self._send(status_code, json.dumps(data).encode("utf-8"), "application/json")

    def _send_error(self, status_code: int, message: str) -> None:
        self._send_json(status_code, {"error": message})


class BridgeServer(ThreadingHTTPServer):
    """ThreadingHTTPServer that carries the signer it serves."""

    daemon_threads = True

    def __init__(self, address: tuple[str, int], bridge: "BrowserExtensionSigner"):
        super().__init__(address, BridgeRequestHandler)
        self.bridge = bridge


class BrowserExtensionSigner(Signer):
    """Signs through a NIP-07 browser extension via a loopback bridge.

    CONTRACT:
      Inputs:
        - port: loopback port (0 picks a free port)
        - open_browser: open the bootstrap page automatically
        - timeout: seconds to wait for each approval

      Invariants:
        - Listens on 127.0.0.1 only
        - At most one request outstanding; a concurrent one raises SignerBusyError
        - Returned events must verify, carry the established pubkey, match the
          requested ids and count; anything else is answered 400 and the
          waiting caller keeps waiting
        - A timed out or cancelled wait returns the bridge to idle
    """

    kind = SignerKind.BROWSER
    batch_capable = True

    def __init__(self, port: int = DEFAULT_PORT, open_browser: bool = True, timeout: float = DEFAULT_TIMEOUT):
        self.port = port
        self.open_browser = open_browser
        self.timeout = timeout
        self.shutdown_grace = SHUTDOWN_GRACE
        self.session_nonce = secrets.token_hex(16)
        self.should_close = False

        self._public_key = ""
        self._lock = threading.Lock()
        self._mode = MODE_IDLE
        self._request_number = 0
        self._payload: list[dict] | None = None
        self._expected_ids: list[str] = []
        self._results: queue.Queue | None = None
        self._server: BridgeServer | None = None
        self._thread: threading.Thread | None = None
        self._browser_opened = False

    @property
    def url(self) -> str:
        return f"http://localhost:{self.port}/"

    @property
    def mode(self) -> str:
        with self._lock:
            return self._mode

    def open(self) -> None:
        """Start the loopback server; port 0 is replaced by the bound port."""
        if self._server is not None:
            return
        self._server = BridgeServer((HOST, self.port), self)
        self.port = self._server.server_address[1]
        self._thread = threading.Thread(target=self._server.serve_forever, name="browser-signer", daemon=True)
        self._thread.start()
        logger.info("browser signer listening on %s", self.url)

    def public_key(self) -> str:
        return self._public_key

    def state(self) -> dict:
        with self._lock:
            return {
                "mode": self._mode,
                "data": self._payload,
                "nonce": self.session_nonce,
                "request": self._request_number,
            }

    def request_public_key(self, cancel: threading.Event | None = None) -> str:
        """Ask the extension for its public key and remember it."""
        results = self._begin(MODE_PUBLIC_KEY, None, [])
        self._open_page()
        try:
            public_key = wait_for_result(results, self.timeout, cancel, "public key from browser extension")
        finally:
            self._finish()
        self._public_key = public_key
        return public_key

    def sign(self, event: Event, cancel: threading.Event | None = None) -> None:
        self.sign_batch([event], cancel)

    def sign_batch(self, events: list[Event], cancel: threading.Event | None = None) -> None:
        """Sign all events with a single browser approval.

        Raises:
            - InvalidSignerError: no public key established yet
            - SignerBusyError: another request is outstanding
            - SignerTimeoutError, OperationCancelledError
        """
        if not events:
            return
        if not self._public_key:
            raise InvalidSignerError("browser signer has no public key; call request_public_key first")

        expected_ids = []
        for event in events:
            event.pubkey = self._public_key
            expected_ids.append(event.compute_id())
        payload = [event.to_unsigned_dict() for event in events]

        results = self._begin(MODE_SIGNING, payload, expected_ids)
        self._open_page()
        try:
            signed = wait_for_result(results, self.timeout, cancel, "browser extension signature")
        finally:
            self._finish()

        if len(signed) != len(events):
            raise SignatureRejectedError(f"expected {len(events)} signed events, got {len(signed)}")
        for event, signed_event in zip(events, signed):
            event.id = signed_event.id
            event.sig = signed_event.sig

    def accept_public_key(self, public_key: Any) -> str | None:
        """Validate a posted public key; returns an error message or None."""
        if not isinstance(public_key, str) or not is_valid_public_key(public_key.lower()):
            return "Invalid public key format"
        return self._deliver(MODE_PUBLIC_KEY, public_key.lower())

    def accept_signed_events(self, data: Any) -> str | None:
        """Validate posted signed events; returns an error message or None."""
        if not isinstance(data, list):
            return "Expected a JSON array of events"

        with self._lock:
            expected_ids = list(self._expected_ids)
        if len(data) != len(expected_ids):
            return f"Expected {len(expected_ids)} signed events, got {len(data)}"

        signed = []
        for i, item in enumerate(data):
            try:
                event = Event.from_dict(item)
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                return f"Invalid event {i}: {e}"
            if event.pubkey != self._public_key:
                return f"Event {i} pubkey mismatch"
            if event.id != expected_ids[i]:
                return f"Event {i} does not match the signing request"
            if not verify_event(event):
                return f"Invalid signature on event {i}"
            signed.append(event)

        return self._deliver(MODE_SIGNING, signed)

    def close(self) -> None:
        """Tell the page to close, then stop the server and release the port."""
        self.should_close = True
        server, self._server = self._server, None
        if server is None:
            return
        if self.shutdown_grace:
            time.sleep(self.shutdown_grace)
        server.shutdown()
        server.server_close()
        if self._thread is not None:
            self._thread.join(timeout=2)
            self._thread = None
        logger.debug("browser signer on port %d stopped", self.port)

    def _begin(self, mode: str, payload: list[dict] | None, expected_ids: list[str]) -> queue.Queue:
        if self._server is None:
            raise InvalidSignerError("browser signer is not open")
        with self._lock:
            if self._mode != MODE_IDLE:
                raise SignerBusyError(f"browser signer is busy ({self._mode})")
            self._mode = mode
            self._payload = payload
            self._expected_ids = expected_ids
            self._request_number += 1
            self._results = queue.Queue(maxsize=1)
            return self._results

    def _deliver(self, mode: str, value: Any) -> str | None:
        with self._lock:
            if self._mode != mode or self._results is None:
                return "No matching request is pending"
            try:
                self._results.put_nowait(value)
            except queue.Full:
                return "Request already answered"
        return None

    def _finish(self) -> None:
        with self._lock:
            self._mode = MODE_IDLE
            self._payload = None
            self._expected_ids = []
            self._results = None

    def _open_page(self) -> None:
        if not self.open_browser or self._browser_opened:
            return
        self._browser_opened = True
        logger.info("opening %s for browser extension approval", self.url)
        webbrowser.open(self.url)
