"""Shared fakes for unit tests: in-memory relays and signers."""

import json
import queue
import time

from nostr_release.errors import SigningError
from nostr_release.keys import sign_event
from nostr_release.models import Event
from nostr_release.signer import LocalKeySigner, SignerKind

PRIVATE_KEY = "0000000000000000000000000000000000000000000000000000000000000001"
PUBLIC_KEY = "79be667ef9dcbbac55a06295ce870b07029bfcdb2dce28d959f2815b16f81798"
OTHER_PRIVATE_KEY = "0000000000000000000000000000000000000000000000000000000000000002"


class FakeWebSocket:
    """Sync websocket stand-in; the owning FakeRelay answers each sent frame."""

    def __init__(self, relay, url):
        self.relay = relay
        self.url = url
        self.sent = []
        self.closed = False
        self._inbox = queue.Queue()

    def push(self, message) -> None:
        self._inbox.put(json.dumps(message))

    def send(self, raw: str) -> None:
        message = json.loads(raw)
        self.sent.append(message)
        self.relay.handle(self, message)

    def recv(self, timeout=None):
        try:
            return self._inbox.get(timeout=min(timeout or 0.01, 0.01))
        except queue.Empty:
            raise TimeoutError("no message") from None

    def close(self) -> None:
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


class FakeRelay:
    """Minimal NIP-01 relay: stores published events and answers REQ from stored events.

    reject_kinds refuses events of those kinds while accepting everything else.
    """

    def __init__(self, stored=None, accept=True, reason="", silent=False, closed_reason=None, reject_kinds=()):
        self.stored = list(stored or [])
        self.accept = accept
        self.reject_kinds = set(reject_kinds)
        self.reason = reason
        self.silent = silent
        self.closed_reason = closed_reason
        self.published = []
        self.requests = []
        self.sockets = []

    def handle(self, ws, message) -> None:
        if self.silent:
            return
        if message[0] == "EVENT":
            self.published.append(message[1])
            if message[1]["kind"] in self.reject_kinds:
                ws.push(["OK", message[1]["id"], False, "blocked: kind not allowed"])
            else:
                ws.push(["OK", message[1]["id"], self.accept, self.reason])
        elif message[0] == "REQ":
            subscription_id, request_filter = message[1], message[2]
            self.requests.append(request_filter)
            if self.closed_reason is not None:
                ws.push(["CLOSED", subscription_id, self.closed_reason])
                return
            for event in self.stored:
                if event.kind in request_filter.get("kinds", [event.kind]):
                    ws.push(["EVENT", subscription_id, event.to_dict()])
            ws.push(["EOSE", subscription_id])


def make_connect(relays: dict):
    """connect() replacement; URLs missing from relays refuse the connection."""
    calls = []

    def connect(url, open_timeout=None, close_timeout=None):
        calls.append(url)
        relay = relays.get(url)
        if relay is None:
            raise ConnectionRefusedError(f"connection refused: {url}")
        ws = FakeWebSocket(relay, url)
        relay.sockets.append(ws)
        return ws

    connect.calls = calls
    return connect


def signed_event(kind: int, tags: list[list[str]], private_key: str = PRIVATE_KEY, created_at: int | None = None):
    event = Event(kind=kind, tags=tags, created_at=int(time.time()) if created_at is None else created_at)
    return sign_event(event, private_key)


class RecordingSigner(LocalKeySigner):
    """Local signer that records the order events were signed in."""

    def __init__(self, private_key: str = PRIVATE_KEY, fail_on_kind: int | None = None):
        super().__init__(private_key)
        self.signed_kinds = []
        self.fail_on_kind = fail_on_kind

    def sign(self, event, cancel=None):
        if event.kind == self.fail_on_kind:
            raise SigningError("user rejected")
        super().sign(event, cancel)
        self.signed_kinds.append(event.kind)


class BatchSigner(LocalKeySigner):
    """Local key signer that advertises batch signing, like the browser signer."""

    kind = SignerKind.BROWSER
    batch_capable = True

    def __init__(self, private_key: str = PRIVATE_KEY):
        super().__init__(private_key)
        self.batches = []

    def sign_batch(self, events, cancel=None):
        self.batches.append([event.kind for event in events])
        for event in events:
            LocalKeySigner.sign(self, event, cancel)
