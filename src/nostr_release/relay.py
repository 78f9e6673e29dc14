"""Relay publishing and querying.

Publishes events to N relays and queries them for existing releases. Every
relay is contacted independently: one failing relay never blocks the others,
and per-relay failures are reported in PublishResult instead of raised.
"""

import json
import logging
import secrets
import sys
import threading
import time
from urllib.parse import urlparse

from websockets.exceptions import WebSocketException
from websockets.sync.client import connect as ws_connect

from .errors import InvalidRelayURLError, RelayError
from .keys import verify_event
from .models import (
    KIND_APP_METADATA,
    KIND_RELEASE,
    KIND_SOFTWARE_ASSET,
    Event,
    EventSet,
    ExistingApp,
    ExistingAsset,
    PublishResult,
)
from .utils import POLL_INTERVAL, check_cancelled, deduplicate_preserving_order

logger = logging.getLogger(__name__)

DEFAULT_RELAY = "wss://relay.zapstore.dev"

# Seconds allowed for each relay operation (connect + publish, or connect + query)
RELAY_TIMEOUT = 30

DUPLICATE_MARKERS = ("duplicate", "already exists", "already have")

LOCALHOST_NAMES = ("localhost", "127.0.0.1", "::1")


def validate_relay_url(url: str) -> bool:
    """Return True if url uses the ws:// or wss:// scheme (case-sensitive)."""
    return isinstance(url, str) and (url.startswith("wss://") or url.startswith("ws://"))


def parse_relay_list(value: str | list[str] | None) -> list[str]:
    """Parse a comma separated relay list (or list) into validated, de-duplicated URLs.

    Raises:
        - InvalidRelayURLError: an entry is not a ws:// or wss:// URL
    """
    if not value:
        return []
    items = value.split(",") if isinstance(value, str) else value

    relays = []
    for item in items:
        url = item.strip()
        if not url:
            continue
        if not validate_relay_url(url):
            raise InvalidRelayURLError(f"Invalid relay URL (must start with ws:// or wss://): {url}")
        relays.append(url)

    return deduplicate_preserving_order(relays)


def is_localhost_relay(url: str) -> bool:
    """Return True if the relay host is a loopback name or address."""
    try:
        hostname = urlparse(url).hostname
    except ValueError:
        return False
    return hostname is not None and hostname.lower() in LOCALHOST_NAMES


def warn_insecure_relays(relays: list[str]) -> None:
    """Write a warning to stderr for unencrypted ws:// relays that are not loopback."""
    insecure = [url for url in relays if url.startswith("ws://") and not is_localhost_relay(url)]
    if insecure:
        listing = ", ".join(insecure)
        sys.stderr.write(f"WARNING: unencrypted relay connection (use wss://): {listing}\n")


def is_duplicate_message(message: str | None) -> bool:
    """Return True if a relay message reports the event already existed.

    Relays signal this inconsistently; matching is best-effort.
    """
    if not message:
        return False
    lowered = message.lower()
    return any(marker in lowered for marker in DUPLICATE_MARKERS)


def _matches_tags(event: Event, required: dict[str, str]) -> bool:
    for name, value in required.items():
        if not any(len(tag) >= 2 and tag[0] == name and tag[1] == value for tag in event.tags):
            return False
    return True


class RelayPublisher:
    """Publishes to and queries a fixed, ordered list of relays.

    CONTRACT:
      Inputs:
        - relay_urls: relay URLs (defaults to DEFAULT_RELAY when empty)
        - timeout: seconds per relay operation
        - connect: websocket factory called as connect(url, open_timeout=...)

      Invariants:
        - Relays are contacted in configured order, one at a time
        - Each relay attempt is bounded by timeout and never retried
        - Duplicate acknowledgements count as success with is_duplicate=True
    """

    def __init__(self, relay_urls: list[str] | None = None, timeout: float = RELAY_TIMEOUT, connect=ws_connect):
        self.relay_urls = list(relay_urls) if relay_urls else [DEFAULT_RELAY]
        self.timeout = timeout
        self._connect = connect

    def _open(self, url: str):
        return self._connect(url, open_timeout=self.timeout, close_timeout=2)

    def _recv_json(self, ws, deadline: float, cancel: threading.Event | None, what: str) -> list:
        while True:
            check_cancelled(cancel, what)
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TimeoutError(f"timed out after {self.timeout:g}s")
            try:
                raw = ws.recv(timeout=min(POLL_INTERVAL, remaining))
            except TimeoutError:
                continue
            try:
                message = json.loads(raw)
            except (TypeError, ValueError):
                logger.debug("ignoring non-JSON relay message: %r", raw)
                continue
            if isinstance(message, list) and message:
                return message

    def publish(self, event: Event, cancel: threading.Event | None = None) -> list[PublishResult]:
        """Publish event to every configured relay, one result per relay."""
        return [self._publish_to_relay(url, event, cancel) for url in self.relay_urls]

    def _publish_to_relay(self, url: str, event: Event, cancel: threading.Event | None) -> PublishResult:
        result = PublishResult(relay_url=url)
        check_cancelled(cancel, "publish")
        deadline = time.monotonic() + self.timeout

        try:
            ws = self._open(url)
        except (OSError, WebSocketException) as e:
            result.error = f"failed to connect: {e}"
            return result

        try:
            with ws:
                ws.send(json.dumps(["EVENT", event.to_dict()], ensure_ascii=False))
                while True:
                    message = self._recv_json(ws, deadline, cancel, "publish")
                    if message[0] == "NOTICE" and len(message) > 1:
                        logger.info("relay %s notice: %s", url, message[1])
                        continue
                    if message[0] != "OK" or len(message) < 3 or message[1] != event.id:
                        continue

                    accepted = bool(message[2])
                    reason = str(message[3]) if len(message) > 3 else ""
                    if accepted:
                        result.success = True
                        result.is_duplicate = is_duplicate_message(reason)
                    elif is_duplicate_message(reason):
                        result.success = True
                        result.is_duplicate = True
                        result.error = reason
                    else:
                        result.error = f"failed to publish: {reason or 'rejected'}"
                    return result
        except (OSError, WebSocketException) as e:
            result.error = f"failed to publish: {e}"
            return result

    def publish_event_set(
        self, event_set: EventSet, cancel: threading.Event | None = None
    ) -> dict[str, list[PublishResult]]:
        """Publish app metadata, release and assets; results keyed by event type.

        Each event is published independently; there is no atomicity across
        events or relays.
        """
        results = {
            "software_application": self.publish(event_set.app_metadata, cancel),
            "software_release": self.publish(event_set.release, cancel),
        }
        for i, asset in enumerate(event_set.assets, start=1):
            key = "software_asset" if len(event_set.assets) == 1 else f"software_asset_{i}"
            results[key] = self.publish(asset, cancel)
        return results

    def query(self, url: str, filter: dict, cancel: threading.Event | None = None) -> list[Event]:
        """Return events from one relay matching filter, up to end of stored events.

        Events with invalid ids or signatures are dropped.

        Raises:
            - RelayError: connection, protocol or timeout failure
            - OperationCancelledError: cancel was set
        """
        subscription_id = secrets.token_hex(8)
        deadline = time.monotonic() + self.timeout
        events = []

        try:
            with self._open(url) as ws:
                ws.send(json.dumps(["REQ", subscription_id, filter]))
                while True:
                    message = self._recv_json(ws, deadline, cancel, "query")
                    if len(message) < 2 or message[1] != subscription_id:
                        continue
                    if message[0] == "EVENT" and len(message) >= 3:
                        try:
                            event = Event.from_dict(message[2])
                        except (KeyError, TypeError, ValueError):
                            continue
                        if verify_event(event):
                            events.append(event)
                        else:
                            logger.debug("dropping invalid event %s from %s", event.id, url)
                    elif message[0] == "EOSE":
                        ws.send(json.dumps(["CLOSE", subscription_id]))
                        return events
                    elif message[0] == "CLOSED":
                        reason = message[2] if len(message) > 2 else ""
                        raise RelayError(f"subscription closed by {url}: {reason}")
        except (OSError, WebSocketException) as e:
            raise RelayError(f"failed to query {url}: {e}") from e

    def _first_match(self, filter: dict, required: dict[str, str], cancel: threading.Event | None):
        for url in self.relay_urls:
            try:
                events = self.query(url, filter, cancel)
            except RelayError as e:
                logger.warning("could not query %s: %s", url, e)
                continue
            for event in events:
                if _matches_tags(event, required):
                    return event, url
        return None, None

    def check_existing_asset(
        self, identifier: str, version: str, cancel: threading.Event | None = None
    ) -> ExistingAsset | None:
        """Return the first asset event for (identifier, version) with the relay it came from."""
        filter = {"kinds": [KIND_SOFTWARE_ASSET], "#i": [identifier], "#version": [version], "limit": 1}
        event, url = self._first_match(filter, {"i": identifier, "version": version}, cancel)
        if event is None:
            return None
        return ExistingAsset(event=event, relay_url=url, version=event.tag_value("version") or "")

    def check_existing_app(self, identifier: str, cancel: threading.Event | None = None) -> ExistingApp | None:
        """Return the first app metadata event with d tag identifier."""
        filter = {"kinds": [KIND_APP_METADATA], "#d": [identifier], "limit": 1}
        event, url = self._first_match(filter, {"d": identifier}, cancel)
        if event is None:
            return None
        return ExistingApp(event=event, relay_url=url)

    def check_existing_release(
        self, pubkey: str, identifier: str, version: str, cancel: threading.Event | None = None
    ) -> int | None:
        """Return the newest created_at of this author's release identifier@version, or None."""
        d_tag = f"{identifier}@{version}"
        filter = {"kinds": [KIND_RELEASE], "authors": [pubkey], "#d": [d_tag], "limit": 1}

        latest = None
        for url in self.relay_urls:
            try:
                events = self.query(url, filter, cancel)
            except RelayError as e:
                logger.warning("could not query %s: %s", url, e)
                continue
            for event in events:
                if event.pubkey == pubkey and event.tag_value("d") == d_tag:
                    if latest is None or event.created_at > latest:
                        latest = event.created_at
        return latest
