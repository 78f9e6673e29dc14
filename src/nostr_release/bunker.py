"""Remote signer ("bunker") over NIP-46.

The client talks to the remote signer through a relay: requests and
responses are kind 24133 events whose content is NIP-44 encrypted JSON-RPC.
"""

import json
import logging
import os
import secrets
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import parse_qs, urlparse

from websockets.exceptions import WebSocketException
from websockets.sync.client import connect as ws_connect

from . import nip44
from .errors import (
    BunkerConnectionError,
    InvalidSignerError,
    SignatureRejectedError,
    SignerTimeoutError,
    SigningError,
)
from .keys import (
    generate_private_key,
    is_valid_hex,
    is_valid_public_key,
    public_key_from_private,
    schnorr_verify,
    sign_event,
)
from .models import KIND_NOSTR_CONNECT, Event
from .relay import validate_relay_url
from .signer import Signer, SignerKind
from .utils import POLL_INTERVAL, check_cancelled

logger = logging.getLogger(__name__)

# Seconds to wait for the remote signer to answer one request
DEFAULT_TIMEOUT = 120

# Secrets shorter than this are treated as reusable connection tokens
MIN_EPHEMERAL_SECRET_LENGTH = 16

DEFAULT_PERMS = ",".join(
    [
        "get_public_key",
        "sign_event:24242",
        "sign_event:32267",
        "sign_event:30063",
        "sign_event:3063",
        "sign_event:1063",
    ]
)

CONFIG_DIR_NAME = "nostr-release"


@dataclass
class BunkerURL:
    """Parsed bunker://<remote-pubkey>?relay=...&secret=... URL."""

    remote_pubkey: str
    relays: list[str] = field(default_factory=list)
    secret: str = ""


def parse_bunker_url(url: str) -> BunkerURL:
    """Parse a bunker:// connection URL.

    Raises:
        - InvalidSignerError: wrong scheme, bad remote pubkey, no usable relay
    """
    parsed = urlparse(url.strip())
    if parsed.scheme != "bunker":
        raise InvalidSignerError(f"expected bunker:// scheme, got {parsed.scheme or 'none'}://")

    remote_pubkey = (parsed.netloc or parsed.path.lstrip("/")).lower()
    if not remote_pubkey:
        raise InvalidSignerError("missing remote signer pubkey in bunker URL")
    if not is_valid_public_key(remote_pubkey):
        raise InvalidSignerError(f"invalid remote signer pubkey in bunker URL: {remote_pubkey}")

    query = parse_qs(parsed.query)
    relays = []
    for relay in query.get("relay", []):
        relay = relay.strip()
        if validate_relay_url(relay) and relay not in relays:
            relays.append(relay)
    if not relays:
        raise InvalidSignerError("bunker URL has no ws:// or wss:// relay")

    secret = query.get("secret", [""])[0]
    return BunkerURL(remote_pubkey=remote_pubkey, relays=relays, secret=secret)


def config_dir() -> Path:
    """Per-user configuration directory ($XDG_CONFIG_HOME or ~/.config)."""
    base = os.environ.get("XDG_CONFIG_HOME") or os.path.join(os.path.expanduser("~"), ".config")
    return Path(base) / CONFIG_DIR_NAME


def bunker_key_path(remote_pubkey: str, base_dir: Path | None = None) -> Path:
    """Location of the persisted client key for one remote signer."""
    return (base_dir or config_dir()) / "bunker-keys" / f"{remote_pubkey}.key"


def uses_persistent_client_key(secret: str) -> bool:
    """Return True when the client key must survive across runs.

    A missing or short secret is a reusable token: the remote signer
    recognises the client by its key, so the key is kept. A long random
    secret authorizes a one-off connection and an ephemeral key suffices.
    """
    return len(secret) < MIN_EPHEMERAL_SECRET_LENGTH


def load_or_create_client_key(remote_pubkey: str, base_dir: Path | None = None) -> str:
    """Return the persisted client key for remote_pubkey, creating it if needed.

    The key file holds one hex line and is written with mode 0600. An
    unreadable or malformed file is replaced with a fresh key.
    """
    path = bunker_key_path(remote_pubkey, base_dir)

    try:
        key = path.read_text().strip()
    except FileNotFoundError:
        key = ""
    if len(key) == 64 and is_valid_hex(key):
        return key.lower()

    key = generate_private_key()
    path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        f.write(key + "\n")
    os.chmod(path, 0o600)
    logger.debug("stored bunker client key at %s", path)
    return key


def client_key_for(bunker: BunkerURL, base_dir: Path | None = None) -> str:
    """Select the client key according to the secret's entropy."""
    if uses_persistent_client_key(bunker.secret):
        return load_or_create_client_key(bunker.remote_pubkey, base_dir)
    return generate_private_key()


class RemoteBunkerSigner(Signer):
    """Signs through a NIP-46 remote signer reached over one relay.

    CONTRACT:
      Inputs:
        - remote_pubkey: remote signer's hex pubkey (the RPC peer)
        - client_key: hex private key of this client
        - ws: open websocket connection to the relay
        - user_pubkey: pubkey events are signed with (from get_public_key)
        - timeout: seconds to wait for each response

      Invariants:
        - One request in flight at a time
        - Every signed event is re-verified before it is accepted
        - auth_url responses are reported and waiting continues
    """

    kind = SignerKind.BUNKER

    def __init__(
        self,
        remote_pubkey: str,
        client_key: str,
        ws,
        relay_url: str = "",
        user_pubkey: str = "",
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.remote_pubkey = remote_pubkey
        self.relay_url = relay_url
        self.timeout = timeout
        self._client_key = client_key
        self._client_pubkey = public_key_from_private(client_key)
        self._conversation_key = nip44.conversation_key(client_key, remote_pubkey)
        self._ws = ws
        self._user_pubkey = user_pubkey
        self._subscription_id = secrets.token_hex(8)
        self._lock = threading.Lock()
        self._subscribed = False

    @classmethod
    def connect(
        cls,
        url: str,
        timeout: float = DEFAULT_TIMEOUT,
        cancel: threading.Event | None = None,
        connect=ws_connect,
        base_dir: Path | None = None,
        perms: str = DEFAULT_PERMS,
    ) -> "RemoteBunkerSigner":
        """Connect to the bunker described by url and fetch the user pubkey.

        The first reachable relay listed in the URL is used.

        Raises:
            - InvalidSignerError: malformed bunker URL
            - BunkerConnectionError: no relay reachable or handshake refused
            - SignerTimeoutError, OperationCancelledError
        """
        bunker = parse_bunker_url(url)
        client_key = client_key_for(bunker, base_dir)

        ws, relay_url = None, ""
        errors = []
        for relay in bunker.relays:
            check_cancelled(cancel, "bunker connection")
            try:
                ws = connect(relay, open_timeout=min(timeout, 30), close_timeout=2)
            except (OSError, WebSocketException) as e:
                errors.append(f"{relay}: {e}")
                continue
            relay_url = relay
            break
        if ws is None:
            raise BunkerConnectionError("could not reach any bunker relay: " + "; ".join(errors))

        signer = cls(bunker.remote_pubkey, client_key, ws, relay_url=relay_url, timeout=timeout)
        try:
            signer._handshake(bunker.secret, perms, cancel)
        except BaseException:
            signer.close()
            raise
        return signer

    def _handshake(self, secret: str, perms: str, cancel: threading.Event | None) -> None:
        try:
            self._rpc("connect", [self.remote_pubkey, secret, perms], cancel)
        except SigningError as e:
            if "already connected" not in str(e):
                raise BunkerConnectionError(f"failed to connect to bunker: {e}") from e

        try:
            pubkey = self._rpc("get_public_key", [], cancel)
        except SigningError as e:
            message = f"failed to get public key from bunker: {e}"
            if "no permission" in str(e):
                message += (
                    "\n\nThis bunker URL's secret appears to have been used by another client."
                    "\nGenerate a new bunker connection URL from your signer."
                )
            raise BunkerConnectionError(message) from e

        pubkey = pubkey.strip().lower()
        if not is_valid_public_key(pubkey):
            raise BunkerConnectionError(f"bunker returned an invalid public key: {pubkey!r}")
        self._user_pubkey = pubkey
        logger.info("connected to bunker %s via %s", self.remote_pubkey, self.relay_url)

    def public_key(self) -> str:
        return self._user_pubkey

    def sign(self, event: Event, cancel: threading.Event | None = None) -> None:
        """Have the remote signer sign event, then verify and apply the result."""
        if self._ws is None:
            raise InvalidSignerError("signer has been closed")

        event.pubkey = self._user_pubkey
        expected_id = event.compute_id()
        unsigned = event.to_unsigned_dict()
        unsigned["pubkey"] = self._user_pubkey

        result = self._rpc("sign_event", [json.dumps(unsigned, ensure_ascii=False)], cancel)
        try:
            data = json.loads(result)
        except (TypeError, ValueError) as e:
            raise SignatureRejectedError(f"bunker returned a malformed event: {e}") from e
        if not isinstance(data, dict):
            raise SignatureRejectedError(f"bunker returned a malformed event: {type(data).__name__} is not an object")
        try:
            signed = Event.from_dict(data)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise SignatureRejectedError(f"bunker returned a malformed event: {e}") from e

        if signed.pubkey != self._user_pubkey:
            raise SignatureRejectedError("bunker signed with an unexpected public key")
        if signed.id != expected_id:
            raise SignatureRejectedError("bunker returned an event with a different id")
        if not schnorr_verify(signed.pubkey, signed.id, signed.sig):
            raise SignatureRejectedError("bunker returned an invalid signature")

        event.id = signed.id
        event.sig = signed.sig

    def close(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                ws.close()
            except (OSError, WebSocketException) as e:
                logger.debug("error closing bunker connection: %s", e)
        self._client_key = ""

    def _subscribe(self) -> None:
        since = int(time.time()) - 10
        request_filter = {"kinds": [KIND_NOSTR_CONNECT], "#p": [self._client_pubkey], "since": since}
        self._ws.send(json.dumps(["REQ", self._subscription_id, request_filter]))
        self._subscribed = True

    def _request_event(self, payload: dict) -> Event:
        event = Event(
            kind=KIND_NOSTR_CONNECT,
            content=nip44.encrypt(json.dumps(payload, ensure_ascii=False), self._conversation_key),
            tags=[["p", self.remote_pubkey]],
            created_at=int(time.time()),
        )
        return sign_event(event, self._client_key)

    def _rpc(self, method: str, params: list[str], cancel: threading.Event | None) -> str:
        """Send one request and return the result string.

        Raises:
            - SigningError: the remote signer answered with an error
            - BunkerConnectionError: relay rejected the request or dropped
            - SignerTimeoutError: no response within timeout
        """
        with self._lock:
            if self._ws is None:
                raise InvalidSignerError("signer has been closed")
            request_id = secrets.token_hex(8)
            try:
                if not self._subscribed:
                    self._subscribe()
                request = self._request_event({"id": request_id, "method": method, "params": params})
                self._ws.send(json.dumps(["EVENT", request.to_dict()], ensure_ascii=False))
                return self._await_response(request_id, request.id, method, cancel)
            except (OSError, WebSocketException) as e:
                raise BunkerConnectionError(f"bunker relay connection failed during {method}: {e}") from e

    def _await_response(
        self, request_id: str, request_event_id: str, method: str, cancel: threading.Event | None
    ) -> str:
        deadline = time.monotonic() + self.timeout
        while True:
            check_cancelled(cancel, f"bunker {method}")
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise SignerTimeoutError(f"timed out after {self.timeout:g}s waiting for bunker {method}")
            try:
                raw = self._ws.recv(timeout=min(POLL_INTERVAL, remaining))
            except TimeoutError:
                continue

            try:
                message = json.loads(raw)
            except (TypeError, ValueError):
                continue
            if not isinstance(message, list) or len(message) < 2:
                continue

            if message[0] == "OK" and message[1] == request_event_id:
                if len(message) > 2 and not message[2]:
                    reason = message[3] if len(message) > 3 else ""
                    raise BunkerConnectionError(f"relay rejected bunker request: {reason}")
                continue
            if message[0] == "NOTICE":
                logger.info("bunker relay notice: %s", message[1])
                continue
            if message[0] != "EVENT" or message[1] != self._subscription_id or len(message) < 3:
                continue

            response = self._decode_response(message[2])
            if response is None or response.get("id") != request_id:
                continue

            result = response.get("result") or ""
            error = response.get("error") or ""
            if result == "auth_url":
                # The remote signer wants the user to approve in a browser
                logger.warning("bunker requires authorization: %s", error)
                continue
            if error:
                raise SigningError(f"bunker {method} failed: {error}")
            return result

    def _decode_response(self, data) -> dict | None:
        try:
            event = Event.from_dict(data)
        except (KeyError, TypeError, ValueError):
            return None
        if event.kind != KIND_NOSTR_CONNECT or event.pubkey != self.remote_pubkey:
            return None
        try:
            response = json.loads(nip44.decrypt(event.content, self._conversation_key))
        except (nip44.Nip44Error, UnicodeDecodeError, ValueError) as e:
            logger.debug("ignoring undecryptable bunker message: %s", e)
            return None
        return response if isinstance(response, dict) else None
