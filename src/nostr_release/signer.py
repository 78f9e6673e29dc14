"""Signer backends.

A signer sets pubkey, id and (except the external signer) sig on events. The
four variants are tagged by SignerKind; only the browser signer is batch
capable.
"""

import logging
import threading
from abc import ABC, abstractmethod
from enum import Enum

from .errors import InvalidSignerError
from .keys import (
    is_valid_hex,
    normalize_private_key,
    normalize_public_key,
    public_key_from_private,
    schnorr_sign,
)
from .models import Event
from .utils import check_cancelled

logger = logging.getLogger(__name__)

# Deterministic test key (private key = 1) for dry runs. Never use for real signing.
# Public key: 79be667ef9dcbbac55a06295ce870b07029bfcdb2dce28d959f2815b16f81798
TEST_NSEC = "nsec1qqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqqsmhltgl"


class SignerKind(Enum):
    LOCAL = "local"
    EXTERNAL = "external"
    BUNKER = "bunker"
    BROWSER = "browser"


class Signer(ABC):
    """Common signer contract.

    Subclasses set kind and, when they can sign many events in one approval,
    batch_capable = True together with a sign_batch(events, cancel) method.
    """

    kind: SignerKind
    batch_capable: bool = False

    @abstractmethod
    def public_key(self) -> str:
        """Hex public key events will be signed with."""

    @abstractmethod
    def sign(self, event: Event, cancel: threading.Event | None = None) -> None:
        """Set pubkey, id and sig on event in place, or raise."""

    def close(self) -> None:
        """Release resources held by the signer."""

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


class LocalKeySigner(Signer):
    """Signs locally with a raw private key."""

    kind = SignerKind.LOCAL

    def __init__(self, private_key: str):
        self._private_key = normalize_private_key(private_key)
        self._public_key = public_key_from_private(self._private_key)

    def public_key(self) -> str:
        return self._public_key

    def sign(self, event: Event, cancel: threading.Event | None = None) -> None:
        check_cancelled(cancel, "signing")
        if not self._private_key:
            raise InvalidSignerError("signer has been closed")
        event.pubkey = self._public_key
        event.id = event.compute_id()
        event.sig = schnorr_sign(self._private_key, event.id)

    def close(self) -> None:
        self._private_key = ""


class ExternalKeySigner(Signer):
    """Prepares events for offline signing: pubkey and id are set, sig stays empty."""

    kind = SignerKind.EXTERNAL

    def __init__(self, public_key: str):
        self._public_key = normalize_public_key(public_key)

    def public_key(self) -> str:
        return self._public_key

    def sign(self, event: Event, cancel: threading.Event | None = None) -> None:
        event.pubkey = self._public_key
        event.id = event.compute_id()
        event.sig = ""


def create_signer(
    sign_with: str,
    port: int | None = None,
    timeout: float | None = None,
    cancel: threading.Event | None = None,
    open_browser: bool = True,
) -> Signer:
    """Create a signer from a SIGN_WITH descriptor.

    CONTRACT:
      Inputs:
        - sign_with: "nsec1...", "npub1...", hex private key, "bunker://...",
          or "browser"
        - port: browser signer port (None for the default port)
        - timeout: seconds to wait for remote/browser approval (None for default)
        - cancel: cancellation signal for connection setup
        - open_browser: whether the browser signer opens a tab automatically

      Outputs:
        - signer: connected Signer instance

      Invariants:
        - Descriptor validation happens before any network I/O
        - Hex keys of up to 64 characters are left-padded to 64

      Raises:
        - InvalidSignerError: descriptor is not recognised
        - InvalidKeyError: key material is malformed
        - BunkerConnectionError, SignerTimeoutError: remote/browser setup failed
    """
    sign_with = (sign_with or "").strip()

    if sign_with.startswith("nsec1"):
        return LocalKeySigner(sign_with)

    if sign_with.startswith("npub1"):
        return ExternalKeySigner(sign_with)

    if sign_with.startswith("bunker://"):
        from .bunker import RemoteBunkerSigner

        kwargs = {"cancel": cancel}
        if timeout is not None:
            kwargs["timeout"] = timeout
        return RemoteBunkerSigner.connect(sign_with, **kwargs)

    if sign_with == "browser":
        from .browser import DEFAULT_PORT, BrowserExtensionSigner

        signer = BrowserExtensionSigner(port=DEFAULT_PORT if port is None else port, open_browser=open_browser)
        if timeout is not None:
            signer.timeout = timeout
        signer.open()
        try:
            signer.request_public_key(cancel=cancel)
        except BaseException:
            signer.close()
            raise
        return signer

    if is_valid_hex(sign_with) and len(sign_with) <= 64:
        return LocalKeySigner(sign_with)

    raise InvalidSignerError(
        "invalid SIGN_WITH format: must be nsec1..., npub1..., hex private key, bunker://..., or browser"
    )
