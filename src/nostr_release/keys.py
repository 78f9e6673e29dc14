"""Key handling: NIP-19 bech32 entities and BIP-340 Schnorr signatures.

Keys travel through the package as lowercase hex strings. Private keys are
32-byte scalars, public keys are 32-byte x-only points.
"""

import secrets
import string

import bech32
from coincurve import PrivateKey, PublicKeyXOnly

from .errors import InvalidKeyError
from .models import Event

HEX_DIGITS = frozenset(string.hexdigits)


def is_valid_hex(value: str) -> bool:
    """Return True if value is a non-empty hexadecimal string."""
    return bool(value) and all(c in HEX_DIGITS for c in value)


def is_valid_public_key(value: str) -> bool:
    """Return True if value is 64 hex characters encoding a valid x-only point."""
    if not isinstance(value, str) or len(value) != 64 or not is_valid_hex(value):
        return False
    try:
        PublicKeyXOnly(bytes.fromhex(value))
    except ValueError:
        return False
    return True


def decode_nip19(value: str) -> tuple[str, str]:
    """Decode an npub/nsec bech32 string into (prefix, hex payload).

    CONTRACT:
      Inputs:
        - value: bech32 string such as "npub1..." or "nsec1..."

      Outputs:
        - (prefix, hex): human readable part and 64-character lowercase hex

      Invariants:
        - Only 32-byte payloads are accepted (npub, nsec)
        - Checksum failures and padding errors raise InvalidKeyError

      Raises:
        - InvalidKeyError: malformed bech32 or wrong payload length
    """
    prefix, data = bech32.bech32_decode(value.strip().lower())
    if prefix is None or data is None:
        raise InvalidKeyError("invalid bech32 encoding")

    decoded = bech32.convertbits(data, 5, 8, False)
    if decoded is None or len(decoded) != 32:
        raise InvalidKeyError(f"invalid {prefix} payload length")

    return prefix, bytes(decoded).hex()


def encode_nip19(prefix: str, hex_value: str) -> str:
    """Encode a 32-byte hex value as a bech32 string with the given prefix."""
    if len(hex_value) != 64 or not is_valid_hex(hex_value):
        raise InvalidKeyError(f"expected 64 hex characters for {prefix}")
    data = bech32.convertbits(bytes.fromhex(hex_value), 8, 5, True)
    return bech32.bech32_encode(prefix, data)


def normalize_private_key(value: str) -> str:
    """Return the hex private key for an nsec or hex string.

    Hex keys shorter than 64 characters are left-padded with zeros.

    Raises:
        - InvalidKeyError: not an nsec, not hex, or scalar out of range
    """
    value = value.strip()

    if value.startswith("nsec1"):
        prefix, hex_key = decode_nip19(value)
        if prefix != "nsec":
            raise InvalidKeyError(f"expected nsec, got {prefix}")
    elif is_valid_hex(value) and len(value) <= 64:
        hex_key = value.lower().rjust(64, "0")
    else:
        raise InvalidKeyError("private key must be nsec1... or hex")

    # Raises on zero or a scalar >= curve order
    try:
        PrivateKey(bytes.fromhex(hex_key))
    except ValueError as e:
        raise InvalidKeyError(f"private key out of range: {e}") from None

    return hex_key


def normalize_public_key(value: str) -> str:
    """Return the hex public key for an npub or hex string."""
    value = value.strip()

    if value.startswith("npub1"):
        prefix, hex_key = decode_nip19(value)
        if prefix != "npub":
            raise InvalidKeyError(f"expected npub, got {prefix}")
    else:
        hex_key = value.lower()

    if not is_valid_public_key(hex_key):
        raise InvalidKeyError("invalid public key")

    return hex_key


def generate_private_key() -> str:
    """Generate a random valid private key (hex)."""
    while True:
        candidate = secrets.token_bytes(32)
        try:
            PrivateKey(candidate)
        except ValueError:
            continue
        return candidate.hex()


def public_key_from_private(private_key: str) -> str:
    """Derive the x-only public key (hex) from a hex private key."""
    try:
        key = PrivateKey(bytes.fromhex(private_key))
    except ValueError as e:
        raise InvalidKeyError(f"failed to derive public key: {e}") from None
    return key.public_key_xonly.format().hex()


def schnorr_sign(private_key: str, event_id: str) -> str:
    """Sign a 32-byte event id with BIP-340, without auxiliary randomness."""
    key = PrivateKey(bytes.fromhex(private_key))
    return key.sign_schnorr(bytes.fromhex(event_id)).hex()


def schnorr_verify(public_key: str, event_id: str, signature: str) -> bool:
    """Return True if signature is a valid BIP-340 signature of event_id."""
    try:
        xonly = PublicKeyXOnly(bytes.fromhex(public_key))
        sig = bytes.fromhex(signature)
        message = bytes.fromhex(event_id)
    except ValueError:
        return False
    if len(sig) != 64 or len(message) != 32:
        return False
    return xonly.verify(sig, message)


def sign_event(event: Event, private_key: str) -> Event:
    """Set pubkey, id and sig on event in place and return it."""
    event.pubkey = public_key_from_private(private_key)
    event.id = event.compute_id()
    event.sig = schnorr_sign(private_key, event.id)
    return event


def verify_event(event: Event) -> bool:
    """Return True if the event id matches its fields and the signature verifies."""
    if not event.sig or event.id != event.compute_id():
        return False
    return schnorr_verify(event.pubkey, event.id, event.sig)


# naddr TLV record types (NIP-19)
TLV_SPECIAL = 0
TLV_RELAY = 1
TLV_AUTHOR = 2
TLV_KIND = 3


def encode_naddr(pubkey: str, kind: int, identifier: str, relays: list[str] | None = None) -> str:
    """Encode an addressable event pointer as a NIP-19 naddr.

    CONTRACT:
      Inputs:
        - pubkey: author hex public key (64 characters)
        - kind: addressable event kind
        - identifier: d tag value (may be empty)
        - relays: optional relay hints

      Outputs:
        - naddr: bech32 string with "naddr1" prefix

      Properties:
        - Deterministic and reversible through decode_naddr
    """
    if len(pubkey) != 64 or not is_valid_hex(pubkey):
        raise InvalidKeyError(f"pubkey must be 64 hex characters, got {len(pubkey)}")

    tlv = bytearray()
    records = [(TLV_SPECIAL, identifier.encode("utf-8"))]
    records += [(TLV_RELAY, relay.encode("utf-8")) for relay in relays or []]
    records += [(TLV_AUTHOR, bytes.fromhex(pubkey)), (TLV_KIND, kind.to_bytes(4, "big"))]
    for tlv_type, value in records:
        if len(value) > 255:
            raise InvalidKeyError("naddr record longer than 255 bytes")
        tlv += bytes([tlv_type, len(value)]) + value

    data = bech32.convertbits(bytes(tlv), 8, 5, True)
    # naddr routinely exceeds the 90 character BIP-173 limit, bech32_encode does not enforce it
    return bech32.bech32_encode("naddr", data)


def decode_naddr(value: str) -> tuple[str, int, str, list[str]]:
    """Decode a NIP-19 naddr into (pubkey, kind, identifier, relays).

    Raises:
        - InvalidKeyError: not an naddr, bad checksum or missing records
    """
    prefix, data = _bech32_decode_long(value.strip().lower())
    if prefix != "naddr" or data is None:
        raise InvalidKeyError("invalid naddr encoding")

    decoded = bech32.convertbits(data, 5, 8, False)
    if decoded is None:
        raise InvalidKeyError("invalid naddr payload")

    raw = bytes(decoded)
    pubkey, kind, identifier, relays = "", None, None, []
    i = 0
    while i + 2 <= len(raw):
        tlv_type, length = raw[i], raw[i + 1]
        record = raw[i + 2 : i + 2 + length]
        if len(record) != length:
            raise InvalidKeyError("truncated naddr record")
        if tlv_type == TLV_SPECIAL:
            identifier = record.decode("utf-8")
        elif tlv_type == TLV_RELAY:
            relays.append(record.decode("utf-8"))
        elif tlv_type == TLV_AUTHOR and length == 32:
            pubkey = record.hex()
        elif tlv_type == TLV_KIND and length == 4:
            kind = int.from_bytes(record, "big")
        i += 2 + length

    if not pubkey or kind is None or identifier is None:
        raise InvalidKeyError("naddr is missing author, kind or identifier")
    return pubkey, kind, identifier, relays


def _bech32_decode_long(value: str) -> tuple[str | None, list[int] | None]:
    # bech32.bech32_decode rejects strings over 90 characters, which long naddrs exceed
    if any(ord(c) < 33 or ord(c) > 126 for c in value) or "1" not in value:
        return None, None
    pos = value.rfind("1")
    prefix, payload = value[:pos], value[pos + 1 :]
    if pos < 1 or len(payload) < 6 or any(c not in bech32.CHARSET for c in payload):
        return None, None
    data = [bech32.CHARSET.find(c) for c in payload]
    if not bech32.bech32_verify_checksum(prefix, data):
        return None, None
    return prefix, data[:-6]
