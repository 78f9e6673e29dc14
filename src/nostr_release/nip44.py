"""NIP-44 version 2 payload encryption.

Used to encrypt remote signer (NIP-46) requests and responses. Conversation
keys come from secp256k1 ECDH; messages are padded, encrypted with ChaCha20
and authenticated with HMAC-SHA256.
"""

import base64
import hashlib
import hmac
import math
import os

from coincurve import PrivateKey, PublicKey
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms
from cryptography.hazmat.primitives.kdf.hkdf import HKDFExpand

VERSION = 2
SALT = b"nip44-v2"
MIN_PLAINTEXT_SIZE = 1
MAX_PLAINTEXT_SIZE = 65535


class Nip44Error(ValueError):
    """Payload could not be encrypted or decrypted."""


def conversation_key(private_key: str, public_key: str) -> bytes:
    """Derive the shared conversation key for a (private, x-only public) key pair.

    The key is symmetric: conversation_key(a, B) == conversation_key(b, A).
    """
    point = PublicKey(b"\x02" + bytes.fromhex(public_key))
    shared = point.multiply(PrivateKey(bytes.fromhex(private_key)).secret)
    shared_x = shared.format(compressed=True)[1:]
    return hmac.new(SALT, shared_x, hashlib.sha256).digest()


def calc_padded_len(unpadded_len: int) -> int:
    """Padded plaintext length for a message of unpadded_len bytes."""
    if unpadded_len <= 32:
        return 32
    next_power = 1 << (math.floor(math.log2(unpadded_len - 1)) + 1)
    chunk = 32 if next_power <= 256 else next_power // 8
    return chunk * ((unpadded_len - 1) // chunk + 1)


def _pad(plaintext: str) -> bytes:
    data = plaintext.encode("utf-8")
    if not MIN_PLAINTEXT_SIZE <= len(data) <= MAX_PLAINTEXT_SIZE:
        raise Nip44Error(f"invalid plaintext length: {len(data)}")
    prefix = len(data).to_bytes(2, "big")
    return prefix + data + b"\x00" * (calc_padded_len(len(data)) - len(data))


def _unpad(padded: bytes) -> str:
    unpadded_len = int.from_bytes(padded[:2], "big")
    data = padded[2 : 2 + unpadded_len]
    if (
        unpadded_len == 0
        or len(data) != unpadded_len
        or len(padded) != 2 + calc_padded_len(unpadded_len)
    ):
        raise Nip44Error("invalid padding")
    return data.decode("utf-8")


def _message_keys(conv_key: bytes, nonce: bytes) -> tuple[bytes, bytes, bytes]:
    expanded = HKDFExpand(algorithm=hashes.SHA256(), length=76, info=nonce).derive(conv_key)
    return expanded[0:32], expanded[32:44], expanded[44:76]


def _chacha20(key: bytes, nonce: bytes, data: bytes) -> bytes:
    # cryptography expects a 4-byte little-endian counter followed by the 12-byte nonce
    cipher = Cipher(algorithms.ChaCha20(key, b"\x00\x00\x00\x00" + nonce), mode=None)
    return cipher.encryptor().update(data)


def _hmac_aad(key: bytes, message: bytes, aad: bytes) -> bytes:
    return hmac.new(key, aad + message, hashlib.sha256).digest()


def encrypt(plaintext: str, conv_key: bytes, nonce: bytes | None = None) -> str:
    """Encrypt plaintext into a base64 NIP-44 v2 payload."""
    nonce = nonce if nonce is not None else os.urandom(32)
    if len(nonce) != 32:
        raise Nip44Error("nonce must be 32 bytes")

    chacha_key, chacha_nonce, hmac_key = _message_keys(conv_key, nonce)
    ciphertext = _chacha20(chacha_key, chacha_nonce, _pad(plaintext))
    mac = _hmac_aad(hmac_key, ciphertext, nonce)
    return base64.b64encode(bytes([VERSION]) + nonce + ciphertext + mac).decode("ascii")


def decrypt(payload: str, conv_key: bytes) -> str:
    """Decrypt a base64 NIP-44 v2 payload.

    Raises:
        - Nip44Error: unknown version, malformed payload or MAC mismatch
    """
    if not payload or payload.startswith("#"):
        raise Nip44Error("unknown encryption version")

    try:
        data = base64.b64decode(payload, validate=True)
    except ValueError as e:
        raise Nip44Error(f"invalid base64: {e}") from None

    if len(data) < 99 or data[0] != VERSION:
        raise Nip44Error("invalid payload")

    nonce, ciphertext, mac = data[1:33], data[33:-32], data[-32:]
    chacha_key, chacha_nonce, hmac_key = _message_keys(conv_key, nonce)

    if not hmac.compare_digest(_hmac_aad(hmac_key, ciphertext, nonce), mac):
        raise Nip44Error("invalid MAC")

    return _unpad(_chacha20(chacha_key, chacha_nonce, ciphertext))
