"""Exception hierarchy for nostr-release-publish.

All errors raised by the package derive from NostrReleaseError so the CLI can
report them uniformly.
"""


class NostrReleaseError(Exception):
    """Base class for all package errors."""


class ValidationError(NostrReleaseError):
    """Malformed input detected before any network I/O."""


class InvalidKeyError(ValidationError):
    """Key material could not be decoded or is out of range."""


class InvalidSignerError(ValidationError):
    """Signer descriptor (SIGN_WITH value) is not recognised."""


class InvalidRelayURLError(ValidationError):
    """Relay URL is not a ws:// or wss:// URL."""


class InvalidMetadataError(ValidationError):
    """Domain metadata is missing required fields or is inconsistent."""


class ConfigError(ValidationError):
    """Configuration or manifest could not be loaded."""


class TransportError(NostrReleaseError):
    """A network endpoint could not be reached or answered with an error."""


class RelayError(TransportError):
    """Relay connection, publish or query failure."""


class BlossomUploadError(TransportError):
    """Blossom existence check or upload failure."""


class BunkerConnectionError(TransportError):
    """Remote signer could not be reached or refused the handshake."""


class SigningError(NostrReleaseError):
    """Signer failed or refused to sign an event."""


class SignatureRejectedError(SigningError):
    """A returned signature, id or pubkey failed independent verification."""


class SignerBusyError(SigningError):
    """A signing request is already outstanding on this signer."""


class EventSetSigningError(SigningError):
    """One event of an event set failed to sign; the whole set is aborted."""


class SignerTimeoutError(NostrReleaseError):
    """Signer approval was not received in time."""


class OperationCancelledError(NostrReleaseError):
    """The caller's cancellation signal was set during a blocking call."""
