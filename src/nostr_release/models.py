"""Data models for nostr-release-publish.

Data classes representing events, domain metadata, and operation results.
"""

import hashlib
import json
from dataclasses import dataclass, field
from enum import Enum

KIND_APP_METADATA = 32267
KIND_RELEASE = 30063
KIND_SOFTWARE_ASSET = 3063
KIND_FILE_METADATA_LEGACY = 1063
KIND_BLOSSOM_AUTH = 24242
KIND_NOSTR_CONNECT = 24133

DEFAULT_ASSET_MIME_TYPE = "application/vnd.android.package-archive"


class Channel(str, Enum):
    """Release channel carried in the release "c" tag."""

    MAIN = "main"
    BETA = "beta"
    NIGHTLY = "nightly"
    DEV = "dev"


@dataclass
class Event:
    """Nostr event (NIP-01).

    The id is a pure function of (pubkey, created_at, kind, tags, content) and
    never depends on sig. An unsigned event has id and sig set to "".
    """

    kind: int
    content: str = ""
    tags: list[list[str]] = field(default_factory=list)
    created_at: int = 0
    pubkey: str = ""
    id: str = ""
    sig: str = ""

    def serialize(self) -> bytes:
        """Canonical NIP-01 serialization used as the id preimage."""
        payload = [0, self.pubkey, self.created_at, self.kind, self.tags, self.content]
        return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")

    def compute_id(self) -> str:
        """Return the event id for the current unsigned fields without mutating."""
        return hashlib.sha256(self.serialize()).hexdigest()

    def tag_value(self, name: str) -> str | None:
        """Return the first value of the first tag with the given name."""
        for tag in self.tags:
            if len(tag) >= 2 and tag[0] == name:
                return tag[1]
        return None

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "pubkey": self.pubkey,
            "created_at": self.created_at,
            "kind": self.kind,
            "tags": self.tags,
            "content": self.content,
            "sig": self.sig,
        }

    def to_unsigned_dict(self) -> dict:
        """Fields a remote signer needs; id, pubkey and sig are signer-provided."""
        return {"kind": self.kind, "content": self.content, "tags": self.tags, "created_at": self.created_at}

    @classmethod
    def from_dict(cls, data: dict) -> "Event":
        """Build an Event from wire JSON, coercing tags to lists of strings."""
        tags = [[str(value) for value in tag] for tag in data.get("tags") or []]
        return cls(
            kind=int(data["kind"]),
            content=data.get("content") or "",
            tags=tags,
            created_at=int(data.get("created_at") or 0),
            pubkey=data.get("pubkey") or "",
            id=data.get("id") or "",
            sig=data.get("sig") or "",
        )


@dataclass
class AppMetadata:
    """Software Application metadata (kind 32267)."""

    identifier: str
    name: str
    description: str = ""
    summary: str = ""
    website: str = ""
    license: str = ""
    repository: str = ""
    repository_pointer: str = ""
    repository_relay: str = ""
    tags: list[str] = field(default_factory=list)
    icon_url: str = ""
    image_urls: list[str] = field(default_factory=list)
    platforms: list[str] = field(default_factory=list)
    legacy_format: bool = False
    release_version: str = ""


@dataclass
class ReleaseMetadata:
    """Software Release metadata (kind 30063)."""

    identifier: str
    version: str
    version_code: int = 0
    changelog: str = ""
    channel: Channel | str = Channel.MAIN
    asset_event_ids: list[str] = field(default_factory=list)
    asset_relay_hint: str = ""
    legacy_format: bool = False
    release_url: str = ""
    commit: str = ""


@dataclass
class AssetMetadata:
    """Software Asset metadata (kind 3063, or 1063 in legacy format)."""

    identifier: str
    version: str
    sha256: str
    version_code: int = 0
    size: int = 0
    urls: list[str] = field(default_factory=list)
    mime_type: str = ""
    cert_fingerprint: str = ""
    min_sdk: int = 0
    target_sdk: int = 0
    platforms: list[str] = field(default_factory=list)
    filename: str = ""
    variant: str = ""
    commit: str = ""
    supported_nips: list[str] = field(default_factory=list)
    min_allowed_version: str = ""
    min_allowed_version_code: int = 0
    legacy_format: bool = False


@dataclass
class ArtifactInfo:
    """Per-file metadata supplied by the external artifact parser.

    native_architectures empty means the artifact is architecture independent.
    """

    identifier: str
    version: str
    sha256: str
    size: int = 0
    name: str = ""
    version_code: int = 0
    file_path: str = ""
    mime_type: str = ""
    native_architectures: list[str] = field(default_factory=list)
    platform_prefix: str = "android"
    platforms: list[str] = field(default_factory=list)
    cert_fingerprint: str = ""
    min_sdk: int = 0
    target_sdk: int = 0

    @property
    def is_apk(self) -> bool:
        return self.mime_type in ("", DEFAULT_ASSET_MIME_TYPE) and self.platform_prefix == "android"


@dataclass
class EventSet:
    """App metadata, release and asset events that are signed and published together.

    The release is pending until asset references have been attached; see
    attach_asset_reference / mark_references_attached.
    """

    app_metadata: Event
    release: Event
    assets: list[Event] = field(default_factory=list)
    references_attached: bool = False

    def attach_asset_reference(self, asset_event_id: str, relay_hint: str = "") -> None:
        """Append an "e" reference to the release for one asset id."""
        if self.references_attached:
            raise ValueError("asset references already attached to release")
        if relay_hint:
            self.release.tags.append(["e", asset_event_id, relay_hint])
        else:
            self.release.tags.append(["e", asset_event_id])

    def mark_references_attached(self) -> None:
        self.references_attached = True

    def attach_asset_references(self, asset_event_ids: list[str], relay_hint: str = "") -> None:
        """Attach one reference per asset id, in order, and leave the pending state."""
        for asset_event_id in asset_event_ids:
            self.attach_asset_reference(asset_event_id, relay_hint)
        self.mark_references_attached()

    def all_events(self) -> list[Event]:
        """App metadata, release, then assets (publish and batch-sign order)."""
        return [self.app_metadata, self.release, *self.assets]


@dataclass
class PublishResult:
    """Result of publishing one event to one relay."""

    relay_url: str
    success: bool = False
    error: str | None = None
    is_duplicate: bool = False


@dataclass
class UploadResult:
    """Result of a Blossom upload; existed is True when no bytes were sent."""

    url: str
    sha256: str
    size: int = 0
    mime_type: str = ""
    existed: bool = False


@dataclass
class ExistingAsset:
    """Asset event already present on a relay."""

    event: Event
    relay_url: str
    version: str = ""


@dataclass
class ExistingApp:
    """App metadata event already present on a relay."""

    event: Event
    relay_url: str
