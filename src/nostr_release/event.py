"""Software release event construction.

Deterministic unsigned event generation for app metadata, release, asset and
Blossom upload authorization events, in current and legacy formats.
"""

import os
import time
from dataclasses import dataclass, field

from .errors import InvalidMetadataError
from .models import (
    DEFAULT_ASSET_MIME_TYPE,
    KIND_APP_METADATA,
    KIND_BLOSSOM_AUTH,
    KIND_FILE_METADATA_LEGACY,
    KIND_RELEASE,
    KIND_SOFTWARE_ASSET,
    AppMetadata,
    ArtifactInfo,
    AssetMetadata,
    Channel,
    Event,
    EventSet,
    ReleaseMetadata,
)

# Platforms listed when an Android artifact carries no native libraries
GENERIC_ANDROID_PLATFORMS = [
    "android-arm64-v8a",
    "android-armeabi-v7a",
    "android-x86",
    "android-x86_64",
]

# Upload authorization lifetime in seconds
AUTH_EXPIRATION = 5 * 60


def _now() -> int:
    return int(time.time())


def build_app_metadata(meta: AppMetadata, pubkey: str, created_at: int | None = None) -> Event:
    """Construct unsigned Software Application event (kind 32267).

    CONTRACT:
      Inputs:
        - meta: AppMetadata instance
        - pubkey: hex public key of the publisher (used by the legacy a-tag)
        - created_at: unix seconds, defaults to current time

      Outputs:
        - event: unsigned Event with kind 32267, content = description

      Invariants:
        - Current format order: d, name, summary, icon, image*, t*, url,
          repository, a, f*, license
        - Legacy format order: name, d, summary, repository, url, f*, t*,
          license, icon, image*, a (pointer to the release)
        - Empty optional fields emit no tag

      Properties:
        - Deterministic: same meta, pubkey and created_at yield identical event
    """
    tags = []

    if meta.legacy_format:
        tags.append(["name", meta.name])
        tags.append(["d", meta.identifier])
        if meta.summary:
            tags.append(["summary", meta.summary])
        if meta.repository:
            tags.append(["repository", meta.repository])
        if meta.website:
            tags.append(["url", meta.website])
        for platform in meta.platforms:
            tags.append(["f", platform])
        for category in meta.tags:
            tags.append(["t", category])
        if meta.license:
            tags.append(["license", meta.license])
        if meta.icon_url:
            tags.append(["icon", meta.icon_url])
        for url in meta.image_urls:
            tags.append(["image", url])
        # Legacy clients locate the latest release through this pointer
        if meta.release_version:
            tags.append(["a", f"{KIND_RELEASE}:{pubkey}:{meta.identifier}@{meta.release_version}"])
    else:
        tags.append(["d", meta.identifier])
        tags.append(["name", meta.name])
        if meta.summary:
            tags.append(["summary", meta.summary])
        if meta.icon_url:
            tags.append(["icon", meta.icon_url])
        for url in meta.image_urls:
            tags.append(["image", url])
        for category in meta.tags:
            tags.append(["t", category])
        if meta.website:
            tags.append(["url", meta.website])
        if meta.repository:
            tags.append(["repository", meta.repository])
        if meta.repository_pointer:
            if meta.repository_relay:
                tags.append(["a", meta.repository_pointer, meta.repository_relay])
            else:
                tags.append(["a", meta.repository_pointer])
        for platform in meta.platforms:
            tags.append(["f", platform])
        if meta.license:
            tags.append(["license", meta.license])

    return Event(
        kind=KIND_APP_METADATA,
        pubkey=pubkey,
        created_at=_now() if created_at is None else created_at,
        tags=tags,
        content=meta.description,
    )


def build_release(meta: ReleaseMetadata, pubkey: str, created_at: int | None = None) -> Event:
    """Construct unsigned Software Release event (kind 30063).

    Asset references ("e" tags) are emitted for meta.asset_event_ids. When the
    asset ids are not yet known the list is empty and references are attached
    later through EventSet.attach_asset_reference.

    Current format order: i, version, d, c, e*. Legacy format order: url, r,
    commit, d, e*, a (pointer back to the app); references attached later
    land after the a tag.
    """
    tags = []

    if meta.legacy_format:
        if meta.release_url:
            tags.append(["url", meta.release_url])
            tags.append(["r", meta.release_url])
        if meta.commit:
            tags.append(["commit", meta.commit])
        tags.append(["d", f"{meta.identifier}@{meta.version}"])
        tags.extend(_asset_references(meta.asset_event_ids, meta.asset_relay_hint))
        tags.append(["a", f"{KIND_APP_METADATA}:{pubkey}:{meta.identifier}"])
    else:
        channel = meta.channel.value if isinstance(meta.channel, Channel) else meta.channel
        tags.append(["i", meta.identifier])
        tags.append(["version", meta.version])
        tags.append(["d", f"{meta.identifier}@{meta.version}"])
        tags.append(["c", channel or Channel.MAIN.value])
        tags.extend(_asset_references(meta.asset_event_ids, meta.asset_relay_hint))

    return Event(
        kind=KIND_RELEASE,
        pubkey=pubkey,
        created_at=_now() if created_at is None else created_at,
        tags=tags,
        content=meta.changelog,
    )


def _asset_references(event_ids: list[str], relay_hint: str) -> list[list[str]]:
    if relay_hint:
        return [["e", event_id, relay_hint] for event_id in event_ids]
    return [["e", event_id] for event_id in event_ids]


def build_asset(meta: AssetMetadata, pubkey: str, created_at: int | None = None) -> Event:
    """Construct unsigned Software Asset event (kind 3063, legacy kind 1063).

    CONTRACT:
      Inputs:
        - meta: AssetMetadata instance (sha256 and version required)
        - pubkey: hex public key of the publisher
        - created_at: unix seconds, defaults to current time

      Outputs:
        - event: unsigned Event

      Invariants:
        - Current format: kind 3063, empty content, tag order i, x, version,
          url*, m, size, f*, min_platform_version, target_platform_version,
          filename, variant, commit, supported_nip*, version_code,
          min_allowed_version, min_allowed_version_code, apk_certificate_hash
        - Legacy format: kind 1063, content "<identifier>@<version>", tag order
          f*, apk_signature_hash, version, version_code, min_sdk_version,
          target_sdk_version, m, x, size, url*
        - Zero-valued numbers and empty strings emit no tag
        - MIME type defaults to the APK MIME type
    """
    tags = []
    mime_type = meta.mime_type or DEFAULT_ASSET_MIME_TYPE

    if meta.legacy_format:
        for platform in meta.platforms:
            tags.append(["f", platform])
        if meta.cert_fingerprint:
            tags.append(["apk_signature_hash", meta.cert_fingerprint])
        tags.append(["version", meta.version])
        if meta.version_code > 0:
            tags.append(["version_code", str(meta.version_code)])
        if meta.min_sdk > 0:
            tags.append(["min_sdk_version", str(meta.min_sdk)])
        if meta.target_sdk > 0:
            tags.append(["target_sdk_version", str(meta.target_sdk)])
        tags.append(["m", mime_type])
        tags.append(["x", meta.sha256])
        if meta.size > 0:
            tags.append(["size", str(meta.size)])
        for url in meta.urls:
            tags.append(["url", url])

        return Event(
            kind=KIND_FILE_METADATA_LEGACY,
            pubkey=pubkey,
            created_at=_now() if created_at is None else created_at,
            tags=tags,
            content=f"{meta.identifier}@{meta.version}",
        )

    tags.append(["i", meta.identifier])
    tags.append(["x", meta.sha256])
    tags.append(["version", meta.version])
    for url in meta.urls:
        tags.append(["url", url])
    tags.append(["m", mime_type])
    if meta.size > 0:
        tags.append(["size", str(meta.size)])
    for platform in meta.platforms:
        tags.append(["f", platform])
    if meta.min_sdk > 0:
        tags.append(["min_platform_version", str(meta.min_sdk)])
    if meta.target_sdk > 0:
        tags.append(["target_platform_version", str(meta.target_sdk)])
    if meta.filename:
        tags.append(["filename", meta.filename])
    if meta.variant:
        tags.append(["variant", meta.variant])
    if meta.commit:
        tags.append(["commit", meta.commit])
    for nip in meta.supported_nips:
        tags.append(["supported_nip", nip])
    if meta.version_code > 0:
        tags.append(["version_code", str(meta.version_code)])
    if meta.min_allowed_version:
        tags.append(["min_allowed_version", meta.min_allowed_version])
    if meta.min_allowed_version_code > 0:
        tags.append(["min_allowed_version_code", str(meta.min_allowed_version_code)])
    if meta.cert_fingerprint:
        tags.append(["apk_certificate_hash", meta.cert_fingerprint])

    return Event(
        kind=KIND_SOFTWARE_ASSET,
        pubkey=pubkey,
        created_at=_now() if created_at is None else created_at,
        tags=tags,
        content="",
    )


def build_upload_auth(file_hash: str, pubkey: str, expiration: int, created_at: int | None = None) -> Event:
    """Construct unsigned Blossom upload authorization event (kind 24242).

    The event authorizes a single upload of the blob identified by file_hash
    until the expiration timestamp.
    """
    return Event(
        kind=KIND_BLOSSOM_AUTH,
        pubkey=pubkey,
        created_at=_now() if created_at is None else created_at,
        tags=[["t", "upload"], ["x", file_hash], ["expiration", str(expiration)]],
        content=f"Upload {file_hash}",
    )


def auth_expiration(now: int | None = None) -> int:
    """Expiration timestamp for an upload authorization created now."""
    return (_now() if now is None else now) + AUTH_EXPIRATION


def platforms_for_artifact(artifact: ArtifactInfo) -> list[str]:
    """Return platform identifiers for an artifact.

    Explicit platforms win. Otherwise native architectures map to
    "<prefix>-<arch>"; an Android artifact without native code is treated as
    architecture independent and lists every generic Android platform.
    """
    if artifact.platforms:
        return list(artifact.platforms)

    platforms = [f"{artifact.platform_prefix}-{arch}" for arch in artifact.native_architectures]
    if not platforms and artifact.platform_prefix == "android":
        platforms = list(GENERIC_ANDROID_PLATFORMS)
    return platforms


@dataclass
class AssetBuildParams:
    """Per-asset inputs for build_event_set."""

    artifact: ArtifactInfo
    original_url: str = ""
    variant: str = ""
    identifier: str = ""


@dataclass
class EventSetParams:
    """Inputs for build_event_set.

    identifier overrides the app identifier; each asset's identifier defaults
    to its artifact identifier unless AssetBuildParams.identifier is set.
    """

    assets: list[AssetBuildParams]
    pubkey: str
    identifier: str = ""
    name: str = ""
    description: str = ""
    summary: str = ""
    website: str = ""
    license: str = ""
    repository: str = ""
    repository_pointer: str = ""
    repository_relay: str = ""
    categories: list[str] = field(default_factory=list)
    icon_url: str = ""
    image_urls: list[str] = field(default_factory=list)
    changelog: str = ""
    channel: Channel | str = Channel.MAIN
    commit: str = ""
    release_url: str = ""
    blossom_server: str = ""
    supported_nips: list[str] = field(default_factory=list)
    min_allowed_version: str = ""
    min_allowed_version_code: int = 0
    legacy_format: bool = False
    created_at: int | None = None
    release_timestamp: int | None = None
    use_release_timestamp_for_app: bool = False
    min_release_timestamp: int | None = None


def build_event_set(params: EventSetParams) -> EventSet:
    """Build the unsigned event set for one release.

    CONTRACT:
      Inputs:
        - params: EventSetParams with at least one asset

      Outputs:
        - event_set: EventSet whose release is pending (no asset references)

      Invariants:
        - The first asset is the primary: it provides app identifier, version
          and version code unless overridden
        - App platforms are the de-duplicated union of all asset platforms
        - Asset URLs: original download URL, then <blossom>/<sha256>
        - Commit goes on assets (current format) or the release (legacy)
        - release_timestamp replaces created_at of release and assets (and of
          the app when use_release_timestamp_for_app)
        - min_release_timestamp forces release/asset created_at strictly above it

      Raises:
        - InvalidMetadataError: no assets supplied
    """
    if not params.assets:
        raise InvalidMetadataError("at least one asset is required to build an event set")

    primary = params.assets[0].artifact
    identifier = params.identifier or primary.identifier
    if not identifier:
        raise InvalidMetadataError("app identifier is required")

    name = params.name or primary.name or identifier
    created_at = _now() if params.created_at is None else params.created_at

    platforms = []
    for ap in params.assets:
        for platform in platforms_for_artifact(ap.artifact):
            if platform not in platforms:
                platforms.append(platform)

    app_meta = AppMetadata(
        identifier=identifier,
        name=name,
        description=params.description,
        summary=params.summary,
        website=params.website,
        license=params.license,
        repository=params.repository,
        repository_pointer="" if params.legacy_format else params.repository_pointer,
        repository_relay="" if params.legacy_format else params.repository_relay,
        tags=list(params.categories),
        icon_url=params.icon_url,
        image_urls=list(params.image_urls),
        platforms=platforms,
        legacy_format=params.legacy_format,
        release_version=primary.version,
    )

    release_meta = ReleaseMetadata(
        identifier=identifier,
        version=primary.version,
        version_code=primary.version_code if primary.is_apk else 0,
        changelog=params.changelog,
        channel=params.channel or Channel.MAIN,
        legacy_format=params.legacy_format,
        release_url=params.release_url,
        commit=params.commit,
    )

    assets = []
    for ap in params.assets:
        artifact = ap.artifact
        urls = []
        if ap.original_url:
            urls.append(ap.original_url)
        if params.blossom_server and artifact.sha256:
            urls.append(f"{params.blossom_server.rstrip('/')}/{artifact.sha256}")

        asset_meta = AssetMetadata(
            identifier=ap.identifier or artifact.identifier or identifier,
            version=artifact.version,
            sha256=artifact.sha256,
            version_code=artifact.version_code if artifact.is_apk else 0,
            size=artifact.size,
            urls=urls,
            mime_type=artifact.mime_type,
            platforms=platforms_for_artifact(artifact),
            filename=os.path.basename(artifact.file_path) if artifact.file_path else "",
            variant=ap.variant,
            commit=params.commit,
            supported_nips=list(params.supported_nips),
            min_allowed_version=params.min_allowed_version,
            min_allowed_version_code=params.min_allowed_version_code,
            legacy_format=params.legacy_format,
        )
        if artifact.is_apk:
            asset_meta.cert_fingerprint = artifact.cert_fingerprint
            asset_meta.min_sdk = artifact.min_sdk
            asset_meta.target_sdk = artifact.target_sdk

        assets.append(build_asset(asset_meta, params.pubkey, created_at))

    event_set = EventSet(
        app_metadata=build_app_metadata(app_meta, params.pubkey, created_at),
        release=build_release(release_meta, params.pubkey, created_at),
        assets=assets,
    )

    if params.release_timestamp:
        event_set.release.created_at = params.release_timestamp
        for asset in event_set.assets:
            asset.created_at = params.release_timestamp
        if params.use_release_timestamp_for_app:
            event_set.app_metadata.created_at = params.release_timestamp

    # Replaceable events only supersede strictly older ones
    if params.min_release_timestamp and event_set.release.created_at <= params.min_release_timestamp:
        bumped = params.min_release_timestamp + 1
        event_set.release.created_at = bumped
        for asset in event_set.assets:
            asset.created_at = bumped

    return event_set
