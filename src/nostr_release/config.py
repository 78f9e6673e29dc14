"""Settings and release manifest loading.

Settings come from the environment (optionally a .env file) and are
overridden by command-line flags. The manifest describes one release: app
metadata, release notes and the artifacts to publish.
"""

import mimetypes
import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml
from dotenv import load_dotenv

from .blossom import DEFAULT_SERVER, sha256_of
from .errors import ConfigError, InvalidKeyError, InvalidMetadataError
from .event import AssetBuildParams, EventSetParams
from .keys import decode_naddr
from .models import ArtifactInfo, Channel
from .relay import DEFAULT_RELAY, RELAY_TIMEOUT, parse_relay_list

# NIP-34 repository announcement kind
KIND_REPOSITORY = 30617

CHANNELS = tuple(channel.value for channel in Channel)


@dataclass
class Settings:
    """Runtime settings shared by the publish and check commands."""

    sign_with: str = ""
    relay_urls: list[str] = field(default_factory=lambda: [DEFAULT_RELAY])
    blossom_url: str = DEFAULT_SERVER
    browser_port: int | None = None
    relay_timeout: float = RELAY_TIMEOUT
    signer_timeout: float | None = None


def load_settings(
    sign_with: str | None = None,
    relays: list[str] | None = None,
    blossom_url: str | None = None,
    browser_port: int | None = None,
    relay_timeout: float | None = None,
    signer_timeout: float | None = None,
    dotenv_path: str | Path | None = None,
) -> Settings:
    """Build Settings from flags, falling back to the environment.

    CONTRACT:
      Inputs:
        - explicit values from the command line (None means not given)
        - dotenv_path: .env file to load (None searches from the working directory)

      Outputs:
        - settings: Settings instance

      Invariants:
        - Flags win over environment variables; existing environment
          variables win over .env entries
        - Relay URLs are validated and de-duplicated, order preserved

      Raises:
        - ConfigError: malformed BROWSER_SIGNER_PORT
        - InvalidRelayURLError: malformed relay URL
    """
    load_dotenv(dotenv_path)

    settings = Settings()
    settings.sign_with = sign_with or os.environ.get("SIGN_WITH", "")

    relay_urls = parse_relay_list(relays) if relays else parse_relay_list(os.environ.get("RELAY_URLS", ""))
    if relay_urls:
        settings.relay_urls = relay_urls

    settings.blossom_url = (blossom_url or os.environ.get("BLOSSOM_URL") or DEFAULT_SERVER).rstrip("/")

    if browser_port is None and os.environ.get("BROWSER_SIGNER_PORT"):
        try:
            browser_port = int(os.environ["BROWSER_SIGNER_PORT"])
        except ValueError:
            raise ConfigError(f"BROWSER_SIGNER_PORT must be an integer: {os.environ['BROWSER_SIGNER_PORT']!r}") from None
    if browser_port is not None and not 0 <= browser_port <= 65535:
        raise ConfigError(f"browser signer port out of range: {browser_port}")
    settings.browser_port = browser_port

    if relay_timeout is not None:
        settings.relay_timeout = relay_timeout
    settings.signer_timeout = signer_timeout
    return settings


@dataclass
class ManifestAsset:
    """One artifact entry of a manifest."""

    artifact: ArtifactInfo
    url: str = ""
    variant: str = ""


@dataclass
class ImageFile:
    """A local icon or screenshot that is uploaded to Blossom before publishing."""

    path: str
    sha256: str
    mime_type: str = ""

    def url(self, blossom_server: str) -> str:
        server = (blossom_server or DEFAULT_SERVER).rstrip("/")
        return f"{server}/{self.sha256}"


@dataclass
class Manifest:
    """Parsed release manifest."""

    assets: list[ManifestAsset]
    identifier: str = ""
    name: str = ""
    description: str = ""
    summary: str = ""
    website: str = ""
    license: str = ""
    repository: str = ""
    repository_pointer: str = ""
    repository_relay: str = ""
    tags: list[str] = field(default_factory=list)
    icon: str | ImageFile = ""
    images: list[str | ImageFile] = field(default_factory=list)
    changelog: str = ""
    channel: str = Channel.MAIN.value
    commit: str = ""
    release_url: str = ""
    release_timestamp: int | None = None
    supported_nips: list[str] = field(default_factory=list)
    min_allowed_version: str = ""
    min_allowed_version_code: int = 0
    legacy: bool = False
    base_dir: Path = field(default_factory=Path)

    @property
    def app_identifier(self) -> str:
        return self.identifier or self.assets[0].artifact.identifier

    @property
    def version(self) -> str:
        return self.assets[0].artifact.version

    def image_files(self) -> list[ImageFile]:
        """Icon and images given as local files, icon first, without duplicates."""
        files = {}
        for image in [self.icon, *self.images]:
            if isinstance(image, ImageFile):
                files.setdefault(image.sha256, image)
        return list(files.values())

    def event_set_params(self, pubkey: str, blossom_server: str = "", **overrides) -> EventSetParams:
        """EventSetParams for building this release's events."""
        params = EventSetParams(
            assets=[
                AssetBuildParams(artifact=asset.artifact, original_url=asset.url, variant=asset.variant)
                for asset in self.assets
            ],
            pubkey=pubkey,
            identifier=self.identifier,
            name=self.name,
            description=self.description,
            summary=self.summary,
            website=self.website,
            license=self.license,
            repository=self.repository,
            repository_pointer=self.repository_pointer,
            repository_relay=self.repository_relay,
            categories=list(self.tags),
            icon_url=_image_url(self.icon, blossom_server),
            image_urls=[_image_url(image, blossom_server) for image in self.images],
            changelog=self.changelog,
            channel=self.channel,
            commit=self.commit,
            release_url=self.release_url,
            blossom_server=blossom_server,
            supported_nips=list(self.supported_nips),
            min_allowed_version=self.min_allowed_version,
            min_allowed_version_code=self.min_allowed_version_code,
            legacy_format=self.legacy,
            release_timestamp=self.release_timestamp,
        )
        for name, value in overrides.items():
            setattr(params, name, value)
        return params


def load_manifest(path: str | Path) -> Manifest:
    """Read and parse a YAML (or JSON) release manifest.

    Raises:
        - ConfigError: file missing, unreadable or not valid YAML
        - InvalidMetadataError: required fields missing or of the wrong type
    """
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"cannot read manifest {path}: {e}") from e

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid manifest {path}: {e}") from e

    return parse_manifest(data, base_dir=path.parent)


def parse_manifest(data, base_dir: str | Path = ".") -> Manifest:
    """Validate manifest data (as loaded from YAML) and build a Manifest.

    CONTRACT:
      Inputs:
        - data: mapping with an "assets" list and optional app/release fields
        - base_dir: directory that relative asset, icon, image and
          release_notes paths are resolved against

      Outputs:
        - manifest: Manifest with fully populated ArtifactInfo entries

      Invariants:
        - Each asset needs identifier (or top-level identifier) and version
        - Missing sha256/size are computed from the asset file
        - icon and images that are not http(s) URLs are local files, hashed
          into ImageFile entries for upload
        - A repository given as naddr must point at a kind 30617 repository
        - channel is one of main, beta, nightly, dev

      Raises:
        - InvalidMetadataError: invalid structure or values
        - ConfigError: an asset, image or release notes file cannot be read
    """
    if not isinstance(data, dict):
        raise InvalidMetadataError("manifest must be a mapping")

    base_dir = Path(base_dir)
    raw_assets = data.get("assets")
    if not isinstance(raw_assets, list) or not raw_assets:
        raise InvalidMetadataError("manifest needs a non-empty 'assets' list")

    identifier = _str(data, "identifier")
    assets = [_parse_asset(item, i, identifier, base_dir) for i, item in enumerate(raw_assets, start=1)]

    channel = _str(data, "channel") or Channel.MAIN.value
    if channel not in CHANNELS:
        raise InvalidMetadataError(f"channel must be one of {', '.join(CHANNELS)}, got {channel!r}")

    manifest = Manifest(
        assets=assets,
        identifier=identifier,
        name=_str(data, "name"),
        description=_str(data, "description"),
        summary=_str(data, "summary"),
        website=_str(data, "website"),
        license=_str(data, "license"),
        repository=_str(data, "repository"),
        tags=_str_list(data, "tags"),
        icon=_parse_image(_str(data, "icon"), base_dir),
        images=[_parse_image(image, base_dir) for image in _str_list(data, "images")],
        changelog=_str(data, "changelog"),
        channel=channel,
        commit=_str(data, "commit"),
        release_url=_str(data, "release_url"),
        release_timestamp=_int(data, "release_timestamp") or None,
        supported_nips=[str(nip) for nip in _list(data, "supported_nips")],
        min_allowed_version=_str(data, "min_allowed_version"),
        min_allowed_version_code=_int(data, "min_allowed_version_code"),
        legacy=bool(data.get("legacy", False)),
        base_dir=base_dir,
    )

    release_notes = _str(data, "release_notes")
    if release_notes and not manifest.changelog:
        notes_path = base_dir / release_notes
        try:
            manifest.changelog = notes_path.read_text(encoding="utf-8").strip()
        except OSError as e:
            raise ConfigError(f"cannot read release notes {notes_path}: {e}") from e

    if manifest.repository.startswith("naddr1"):
        manifest.repository_pointer, manifest.repository_relay = parse_repository_naddr(manifest.repository)

    return manifest


def parse_repository_naddr(value: str) -> tuple[str, str]:
    """Return ("30617:<pubkey>:<identifier>", first relay hint) for a repository naddr."""
    try:
        pubkey, kind, identifier, relays = decode_naddr(value)
    except InvalidKeyError as e:
        raise InvalidMetadataError(f"invalid repository naddr: {e}") from e
    if kind != KIND_REPOSITORY:
        raise InvalidMetadataError(f"expected kind {KIND_REPOSITORY} (NIP-34 repository), got {kind}")
    return f"{KIND_REPOSITORY}:{pubkey}:{identifier}", relays[0] if relays else ""


def _parse_asset(item, index: int, default_identifier: str, base_dir: Path) -> ManifestAsset:
    if not isinstance(item, dict):
        raise InvalidMetadataError(f"asset {index} must be a mapping")

    identifier = _str(item, "identifier") or default_identifier
    version = _str(item, "version")
    if not identifier:
        raise InvalidMetadataError(f"asset {index} has no identifier")
    if not version:
        raise InvalidMetadataError(f"asset {index} has no version")

    file_path = _str(item, "path")
    resolved = str(base_dir / file_path) if file_path else ""

    sha256 = _str(item, "sha256").lower()
    size = _int(item, "size")
    if resolved and (not sha256 or not size):
        try:
            sha256 = sha256 or sha256_of(resolved)
            size = size or os.path.getsize(resolved)
        except OSError as e:
            raise ConfigError(f"cannot read asset {resolved}: {e}") from e
    if len(sha256) != 64:
        raise InvalidMetadataError(f"asset {index} needs a path or a 64 character sha256")

    artifact = ArtifactInfo(
        identifier=identifier,
        version=version,
        sha256=sha256,
        size=size,
        name=_str(item, "name"),
        version_code=_int(item, "version_code"),
        file_path=resolved,
        mime_type=_str(item, "mime_type"),
        native_architectures=_str_list(item, "native_architectures"),
        platform_prefix=_str(item, "platform_prefix") or "android",
        platforms=_str_list(item, "platforms"),
        cert_fingerprint=_str(item, "cert_fingerprint").lower(),
        min_sdk=_int(item, "min_sdk"),
        target_sdk=_int(item, "target_sdk"),
    )
    return ManifestAsset(artifact=artifact, url=_str(item, "url"), variant=_str(item, "variant"))


def _parse_image(value: str, base_dir: Path) -> str | ImageFile:
    """Keep icon/image URLs as they are; hash local files for upload."""
    if not value or value.startswith(("http://", "https://")):
        return value

    path = Path(value)
    if not path.is_absolute():
        path = base_dir / path
    try:
        sha256 = sha256_of(path)
    except OSError as e:
        raise ConfigError(f"cannot read image {path}: {e}") from e
    return ImageFile(path=str(path), sha256=sha256, mime_type=mimetypes.guess_type(path.name)[0] or "")


def _image_url(image: str | ImageFile, blossom_server: str) -> str:
    if isinstance(image, ImageFile):
        return image.url(blossom_server)
    return image


def _str(data: dict, key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        raise InvalidMetadataError(f"'{key}' must be a string")
    return str(value).strip()


def _int(data: dict, key: str) -> int:
    value = data.get(key)
    if value is None or value == "":
        return 0
    if isinstance(value, bool):
        raise InvalidMetadataError(f"'{key}' must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise InvalidMetadataError(f"'{key}' must be an integer, got {value!r}") from None


def _list(data: dict, key: str) -> list:
    value = data.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise InvalidMetadataError(f"'{key}' must be a list")
    return value


def _str_list(data: dict, key: str) -> list[str]:
    return [str(item).strip() for item in _list(data, key) if str(item).strip()]
