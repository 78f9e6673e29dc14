"""Publish orchestration.

PublishSession owns the signer, Blossom client and relay publisher for one
run and drives them through: existence check, signing setup, uploads, event
signing and relay publishing.
"""

import logging
import threading
from dataclasses import dataclass, field

from .blossom import BlossomClient
from .config import Manifest, Settings
from .errors import InvalidSignerError
from .event import build_event_set
from .event_set import sign_event_set, sign_event_set_with_uploads
from .models import EventSet, ExistingAsset, PublishResult, UploadResult
from .relay import RelayPublisher
from .signer import TEST_NSEC, Signer, SignerKind, create_signer

logger = logging.getLogger(__name__)

STATUS_PUBLISHED = "published"
STATUS_PARTIAL = "partial"
STATUS_EXISTS = "exists"
STATUS_UNSIGNED = "unsigned"
STATUS_DRY_RUN = "dry-run"


class CacheHooks:
    """Caller supplied cache callbacks; the default does nothing.

    commit() runs after every event reached every relay, clear() after any
    failure so the next run starts fresh.
    """

    def commit(self) -> None:
        pass

    def clear(self) -> None:
        pass


@dataclass
class PublishOutcome:
    """Result of one PublishSession.run()."""

    status: str
    pubkey: str = ""
    identifier: str = ""
    version: str = ""
    event_set: EventSet | None = None
    results: dict[str, list[PublishResult]] = field(default_factory=dict)
    uploads: list[UploadResult] = field(default_factory=list)
    existing: ExistingAsset | None = None

    @property
    def all_success(self) -> bool:
        return bool(self.results) and all(r.success for rs in self.results.values() for r in rs)


class PublishSession:
    """One publish run.

    CONTRACT:
      Inputs:
        - settings: Settings (signer descriptor, relays, Blossom server)
        - manifest: parsed release Manifest
        - signer, publisher, blossom: optional pre-built collaborators
        - cache: CacheHooks notified after publishing
        - cancel: cancellation signal passed to every blocking call
        - dry_run: build and sign only; no relay or Blossom traffic
        - overwrite_release: skip the existing-asset check and supersede the
          existing release by timestamp

      Invariants:
        - Nothing is published unless every event signed successfully
        - Uploads happen before relay publishing
        - cache.commit() only when every (event, relay) result succeeded;
          cache.clear() exactly once after a partial publish or any exception
        - Local icon and image files are uploaded with the assets and share
          their single batch approval
        - close() releases the signer and HTTP client it created
    """

    def __init__(
        self,
        settings: Settings,
        manifest: Manifest,
        signer: Signer | None = None,
        publisher: RelayPublisher | None = None,
        blossom: BlossomClient | None = None,
        cache: CacheHooks | None = None,
        cancel: threading.Event | None = None,
        dry_run: bool = False,
        overwrite_release: bool = False,
    ):
        self.settings = settings
        self.manifest = manifest
        self.cache = cache or CacheHooks()
        self.cancel = cancel or threading.Event()
        self.dry_run = dry_run
        self.overwrite_release = overwrite_release

        self.signer = signer
        self._owns_signer = signer is None
        self.publisher = publisher or RelayPublisher(settings.relay_urls, timeout=settings.relay_timeout)
        self.blossom = blossom
        self._owns_blossom = blossom is None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def close(self) -> None:
        if self.signer is not None and self._owns_signer:
            self.signer.close()
            self.signer = None
        if self.blossom is not None and self._owns_blossom:
            self.blossom.close()
            self.blossom = None

    @property
    def relay_hint(self) -> str:
        return self.publisher.relay_urls[0] if self.publisher.relay_urls else ""

    def run(self) -> PublishOutcome:
        """Execute the publish flow and report what happened.

        Any exception after the existing-asset check clears the cache
        before propagating, cancellation included.
        """
        identifier = self.manifest.app_identifier
        version = self.manifest.version

        if not self.dry_run and not self.overwrite_release:
            existing = self.publisher.check_existing_asset(identifier, version, self.cancel)
            if existing is not None:
                logger.warning("asset %s@%s already exists on %s", identifier, version, existing.relay_url)
                return PublishOutcome(
                    status=STATUS_EXISTS, identifier=identifier, version=version, existing=existing
                )

        try:
            outcome = self._sign_and_publish(identifier, version)
        except BaseException:
            self.cache.clear()
            raise

        if outcome.status == STATUS_PUBLISHED:
            self.cache.commit()
        elif outcome.status == STATUS_PARTIAL:
            self.cache.clear()
        return outcome

    def _sign_and_publish(self, identifier: str, version: str) -> PublishOutcome:
        signer = self._ensure_signer()
        pubkey = signer.public_key()
        outcome = PublishOutcome(status=STATUS_DRY_RUN, pubkey=pubkey, identifier=identifier, version=version)

        min_release_timestamp = None
        if self.overwrite_release and not self.dry_run:
            min_release_timestamp = self.publisher.check_existing_release(pubkey, identifier, version, self.cancel)

        # local icon and images are addressed by hash, so their URLs are known before upload
        params = self.manifest.event_set_params(
            pubkey, self.settings.blossom_url, min_release_timestamp=min_release_timestamp
        )
        event_set = build_event_set(params)
        outcome.event_set = event_set

        if self.dry_run or signer.kind is SignerKind.EXTERNAL:
            sign_event_set(signer, event_set, self.relay_hint, self.cancel)
            if signer.kind is SignerKind.EXTERNAL:
                outcome.status = STATUS_UNSIGNED
            return outcome

        outcome.uploads = self._upload_and_sign(signer, event_set)

        outcome.results = self.publisher.publish_event_set(event_set, self.cancel)
        outcome.status = STATUS_PUBLISHED if outcome.all_success else STATUS_PARTIAL
        return outcome

    def _ensure_signer(self) -> Signer:
        if self.signer is not None:
            return self.signer

        sign_with = self.settings.sign_with
        if not sign_with:
            if not self.dry_run:
                raise InvalidSignerError("SIGN_WITH is required (nsec, npub, hex key, bunker:// URL or browser)")
            logger.info("no SIGN_WITH configured, dry run signs with the test key")
            sign_with = TEST_NSEC

        self.signer = create_signer(
            sign_with,
            port=self.settings.browser_port,
            timeout=self.settings.signer_timeout,
            cancel=self.cancel,
        )
        logger.debug("signer %s, pubkey %s", self.signer.kind.value, self.signer.public_key())
        return self.signer

    def _blossom(self) -> BlossomClient:
        if self.blossom is None:
            self.blossom = BlossomClient(self.settings.blossom_url)
        return self.blossom

    def _upload_items(self) -> list[tuple[str, str, str | None]]:
        """(path, sha256, content type) for every blob to upload, images first."""
        items = {}
        for image in self.manifest.image_files():
            items.setdefault(image.sha256, (image.path, image.sha256, image.mime_type or None))
        for asset in self.manifest.assets:
            artifact = asset.artifact
            if not artifact.file_path:
                logger.warning("asset %s has no local file, not uploading", artifact.sha256)
                continue
            items.setdefault(artifact.sha256, (artifact.file_path, artifact.sha256, artifact.mime_type or None))
        return list(items.values())

    def _upload_and_sign(self, signer: Signer, event_set: EventSet) -> list[UploadResult]:
        items = self._upload_items()
        blossom = self._blossom()

        if signer.batch_capable:
            existence = blossom.exists_batch([sha256 for _, sha256, _ in items], cancel=self.cancel)
            pending = [sha256 for _, sha256, _ in items if not existence.get(sha256)]
            auth_events = sign_event_set_with_uploads(signer, event_set, pending, self.relay_hint, cancel=self.cancel)
            auth_by_hash = {auth.tag_value("x"): auth for auth in auth_events}

            return [
                blossom.upload_with_auth(
                    path,
                    sha256,
                    auth_by_hash.get(sha256),
                    content_type=content_type,
                    existed=bool(existence.get(sha256)),
                    cancel=self.cancel,
                )
                for path, sha256, content_type in items
            ]

        uploads = [
            blossom.upload(path, sha256, signer, content_type=content_type, cancel=self.cancel)
            for path, sha256, content_type in items
        ]
        sign_event_set(signer, event_set, self.relay_hint, self.cancel)
        return uploads
