"""Tests for PublishSession orchestration with fake relays, Blossom and signers."""

import hashlib
import threading
from unittest.mock import MagicMock

import httpx
import pytest
from fakes import PUBLIC_KEY, BatchSigner, RecordingSigner, signed_event

from nostr_release.blossom import BlossomClient
from nostr_release.config import Settings, parse_manifest
from nostr_release.errors import BlossomUploadError, EventSetSigningError, InvalidSignerError, OperationCancelledError
from nostr_release.keys import verify_event
from nostr_release.models import KIND_BLOSSOM_AUTH, KIND_RELEASE, KIND_SOFTWARE_ASSET, ExistingAsset, PublishResult
from nostr_release.signer import ExternalKeySigner
from nostr_release.workflow import (
    STATUS_DRY_RUN,
    STATUS_EXISTS,
    STATUS_PARTIAL,
    STATUS_PUBLISHED,
    STATUS_UNSIGNED,
    CacheHooks,
    PublishSession,
)

RELAY = "wss://relay.example.com"
SERVER = "https://blossom.example.com"
APK = b"apk contents"
APK_SHA = hashlib.sha256(APK).hexdigest()
ICON = b"icon png"
ICON_SHA = hashlib.sha256(ICON).hexdigest()
SHOT = b"screenshot png"
SHOT_SHA = hashlib.sha256(SHOT).hexdigest()
REMOTE_IMAGE = "https://example.com/remote.png"


class FakePublisher:
    def __init__(self, existing=None, existing_release=None, fail=False):
        self.relay_urls = [RELAY]
        self.existing = existing
        self.existing_release = existing_release
        self.fail = fail
        self.published = []

    def check_existing_asset(self, identifier, version, cancel=None):
        return self.existing

    def check_existing_release(self, pubkey, identifier, version, cancel=None):
        return self.existing_release

    def publish_event_set(self, event_set, cancel=None):
        self.published.append(event_set)
        ok = PublishResult(relay_url=RELAY, success=True)
        bad = PublishResult(relay_url=RELAY, success=False, error="failed to publish: blocked")
        return {
            "software_application": [ok],
            "software_release": [bad if self.fail else ok],
            "software_asset": [ok],
        }


class BlossomServer:
    def __init__(self, stored=(), put_status=200):
        self.stored = set(stored)
        self.put_status = put_status
        self.puts = []

    def __call__(self, request):
        if request.method == "HEAD":
            return httpx.Response(200 if request.url.path.lstrip("/") in self.stored else 404)
        self.puts.append(request)
        return httpx.Response(self.put_status)


@pytest.fixture
def manifest(tmp_path):
    (tmp_path / "app.apk").write_bytes(APK)
    return parse_manifest(
        {
            "identifier": "com.example.app",
            "name": "Example",
            "assets": [{"path": "app.apk", "version": "1.0.0", "version_code": 1}],
        },
        tmp_path,
    )


def _session(manifest, signer=None, publisher=None, server=None, **kwargs):
    server = server or BlossomServer()
    blossom = BlossomClient(SERVER, http_client=httpx.Client(transport=httpx.MockTransport(server)))
    settings = Settings(relay_urls=[RELAY], blossom_url=SERVER)
    return PublishSession(
        settings, manifest, signer=signer, publisher=publisher or FakePublisher(), blossom=blossom, **kwargs
    )


class TestExistingRelease:
    def test_existing_asset_stops_before_signing(self, manifest):
        existing = ExistingAsset(event=signed_event(KIND_SOFTWARE_ASSET, []), relay_url=RELAY, version="1.0.0")
        signer = RecordingSigner()
        publisher = FakePublisher(existing=existing)

        outcome = _session(manifest, signer, publisher).run()

        assert outcome.status == STATUS_EXISTS
        assert outcome.existing is existing
        assert signer.signed_kinds == []
        assert publisher.published == []

    def test_overwrite_supersedes_existing_release(self, manifest):
        existing = ExistingAsset(event=signed_event(KIND_SOFTWARE_ASSET, []), relay_url=RELAY)
        publisher = FakePublisher(existing=existing, existing_release=4_000_000_000)

        outcome = _session(manifest, RecordingSigner(), publisher, overwrite_release=True).run()

        assert outcome.status == STATUS_PUBLISHED
        assert outcome.event_set.release.created_at == 4_000_000_001
        assert outcome.event_set.assets[0].created_at == 4_000_000_001


class TestDryRun:
    def test_dry_run_without_signer_uses_test_key(self, manifest):
        server = BlossomServer()
        publisher = FakePublisher()

        outcome = _session(manifest, publisher=publisher, server=server, dry_run=True).run()

        assert outcome.status == STATUS_DRY_RUN
        assert outcome.pubkey == PUBLIC_KEY
        assert all(verify_event(e) for e in outcome.event_set.all_events())
        assert publisher.published == []
        assert server.puts == []

    def test_missing_signer_outside_dry_run(self, manifest):
        with pytest.raises(InvalidSignerError, match="SIGN_WITH"):
            _session(manifest).run()

    def test_external_signer_returns_unsigned_events(self, manifest):
        server = BlossomServer()
        publisher = FakePublisher()

        outcome = _session(manifest, ExternalKeySigner(PUBLIC_KEY), publisher, server).run()

        assert outcome.status == STATUS_UNSIGNED
        assert all(e.sig == "" for e in outcome.event_set.all_events())
        assert publisher.published == []
        assert server.puts == []


class TestPublish:
    def test_sequential_signer_uploads_then_publishes(self, manifest):
        server = BlossomServer()
        signer = RecordingSigner()
        cache = MagicMock(spec=CacheHooks)

        outcome = _session(manifest, signer, server=server, cache=cache).run()

        assert outcome.status == STATUS_PUBLISHED
        assert [u.sha256 for u in outcome.uploads] == [APK_SHA]
        assert len(server.puts) == 1
        assert signer.signed_kinds[0] == KIND_BLOSSOM_AUTH
        assert outcome.event_set.release.tag_value("e") == outcome.event_set.assets[0].id
        assert outcome.event_set.release.tags[-1][2] == RELAY
        cache.commit.assert_called_once()
        cache.clear.assert_not_called()

    def test_asset_urls_point_at_blossom(self, manifest):
        outcome = _session(manifest, RecordingSigner()).run()

        urls = [t[1] for t in outcome.event_set.assets[0].tags if t[0] == "url"]
        assert urls == [f"{SERVER}/{APK_SHA}"]

    def test_partial_failure_clears_cache(self, manifest):
        cache = MagicMock(spec=CacheHooks)

        outcome = _session(manifest, RecordingSigner(), FakePublisher(fail=True), cache=cache).run()

        assert outcome.status == STATUS_PARTIAL
        assert outcome.all_success is False
        cache.clear.assert_called_once()
        cache.commit.assert_not_called()

    def test_batch_signer_skips_existing_blobs(self, manifest):
        server = BlossomServer(stored=[APK_SHA])
        signer = BatchSigner()

        outcome = _session(manifest, signer, server=server).run()

        assert outcome.status == STATUS_PUBLISHED
        assert outcome.uploads[0].existed is True
        assert server.puts == []
        assert KIND_BLOSSOM_AUTH not in signer.batches[0]

    def test_batch_signer_signs_uploads_in_same_batch(self, manifest):
        server = BlossomServer()
        signer = BatchSigner()

        outcome = _session(manifest, signer, server=server).run()

        assert len(signer.batches) == 1
        assert signer.batches[0][0] == KIND_BLOSSOM_AUTH
        assert len(server.puts) == 1
        assert outcome.uploads[0].existed is False

    def test_signing_failure_publishes_nothing(self, manifest):
        publisher = FakePublisher()

        with pytest.raises(EventSetSigningError, match="Software Release event"):
            _session(manifest, RecordingSigner(fail_on_kind=KIND_RELEASE), publisher).run()

        assert publisher.published == []

    def test_close_keeps_injected_signer(self, manifest):
        signer = RecordingSigner()
        with _session(manifest, signer) as session:
            session.run()
        assert session.signer is signer


class TestFailureClearsCache:
    def test_signing_failure_clears_cache_once(self, manifest):
        cache = MagicMock(spec=CacheHooks)

        with pytest.raises(EventSetSigningError):
            _session(manifest, RecordingSigner(fail_on_kind=KIND_RELEASE), cache=cache).run()

        cache.clear.assert_called_once()
        cache.commit.assert_not_called()

    def test_upload_failure_clears_cache_once(self, manifest):
        cache = MagicMock(spec=CacheHooks)
        publisher = FakePublisher()

        with pytest.raises(BlossomUploadError, match="status 500"):
            _session(manifest, BatchSigner(), publisher, BlossomServer(put_status=500), cache=cache).run()

        assert publisher.published == []
        cache.clear.assert_called_once()
        cache.commit.assert_not_called()

    def test_existing_asset_leaves_cache_alone(self, manifest):
        existing = ExistingAsset(event=signed_event(KIND_SOFTWARE_ASSET, []), relay_url=RELAY, version="1.0.0")
        cache = MagicMock(spec=CacheHooks)

        _session(manifest, RecordingSigner(), FakePublisher(existing=existing), cache=cache).run()

        cache.clear.assert_not_called()
        cache.commit.assert_not_called()


class CancelAfterApproval(BatchSigner):
    """Batch signer whose user cancels right after approving the batch."""

    def __init__(self, cancel):
        super().__init__()
        self.cancel = cancel

    def sign_batch(self, events, cancel=None):
        super().sign_batch(events, cancel)
        self.cancel.set()


class TestCancellation:
    def test_cancel_after_batch_approval_uploads_nothing(self, manifest):
        cancel = threading.Event()
        server = BlossomServer()
        publisher = FakePublisher()
        cache = MagicMock(spec=CacheHooks)
        signer = CancelAfterApproval(cancel)

        with pytest.raises(OperationCancelledError):
            _session(manifest, signer, publisher, server, cache=cache, cancel=cancel).run()

        assert len(signer.batches) == 1
        assert server.puts == []
        assert publisher.published == []
        cache.clear.assert_called_once()

    def test_set_cancel_stops_before_approval(self, manifest):
        cancel = threading.Event()
        cancel.set()
        server = BlossomServer()
        signer = BatchSigner()

        with pytest.raises(OperationCancelledError):
            _session(manifest, signer, server=server, overwrite_release=True, cancel=cancel).run()

        assert signer.batches == []
        assert server.puts == []


@pytest.fixture
def manifest_with_images(tmp_path):
    (tmp_path / "app.apk").write_bytes(APK)
    (tmp_path / "icon.png").write_bytes(ICON)
    (tmp_path / "shots").mkdir()
    (tmp_path / "shots" / "one.png").write_bytes(SHOT)
    return parse_manifest(
        {
            "identifier": "com.example.app",
            "name": "Example",
            "icon": "icon.png",
            "images": ["shots/one.png", REMOTE_IMAGE],
            "assets": [{"path": "app.apk", "version": "1.0.0", "version_code": 1}],
        },
        tmp_path,
    )


def _image_tags(event):
    return [t[1] for t in event.tags if t[0] == "icon"], [t[1] for t in event.tags if t[0] == "image"]


class TestLocalImages:
    def test_batch_signer_uploads_images_in_one_approval(self, manifest_with_images):
        server = BlossomServer()
        signer = BatchSigner()

        outcome = _session(manifest_with_images, signer, server=server).run()

        assert outcome.status == STATUS_PUBLISHED
        assert len(signer.batches) == 1
        assert signer.batches[0][:3] == [KIND_BLOSSOM_AUTH] * 3
        assert sorted(put.content for put in server.puts) == sorted([ICON, SHOT, APK])
        assert [u.sha256 for u in outcome.uploads] == [ICON_SHA, SHOT_SHA, APK_SHA]

        icons, images = _image_tags(outcome.event_set.app_metadata)
        assert icons == [f"{SERVER}/{ICON_SHA}"]
        assert images == [f"{SERVER}/{SHOT_SHA}", REMOTE_IMAGE]

    def test_batch_signer_skips_images_already_stored(self, manifest_with_images):
        server = BlossomServer(stored=[ICON_SHA, SHOT_SHA])
        signer = BatchSigner()

        outcome = _session(manifest_with_images, signer, server=server).run()

        assert signer.batches[0].count(KIND_BLOSSOM_AUTH) == 1
        assert [put.content for put in server.puts] == [APK]
        assert [u.existed for u in outcome.uploads] == [True, True, False]

    def test_sequential_signer_uploads_images_first(self, manifest_with_images):
        server = BlossomServer()
        signer = RecordingSigner()

        outcome = _session(manifest_with_images, signer, server=server).run()

        assert outcome.status == STATUS_PUBLISHED
        assert [put.content for put in server.puts] == [ICON, SHOT, APK]
        assert signer.signed_kinds[:3] == [KIND_BLOSSOM_AUTH] * 3
        icons, _ = _image_tags(outcome.event_set.app_metadata)
        assert icons == [f"{SERVER}/{ICON_SHA}"]

    def test_dry_run_derives_image_urls_without_uploading(self, manifest_with_images):
        server = BlossomServer()

        outcome = _session(manifest_with_images, server=server, dry_run=True).run()

        icons, images = _image_tags(outcome.event_set.app_metadata)
        assert icons == [f"{SERVER}/{ICON_SHA}"]
        assert images[0] == f"{SERVER}/{SHOT_SHA}"
        assert server.puts == []
