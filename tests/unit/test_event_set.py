"""Tests for signing release event sets."""

import json
import threading

import pytest
from fakes import PUBLIC_KEY, BatchSigner, RecordingSigner

from nostr_release.errors import EventSetSigningError, OperationCancelledError
from nostr_release.event import AssetBuildParams, EventSetParams, build_event_set
from nostr_release.event_set import events_to_jsonl, sign_event_set, sign_event_set_with_uploads
from nostr_release.keys import verify_event
from nostr_release.models import (
    KIND_APP_METADATA,
    KIND_BLOSSOM_AUTH,
    KIND_RELEASE,
    KIND_SOFTWARE_ASSET,
    ArtifactInfo,
)
from nostr_release.signer import ExternalKeySigner

NOW = 1_700_000_000


def _event_set(asset_count=1):
    assets = [
        AssetBuildParams(
            artifact=ArtifactInfo(
                identifier="com.example.app",
                version="1.0.0",
                sha256=f"{i:02x}" * 32,
                native_architectures=[f"arch{i}"],
            )
        )
        for i in range(asset_count)
    ]
    return build_event_set(EventSetParams(assets=assets, pubkey="", created_at=NOW))


def _references(event_set):
    return [tag for tag in event_set.release.tags if tag[0] == "e"]


class TestSequentialSigning:
    @pytest.mark.parametrize("asset_count", [1, 2, 3])
    def test_release_references_every_asset_in_order(self, asset_count):
        event_set = _event_set(asset_count)

        sign_event_set(RecordingSigner(), event_set, relay_hint="wss://relay.example.com")

        assert _references(event_set) == [["e", a.id, "wss://relay.example.com"] for a in event_set.assets]
        assert all(verify_event(e) for e in event_set.all_events())

    def test_signing_order_assets_release_app(self):
        signer = RecordingSigner()

        sign_event_set(signer, _event_set(2))

        assert signer.signed_kinds == [KIND_SOFTWARE_ASSET, KIND_SOFTWARE_ASSET, KIND_RELEASE, KIND_APP_METADATA]

    def test_reference_without_relay_hint(self):
        event_set = _event_set()
        sign_event_set(RecordingSigner(), event_set)
        assert _references(event_set) == [["e", event_set.assets[0].id]]

    def test_failure_names_the_event(self):
        signer = RecordingSigner(fail_on_kind=KIND_RELEASE)

        with pytest.raises(EventSetSigningError, match="Software Release event") as exc_info:
            sign_event_set(signer, _event_set())

        assert "user rejected" in str(exc_info.value)
        assert exc_info.value.__cause__ is not None

    def test_asset_failure_names_index(self):
        signer = RecordingSigner(fail_on_kind=KIND_SOFTWARE_ASSET)

        with pytest.raises(EventSetSigningError, match="Software Asset event 1"):
            sign_event_set(signer, _event_set())

    def test_cancellation_is_not_wrapped(self):
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(OperationCancelledError):
            sign_event_set(RecordingSigner(), _event_set(), cancel=cancel)

    def test_external_signer_leaves_signatures_empty(self):
        event_set = _event_set()

        sign_event_set(ExternalKeySigner(PUBLIC_KEY), event_set)

        assert all(e.sig == "" and e.id == e.compute_id() for e in event_set.all_events())
        assert _references(event_set) == [["e", event_set.assets[0].id]]


class TestBatchSigning:
    def test_single_batch_with_publish_order(self):
        signer = BatchSigner()

        sign_event_set(signer, _event_set(2))

        assert signer.batches == [[KIND_APP_METADATA, KIND_RELEASE, KIND_SOFTWARE_ASSET, KIND_SOFTWARE_ASSET]]

    def test_batch_result_matches_sequential(self):
        sequential, batched = _event_set(2), _event_set(2)

        sign_event_set(RecordingSigner(), sequential, "wss://r")
        sign_event_set(BatchSigner(), batched, "wss://r")

        assert [e.id for e in batched.all_events()] == [e.id for e in sequential.all_events()]
        assert _references(batched) == _references(sequential)


class TestSigningWithUploads:
    def test_batch_signer_prepends_authorizations(self):
        signer = BatchSigner()
        event_set = _event_set()
        hashes = ["aa" * 32, "bb" * 32]

        auth_events = sign_event_set_with_uploads(signer, event_set, hashes, expiration=NOW + 300)

        assert signer.batches == [
            [KIND_BLOSSOM_AUTH, KIND_BLOSSOM_AUTH, KIND_APP_METADATA, KIND_RELEASE, KIND_SOFTWARE_ASSET]
        ]
        assert [a.tag_value("x") for a in auth_events] == hashes
        assert all(verify_event(a) for a in auth_events)
        assert auth_events[0].tag_value("expiration") == str(NOW + 300)

    def test_sequential_signer_signs_authorizations_first(self):
        signer = RecordingSigner()

        auth_events = sign_event_set_with_uploads(signer, _event_set(), ["aa" * 32])

        assert signer.signed_kinds == [KIND_BLOSSOM_AUTH, KIND_SOFTWARE_ASSET, KIND_RELEASE, KIND_APP_METADATA]
        assert len(auth_events) == 1

    def test_no_uploads(self):
        signer = BatchSigner()
        assert sign_event_set_with_uploads(signer, _event_set(), []) == []
        assert signer.batches == [[KIND_APP_METADATA, KIND_RELEASE, KIND_SOFTWARE_ASSET]]

    def test_authorization_failure_named(self):
        signer = RecordingSigner(fail_on_kind=KIND_BLOSSOM_AUTH)

        with pytest.raises(EventSetSigningError, match="upload authorization 1"):
            sign_event_set_with_uploads(signer, _event_set(), ["aa" * 32])


class TestEventsToJsonl:
    def test_one_line_per_event_in_publish_order(self):
        event_set = _event_set(2)
        sign_event_set(RecordingSigner(), event_set)

        lines = events_to_jsonl(event_set).splitlines()

        assert [json.loads(line)["kind"] for line in lines] == [
            KIND_APP_METADATA,
            KIND_RELEASE,
            KIND_SOFTWARE_ASSET,
            KIND_SOFTWARE_ASSET,
        ]
        assert json.loads(lines[1])["id"] == event_set.release.id
