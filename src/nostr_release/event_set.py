"""Signing of release event sets.

The release references its asset events by id, so assets have to be signed
(or at least have their ids fixed) before the release. Signers that sign one
event at a time go asset by asset; batch signers get every event, upload
authorizations included, in a single request.
"""

import json
import logging
import threading

from .errors import EventSetSigningError, NostrReleaseError, OperationCancelledError
from .event import auth_expiration, build_upload_auth
from .models import Event, EventSet
from .signer import Signer

logger = logging.getLogger(__name__)


def sign_event_set(
    signer: Signer, event_set: EventSet, relay_hint: str = "", cancel: threading.Event | None = None
) -> None:
    """Sign every event of event_set in place.

    CONTRACT:
      Inputs:
        - signer: any Signer; batch_capable signers take the batch path
        - event_set: freshly built EventSet with a pending release
        - relay_hint: optional relay URL added to each asset reference
        - cancel: cancellation signal forwarded to the signer

      Outputs:
        - None (events mutated in place)

      Invariants:
        - Release carries exactly one "e" tag per asset, in asset order,
          each equal to that asset's final id
        - Sequential order: assets, release, app metadata
        - Batch order: app metadata, release, assets

      Raises:
        - EventSetSigningError: naming the event that failed, original error chained
    """
    if signer.batch_capable:
        _sign_batch(signer, event_set, [], relay_hint, cancel)
        return

    for i, asset in enumerate(event_set.assets, start=1):
        _sign_one(signer, asset, f"Software Asset event {i}", cancel)
        event_set.attach_asset_reference(asset.id, relay_hint)
    event_set.mark_references_attached()

    _sign_release(signer, event_set, cancel)
    _sign_one(signer, event_set.app_metadata, "Software Application event", cancel)


def sign_event_set_with_uploads(
    signer: Signer,
    event_set: EventSet,
    upload_hashes: list[str],
    relay_hint: str = "",
    expiration: int | None = None,
    cancel: threading.Event | None = None,
) -> list[Event]:
    """Sign upload authorizations for upload_hashes together with event_set.

    With a batch capable signer the authorizations are prepended to the same
    batch, so one approval covers uploads and release. Otherwise each
    authorization is signed on its own before the event set.

    Returns the signed authorization events in upload_hashes order.
    """
    pubkey = signer.public_key()
    expiration = auth_expiration() if expiration is None else expiration
    auth_events = [build_upload_auth(file_hash, pubkey, expiration) for file_hash in upload_hashes]

    if signer.batch_capable:
        _sign_batch(signer, event_set, auth_events, relay_hint, cancel)
        return auth_events

    for i, auth_event in enumerate(auth_events, start=1):
        _sign_one(signer, auth_event, f"upload authorization {i}", cancel)
    sign_event_set(signer, event_set, relay_hint, cancel)
    return auth_events


def events_to_jsonl(event_set: EventSet) -> str:
    """Serialize app metadata, release and assets as JSON Lines."""
    lines = [json.dumps(event.to_dict(), ensure_ascii=False) for event in event_set.all_events()]
    return "".join(line + "\n" for line in lines)


def _sign_one(signer: Signer, event: Event, label: str, cancel: threading.Event | None) -> None:
    try:
        signer.sign(event, cancel)
    except OperationCancelledError:
        raise
    except NostrReleaseError as e:
        raise EventSetSigningError(f"failed to sign {label}: {e}") from e


def _sign_release(signer: Signer, event_set: EventSet, cancel: threading.Event | None) -> None:
    if not event_set.references_attached:
        raise EventSetSigningError("failed to sign Software Release event: asset references are still pending")
    _sign_one(signer, event_set.release, "Software Release event", cancel)


def _sign_batch(
    signer: Signer,
    event_set: EventSet,
    prefix: list[Event],
    relay_hint: str,
    cancel: threading.Event | None,
) -> None:
    # Asset ids do not depend on sig, so they can be fixed before signing
    pubkey = signer.public_key()
    for asset in event_set.assets:
        asset.pubkey = pubkey
    event_set.attach_asset_references([asset.compute_id() for asset in event_set.assets], relay_hint)

    events = [*prefix, *event_set.all_events()]
    logger.debug("batch signing %d events", len(events))
    try:
        signer.sign_batch(events, cancel)
    except OperationCancelledError:
        raise
    except NostrReleaseError as e:
        raise EventSetSigningError(f"failed to batch sign {len(events)} events: {e}") from e
