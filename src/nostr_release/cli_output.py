"""CLI output formatting for structured JSON results.

Formats publish and check results as single JSON objects for scripts and CI.
"""

import json

from .keys import encode_naddr
from .models import KIND_APP_METADATA, ExistingAsset, PublishResult, UploadResult


def _dumps(output: dict) -> str:
    return json.dumps(output, ensure_ascii=False, sort_keys=True, separators=(", ", ": "))


def format_relay_results(results: dict[str, list[PublishResult]]) -> dict:
    """Per event type, the per-relay outcome as plain dictionaries."""
    formatted = {}
    for event_type, relay_results in results.items():
        entries = []
        for result in relay_results:
            entry = {"relay": result.relay_url, "success": result.success}
            if result.is_duplicate:
                entry["duplicate"] = True
            if result.error and not result.success:
                entry["error"] = result.error
            entries.append(entry)
        formatted[event_type] = entries
    return formatted


def format_publish_outcome(outcome) -> str:
    """Format a PublishOutcome as a single JSON object.

    CONTRACT:
      Inputs:
        - outcome: PublishOutcome from PublishSession.run()

      Outputs:
        - json_string: single-line JSON with sorted keys

      Invariants:
        - status, identifier and version are always present
        - pubkey and naddr (app address) are present once a signer was set up
        - events maps event type to event id when events were built
        - relays is present when anything was published
        - uploads is present when blobs were uploaded or found
        - existing is present when the release was already on a relay
        - No trailing newline (caller adds if needed)
    """
    output = {"status": outcome.status, "identifier": outcome.identifier, "version": outcome.version}

    if outcome.pubkey:
        output["pubkey"] = outcome.pubkey
        output["naddr"] = encode_naddr(outcome.pubkey, KIND_APP_METADATA, outcome.identifier)

    if outcome.event_set is not None:
        events = {
            "software_application": outcome.event_set.app_metadata.id,
            "software_release": outcome.event_set.release.id,
        }
        assets = outcome.event_set.assets
        for i, asset in enumerate(assets, start=1):
            events["software_asset" if len(assets) == 1 else f"software_asset_{i}"] = asset.id
        output["events"] = events

    if outcome.results:
        output["relays"] = format_relay_results(outcome.results)

    if outcome.uploads:
        output["uploads"] = [format_upload(upload) for upload in outcome.uploads]

    if outcome.existing is not None:
        output["existing"] = format_existing(outcome.existing)

    return _dumps(output)


def format_upload(upload: UploadResult) -> dict:
    return {"url": upload.url, "sha256": upload.sha256, "size": upload.size, "existed": upload.existed}


def format_existing(existing: ExistingAsset) -> dict:
    return {"event_id": existing.event.id, "relay": existing.relay_url, "version": existing.version}


def format_check_result(identifier: str, version: str, existing: ExistingAsset | None) -> str:
    """Format the result of a check command as a single JSON object."""
    output = {"identifier": identifier, "version": version, "exists": existing is not None}
    if existing is not None:
        output.update(format_existing(existing))
    return _dumps(output)
