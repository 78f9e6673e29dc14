"""Shared fixtures for integration tests.

Integration tests talk to a real relay (and optionally a Blossom server).
They are skipped unless the endpoints are configured:
- NOSTR_RELEASE_RELAY_URL      relay to publish to, e.g. ws://localhost:8080
- NOSTR_RELEASE_BLOSSOM_URL    Blossom server, e.g. http://localhost:3000

These are loaded from .env file (if present) via python-dotenv.

CAVEAT: published events stay on the relay. Point these variables at a
disposable local relay, never at a production one.
"""

import os
import secrets

import pytest
from dotenv import load_dotenv

from nostr_release.signer import LocalKeySigner

# Load .env file if present (enables running pytest directly without make)
load_dotenv()

RELAY_URL = os.environ.get("NOSTR_RELEASE_RELAY_URL", "")
BLOSSOM_URL = os.environ.get("NOSTR_RELEASE_BLOSSOM_URL", "")

# Secret key '1'; never use outside tests
TEST_PRIVATE_KEY = "0000000000000000000000000000000000000000000000000000000000000001"
TEST_TIMEOUT = 30


def pytest_collection_modifyitems(config, items):
    for item in items:
        if "integration" in item.nodeid.split("::")[0].split("/"):
            item.add_marker(pytest.mark.integration)


@pytest.fixture
def relay_url():
    if not RELAY_URL:
        pytest.skip("NOSTR_RELEASE_RELAY_URL not set")
    return RELAY_URL


@pytest.fixture
def blossom_url():
    if not BLOSSOM_URL:
        pytest.skip("NOSTR_RELEASE_BLOSSOM_URL not set")
    return BLOSSOM_URL


@pytest.fixture
def signer():
    return LocalKeySigner(TEST_PRIVATE_KEY)


@pytest.fixture
def timeout():
    return TEST_TIMEOUT


@pytest.fixture
def app_identifier():
    """Fresh identifier per test so reruns never collide with earlier events."""
    return f"dev.nostr-release.test{secrets.token_hex(4)}"
