"""nostr-release-publish: signed software release attestations on Nostr.

Builds, signs, uploads and publishes app, release and asset events.
"""

__version__ = "0.1.0"
