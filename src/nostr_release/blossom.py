"""Blossom blob store client.

Blobs are addressed by their sha256. Every upload is authorized by a signed
kind 24242 event scoped to that one hash, sent base64 encoded in the
Authorization header.
"""

import base64
import hashlib
import json
import logging
import threading
from pathlib import Path

import httpx

from .errors import BlossomUploadError, NostrReleaseError, OperationCancelledError
from .event import auth_expiration, build_upload_auth
from .models import Event, UploadResult
from .signer import Signer
from .utils import check_cancelled

logger = logging.getLogger(__name__)

DEFAULT_SERVER = "https://cdn.zapstore.dev"

# Seconds allowed for one HTTP exchange; uploads can be large
HTTP_TIMEOUT = 300

MAX_CONCURRENT_CHECKS = 4

CHUNK_SIZE = 1024 * 1024


def auth_header(auth_event: Event) -> str:
    """Authorization header value for a signed upload authorization."""
    payload = json.dumps(auth_event.to_dict(), separators=(",", ":"), ensure_ascii=False)
    return "Nostr " + base64.b64encode(payload.encode("utf-8")).decode("ascii")


def sha256_of(source: bytes | str | Path) -> str:
    """Hex sha256 of a byte string or of a file's contents."""
    if isinstance(source, bytes):
        return hashlib.sha256(source).hexdigest()

    digest = hashlib.sha256()
    with open(source, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


class BlossomClient:
    """Checks for and uploads blobs on one Blossom server.

    CONTRACT:
      Inputs:
        - server_url: server base URL (defaults to DEFAULT_SERVER)
        - timeout: seconds per HTTP exchange
        - http_client: optional httpx.Client (tests inject a MockTransport)

      Invariants:
        - Existence is checked before any transfer unless the caller supplies it
        - A present blob is never transferred again (existed=True, no PUT)
        - Content is hashed before transfer; a mismatch aborts the upload
    """

    def __init__(self, server_url: str = DEFAULT_SERVER, timeout: float = HTTP_TIMEOUT, http_client=None):
        self.server_url = (server_url or DEFAULT_SERVER).rstrip("/")
        self.timeout = timeout
        self._owns_client = http_client is None
        self._client = http_client or httpx.Client(timeout=timeout, follow_redirects=True)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def blob_url(self, sha256: str) -> str:
        return f"{self.server_url}/{sha256}"

    def exists(self, sha256: str, cancel: threading.Event | None = None) -> bool:
        """Return True only if HEAD {server}/{sha256} answers 200.

        Raises:
            - OperationCancelledError: cancel was set before the request
            - BlossomUploadError: the server could not be reached
        """
        check_cancelled(cancel, "existence check")
        try:
            response = self._client.head(self.blob_url(sha256), timeout=self.timeout)
        except httpx.HTTPError as e:
            raise BlossomUploadError(f"failed to check existence of {sha256}: {e}") from e
        return response.status_code == 200

    def exists_batch(
        self,
        hashes: list[str],
        max_concurrent: int = MAX_CONCURRENT_CHECKS,
        cancel: threading.Event | None = None,
    ) -> dict[str, bool]:
        """Check many hashes in parallel; a failed check counts as absent.

        Cancellation is not swallowed: once cancel is set the remaining
        workers stop and OperationCancelledError is raised after they join.
        """
        if max_concurrent <= 0:
            max_concurrent = MAX_CONCURRENT_CHECKS
        check_cancelled(cancel, "existence check")

        results: dict[str, bool] = {}
        cancelled: list[OperationCancelledError] = []
        lock = threading.Lock()
        semaphore = threading.BoundedSemaphore(max_concurrent)

        def check(file_hash: str) -> None:
            with semaphore:
                try:
                    found = self.exists(file_hash, cancel)
                except OperationCancelledError as e:
                    with lock:
                        cancelled.append(e)
                    return
                except BlossomUploadError as e:
                    logger.debug("existence check failed, will upload: %s", e)
                    found = False
            with lock:
                results[file_hash] = found

        threads = [threading.Thread(target=check, args=(h,), daemon=True) for h in dict.fromkeys(hashes)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        if cancelled:
            raise cancelled[0]
        return results

    def upload(
        self,
        source: bytes | str | Path,
        sha256: str,
        signer: Signer,
        content_type: str | None = None,
        cancel: threading.Event | None = None,
    ) -> UploadResult:
        """Sign a fresh upload authorization with signer and upload source.

        Existence is checked first so that nothing is signed for content the
        server already has.
        """
        if self.exists(sha256, cancel):
            return self._existing(sha256, source)

        auth_event = build_upload_auth(sha256, signer.public_key(), auth_expiration())
        try:
            signer.sign(auth_event, cancel)
        except OperationCancelledError:
            raise
        except NostrReleaseError as e:
            raise BlossomUploadError(f"failed to sign upload authorization: {e}") from e
        return self.upload_with_auth(
            source, sha256, auth_event, content_type=content_type, existed=False, cancel=cancel
        )

    def upload_with_auth(
        self,
        source: bytes | str | Path,
        sha256: str,
        auth_event: Event,
        content_type: str | None = None,
        existed: bool | None = None,
        cancel: threading.Event | None = None,
    ) -> UploadResult:
        """Upload source with a pre-signed authorization.

        CONTRACT:
          Inputs:
            - source: blob bytes or path to a file
            - sha256: expected hex digest of source
            - auth_event: signed kind 24242 event for sha256
            - content_type: Content-Type for the PUT (omitted when None)
            - existed: pre-checked existence; None asks the server first
            - cancel: checked before every request

          Outputs:
            - UploadResult (existed=True when nothing was sent)

          Raises:
            - OperationCancelledError: cancel was set before the PUT
            - BlossomUploadError: digest mismatch, transport error or non-2xx
        """
        if existed is None:
            existed = self.exists(sha256, cancel)
        if existed:
            return self._existing(sha256, source)

        data = self._read(source)
        actual = hashlib.sha256(data).hexdigest()
        if actual != sha256.lower():
            raise BlossomUploadError(f"content hash mismatch: expected {sha256}, got {actual}")

        headers = {"Authorization": auth_header(auth_event)}
        if content_type:
            headers["Content-Type"] = content_type

        check_cancelled(cancel, "upload")
        logger.info("uploading %s (%d bytes) to %s", sha256, len(data), self.server_url)
        try:
            response = self._client.put(
                f"{self.server_url}/upload", content=data, headers=headers, timeout=self.timeout
            )
        except httpx.HTTPError as e:
            raise BlossomUploadError(f"upload failed: {e}") from e

        if response.status_code not in (200, 201):
            reason = response.headers.get("X-Reason") or response.text
            raise BlossomUploadError(f"upload failed with status {response.status_code}: {reason}")

        result = UploadResult(url=self.blob_url(sha256), sha256=sha256, size=len(data), mime_type=content_type or "")
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            result.url = body.get("url") or result.url
            result.sha256 = body.get("sha256") or result.sha256
            result.size = int(body.get("size") or result.size)
            result.mime_type = body.get("type") or result.mime_type
        return result

    def _existing(self, sha256: str, source: bytes | str | Path) -> UploadResult:
        if isinstance(source, bytes):
            size = len(source)
        else:
            try:
                size = Path(source).stat().st_size
            except OSError:
                size = 0
        logger.info("blob %s already on %s, skipping upload", sha256, self.server_url)
        return UploadResult(url=self.blob_url(sha256), sha256=sha256, size=size, existed=True)

    @staticmethod
    def _read(source: bytes | str | Path) -> bytes:
        if isinstance(source, bytes):
            return source
        try:
            return Path(source).read_bytes()
        except OSError as e:
            raise BlossomUploadError(f"failed to read {source}: {e}") from e
