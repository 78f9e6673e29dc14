"""Small shared helpers."""

import queue
import threading
import time

from .errors import OperationCancelledError, SignerTimeoutError

# Granularity at which blocking waits re-check the cancellation signal
POLL_INTERVAL = 0.1


def deduplicate_preserving_order(items: list[str]) -> list[str]:
    """Remove duplicates, keeping the first occurrence of each item."""
    seen = set()
    result = []
    for item in items:
        if item not in seen:
            seen.add(item)
            result.append(item)
    return result


def check_cancelled(cancel: threading.Event | None, what: str = "operation") -> None:
    """Raise OperationCancelledError if the cancellation signal is set."""
    if cancel is not None and cancel.is_set():
        raise OperationCancelledError(f"{what} cancelled")


def wait_for_result(results: queue.Queue, timeout: float, cancel: threading.Event | None, what: str):
    """Block until an item arrives on results, the timeout expires, or cancel is set.

    Raises:
        - SignerTimeoutError: nothing arrived within timeout seconds
        - OperationCancelledError: cancel was set while waiting
    """
    deadline = time.monotonic() + timeout
    while True:
        check_cancelled(cancel, what)
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise SignerTimeoutError(f"timed out after {timeout:g}s waiting for {what}")
        try:
            return results.get(timeout=min(POLL_INTERVAL, remaining))
        except queue.Empty:
            continue
