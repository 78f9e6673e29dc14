"""CLI entrypoint for nostr-release.

Command-line interface for publishing software releases to Nostr relays and
checking whether a release has already been published.
"""

import argparse
import logging
import signal
import sys
import threading
from pathlib import Path

from . import __version__
from .cli_output import format_check_result, format_publish_outcome
from .config import load_manifest, load_settings
from .errors import NostrReleaseError, OperationCancelledError
from .event_set import events_to_jsonl
from .relay import RelayPublisher, warn_insecure_relays
from .workflow import STATUS_DRY_RUN, STATUS_EXISTS, STATUS_PARTIAL, STATUS_UNSIGNED, PublishSession

EXIT_CANCELLED = 130


def main(argv: list[str] | None = None) -> int:
    """Main CLI entrypoint.

    CONTRACT:
      Inputs:
        - argv: list of command-line argument strings (or None to use sys.argv)

      Outputs:
        - exit_code: 0 on success, 1 on error or partial publish, 130 when cancelled

      Invariants:
        - publish MANIFEST: upload, sign and publish one release
        - publish --dry-run: print events as JSON lines, touch no network
        - check IDENTIFIER VERSION: report whether the asset is on a relay
        - Results are printed to stdout as one JSON object
        - Errors are printed to stderr as "ERROR: {error_type}: {message}"

      Error Handling:
        - NostrReleaseError and file errors are reported, never raised
        - First Ctrl+C cancels blocking operations, a second one aborts
    """
    try:
        args = parse_arguments(argv if argv is not None else sys.argv[1:])
        configure_logging(args.verbose)

        cancel = threading.Event()
        with cancel_on_interrupt(cancel):
            if args.command == "check":
                return run_check(args, cancel)
            return run_publish(args, cancel)

    except OperationCancelledError as e:
        sys.stderr.write(f"ERROR: OperationCancelledError: {str(e)}\n")
        return EXIT_CANCELLED
    except NostrReleaseError as e:
        error_type = type(e).__name__
        sys.stderr.write(f"ERROR: {error_type}: {str(e)}\n")
        return 1
    except FileNotFoundError as e:
        sys.stderr.write(f"ERROR: FileNotFoundError: {str(e)}\n")
        return 1
    except PermissionError as e:
        sys.stderr.write(f"ERROR: PermissionError: {str(e)}\n")
        return 1
    except KeyboardInterrupt:
        sys.stderr.write("ERROR: Interrupted\n")
        return EXIT_CANCELLED


def run_publish(args: argparse.Namespace, cancel: threading.Event) -> int:
    """Publish the release described by args.manifest."""
    settings = load_settings(
        sign_with=args.sign_with,
        relays=args.relays,
        blossom_url=args.blossom_url,
        browser_port=args.port,
        relay_timeout=args.timeout,
        signer_timeout=args.signer_timeout,
    )
    warn_insecure_relays(settings.relay_urls)
    manifest = load_manifest(args.manifest)

    with PublishSession(
        settings,
        manifest,
        cancel=cancel,
        dry_run=args.dry_run,
        overwrite_release=args.overwrite_release,
    ) as session:
        outcome = session.run()

    if outcome.status in (STATUS_DRY_RUN, STATUS_UNSIGNED):
        sys.stdout.write(events_to_jsonl(outcome.event_set))
        if outcome.status == STATUS_DRY_RUN:
            sys.stderr.write(f"Relays: {', '.join(settings.relay_urls)}\n")
        return 0

    print(format_publish_outcome(outcome))

    if outcome.status == STATUS_EXISTS:
        sys.stderr.write(
            f"WARNING: {outcome.identifier}@{outcome.version} already exists on {outcome.existing.relay_url}; "
            "use --overwrite-release to publish anyway\n"
        )
        return 0
    if outcome.status == STATUS_PARTIAL:
        sys.stderr.write("WARNING: published with some failures\n")
        return 1
    return 0


def run_check(args: argparse.Namespace, cancel: threading.Event) -> int:
    """Report whether IDENTIFIER@VERSION already has an asset event on a relay."""
    settings = load_settings(relays=args.relays, relay_timeout=args.timeout)
    warn_insecure_relays(settings.relay_urls)

    publisher = RelayPublisher(settings.relay_urls, timeout=settings.relay_timeout)
    existing = publisher.check_existing_asset(args.identifier, args.version, cancel)
    print(format_check_result(args.identifier, args.version, existing))
    return 0


def parse_arguments(argv: list[str]) -> argparse.Namespace:
    """Parse CLI arguments.

    CONTRACT:
      Inputs:
        - argv: list of command-line argument strings (excluding program name)

      Outputs:
        - args: Namespace with command and its options

      Invariants:
        - A subcommand (publish or check) is required
        - --relay can appear multiple times and overrides RELAY_URLS
        - --timeout must be positive
        - Invalid arguments exit with a usage message
    """
    parser = argparse.ArgumentParser(
        prog="nostr-release", description="Publish signed software releases to Nostr relays and Blossom"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--relay",
        dest="relays",
        action="append",
        default=[],
        help="Relay URL (repeatable; defaults to RELAY_URLS or wss://relay.zapstore.dev)",
    )
    common.add_argument(
        "--timeout",
        dest="timeout",
        type=float,
        default=None,
        help="Timeout in seconds for each relay operation (default: 30)",
    )
    common.add_argument("-v", "--verbose", dest="verbose", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True)

    publish = subparsers.add_parser("publish", parents=[common], help="Upload, sign and publish a release")
    publish.add_argument("manifest", type=Path, help="Release manifest (YAML or JSON)")
    publish.add_argument(
        "--sign-with",
        dest="sign_with",
        default=None,
        help="nsec, npub, hex key, bunker:// URL or 'browser' (defaults to SIGN_WITH)",
    )
    publish.add_argument("--blossom", dest="blossom_url", default=None, help="Blossom server URL (defaults to BLOSSOM_URL)")
    publish.add_argument("--port", dest="port", type=int, default=None, help="Browser signer port (0 picks a free port)")
    publish.add_argument(
        "--signer-timeout",
        dest="signer_timeout",
        type=float,
        default=None,
        help="Seconds to wait for bunker or browser approval (default: 120)",
    )
    publish.add_argument(
        "--dry-run",
        dest="dry_run",
        action="store_true",
        help="Build and sign events and print them without uploading or publishing",
    )
    publish.add_argument(
        "--overwrite-release",
        dest="overwrite_release",
        action="store_true",
        help="Publish even if this version already exists on a relay",
    )

    check = subparsers.add_parser("check", parents=[common], help="Check whether a release was already published")
    check.add_argument("identifier", help="App identifier, e.g. com.example.app")
    check.add_argument("version", help="Release version")

    parsed = parser.parse_args(argv)

    if parsed.timeout is not None and parsed.timeout <= 0:
        parser.error("--timeout must be positive")
    if parsed.command == "publish" and parsed.signer_timeout is not None and parsed.signer_timeout <= 0:
        parser.error("--signer-timeout must be positive")

    return parsed


def configure_logging(verbose: bool) -> None:
    """Send library logging to stderr; DEBUG with --verbose, WARNING otherwise."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
    root = logging.getLogger("nostr_release")
    root.handlers[:] = [handler]
    root.setLevel(logging.DEBUG if verbose else logging.WARNING)
    root.propagate = False


class cancel_on_interrupt:
    """Context manager: the first SIGINT sets cancel, the next one interrupts.

    Only installs the handler on the main thread.
    """

    def __init__(self, cancel: threading.Event):
        self.cancel = cancel
        self._previous = None

    def _handle(self, signum, frame):
        if self.cancel.is_set():
            raise KeyboardInterrupt
        sys.stderr.write("Cancelling... press Ctrl+C again to abort\n")
        self.cancel.set()

    def __enter__(self):
        if threading.current_thread() is threading.main_thread():
            self._previous = signal.signal(signal.SIGINT, self._handle)
        return self.cancel

    def __exit__(self, exc_type, exc, tb):
        if self._previous is not None:
            signal.signal(signal.SIGINT, self._previous)
        return False


if __name__ == "__main__":
    sys.exit(main())
