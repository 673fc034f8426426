"""Command line entry point that initialises the attestation validator."""
from __future__ import annotations

import argparse
import logging
import signal
import sys
from typing import Optional, Sequence

from .config import (
    MDS_ENDPOINTS_KEY,
    MDS_METADATA_STATEMENTS_KEY,
    MDS_REVOCATION_CHECK_KEY,
    MDS_ROOT_CERTIFICATE_KEY,
    app,
)
from .scheduler import RefreshScheduler
from .service import InitializationState, MetadataService, MetadataServiceError

EXIT_READY = 0
EXIT_ABORTED = 1
EXIT_FAILED = 2

LOGGER = logging.getLogger("mds_trust.run")


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def _parse_args(argv: Optional[Sequence[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Build the FIDO attestation trust validator from MDS endpoints "
        "and local metadata statements.",
    )
    parser.add_argument("--root-certificate", help="Path to the MDS root certificate.")
    parser.add_argument(
        "--endpoint",
        action="append",
        dest="endpoints",
        help="Metadata service endpoint URL (repeatable).",
    )
    parser.add_argument("--statements", help="Directory of local metadata statements.")
    parser.add_argument(
        "--no-revocation-check",
        action="store_true",
        help="Skip CRL checks of the BLOB signing chain (conformance testing only).",
    )
    parser.add_argument(
        "--watch",
        action="store_true",
        help="Keep running and re-initialise when the metadata becomes stale.",
    )
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parse_args(argv)
    _configure_logging(args.verbose)

    config = dict(app.config)
    if args.root_certificate:
        config[MDS_ROOT_CERTIFICATE_KEY] = args.root_certificate
    if args.endpoints:
        config[MDS_ENDPOINTS_KEY] = args.endpoints
    if args.statements:
        config[MDS_METADATA_STATEMENTS_KEY] = args.statements
    if args.no_revocation_check:
        config[MDS_REVOCATION_CHECK_KEY] = False

    service = MetadataService(config)

    if args.watch:
        scheduler = RefreshScheduler(service)

        def _signal_handler(signum: int, _frame: Optional[object]) -> None:
            LOGGER.info("Received signal %s. Stopping scheduler…", signum)
            scheduler.stop(timeout=0)

        signal.signal(signal.SIGTERM, _signal_handler)
        signal.signal(signal.SIGINT, _signal_handler)
        scheduler.start()
        while not scheduler.wait(timeout=1.0):
            pass
        scheduler.stop()
        return EXIT_READY if service.get_validator() is not None else EXIT_ABORTED

    try:
        state = service.initialize()
    except MetadataServiceError as exc:
        LOGGER.error("%s: %s", exc, exc.__cause__)
        return EXIT_FAILED

    if state is InitializationState.READY:
        LOGGER.info("Attestation trust validator initialised.")
        return EXIT_READY

    LOGGER.warning("Initialisation aborted; no attestation trust validator is available.")
    return EXIT_ABORTED


if __name__ == "__main__":  # pragma: no cover - convenience entry point.
    sys.exit(main())
