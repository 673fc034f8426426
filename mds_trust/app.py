"""Application entry point for the MDS trust service."""
from __future__ import annotations

import os

from .config import MDS_INITIALIZE_ON_START_KEY, app
from .routes import get_metadata_service


def initialize_on_start() -> None:
    """Initialise the validator at startup when configured to do so."""

    if app.config.get(MDS_INITIALIZE_ON_START_KEY):
        get_metadata_service().initialize()


def main() -> None:
    initialize_on_start()
    app.run(
        host=os.environ.get("FIDO_SERVER_HOST", "127.0.0.1"),
        port=int(os.environ.get("FIDO_SERVER_PORT", "5000")),
    )


__all__ = ["app", "initialize_on_start", "main"]


if __name__ == "__main__":  # pragma: no cover - convenience script entry point.
    main()
