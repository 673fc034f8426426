"""Background scheduler that keeps the attestation validator initialised."""
from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Optional

from .service import MetadataService, MetadataServiceError

_RETRY_INTERVAL = timedelta(minutes=30)
_CHECK_INTERVAL = timedelta(hours=6)

LOGGER = logging.getLogger("mds_trust.scheduler")


class RefreshScheduler:
    """Re-run :meth:`MetadataService.initialize` when it is due.

    Initialisation is due while no validator is published and once any
    provider's BLOB has passed its ``nextUpdate`` date.
    """

    def __init__(
        self,
        service: MetadataService,
        *,
        retry_interval: timedelta = _RETRY_INTERVAL,
        check_interval: timedelta = _CHECK_INTERVAL,
    ) -> None:
        self.service = service
        self.retry_interval = retry_interval
        self.check_interval = check_interval
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_once(self, now: Optional[datetime] = None) -> float:
        """Initialise if due and return the number of seconds to sleep."""

        current = now or datetime.now(timezone.utc)
        if not self.service.needs_refresh(current):
            LOGGER.debug("Attestation validator is current; next check in %s.", self.check_interval)
            return self.check_interval.total_seconds()

        LOGGER.info("Beginning scheduled metadata service initialisation.")
        try:
            self.service.initialize()
        except MetadataServiceError as exc:
            LOGGER.warning("Metadata service initialisation failed: %s", exc)
            return self.retry_interval.total_seconds()

        if self.service.get_validator() is None:
            LOGGER.warning(
                "Metadata service initialisation aborted; retrying in %.0f minutes.",
                self.retry_interval.total_seconds() / 60,
            )
            return self.retry_interval.total_seconds()
        return self.check_interval.total_seconds()

    def _loop(self) -> None:
        LOGGER.info("Starting metadata service refresh scheduler.")
        while not self._stop_event.is_set():
            sleep_for = max(self.run_once(), 60.0)
            self._stop_event.wait(sleep_for)
        LOGGER.info("Stopping metadata service refresh scheduler.")

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._loop, name="mds-refresh-scheduler", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=timeout)

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._stop_event.wait(timeout)


__all__ = ["RefreshScheduler"]
