"""Remote FIDO metadata BLOB providers."""
from __future__ import annotations

import logging
import threading
import urllib.parse
from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime, timezone
from typing import Callable, List, Optional, Sequence

from cryptography import x509
from fido2.mds3 import MetadataBlobPayload, parse_blob

from .certificates import certificate_to_der
from .config import DEFAULT_FETCH_TIMEOUT, DEFAULT_FETCH_WORKERS
from .download import Fetcher, fetch_url
from .revocation import check_blob_revocation

LOGGER = logging.getLogger("mds_trust.blob")


class MetadataBlobError(Exception):
    """The metadata BLOB could not be parsed or its signature is invalid."""


class MetadataBlobProvider:
    """A metadata BLOB source bound to one URL and the MDS root certificate.

    Construction only validates its arguments. The BLOB is fetched, checked
    and parsed by :meth:`refresh`, so an unreachable endpoint and a malformed
    endpoint URL surface as different failures.
    """

    def __init__(
        self,
        url: str,
        root_certificate: x509.Certificate,
        *,
        timeout: float = DEFAULT_FETCH_TIMEOUT,
        fetcher: Optional[Fetcher] = None,
    ) -> None:
        if not isinstance(url, str):
            raise ValueError(f"MDS endpoint must be a string, not {type(url).__name__}.")
        parts = urllib.parse.urlsplit(url)
        if parts.scheme not in {"http", "https"} or not parts.netloc:
            raise ValueError(f"Invalid MDS endpoint URL: {url!r}")
        if timeout <= 0:
            raise ValueError("Fetch timeout must be positive.")

        self.url = url
        self.root_certificate = root_certificate
        self.timeout = timeout
        self.revocation_check_enabled = True
        self.last_refreshed: Optional[datetime] = None
        self._fetcher = fetcher or fetch_url
        self._metadata: Optional[MetadataBlobPayload] = None
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.url!r})"

    def refresh(self) -> MetadataBlobPayload:
        """Fetch, verify and parse the BLOB, replacing any previous copy."""

        blob = self._fetcher(self.url, self.timeout)

        try:
            metadata = parse_blob(blob, certificate_to_der(self.root_certificate))
        except Exception as exc:  # pylint: disable=broad-except
            raise MetadataBlobError(
                f"Failed to verify metadata BLOB from {self.url}: {exc}"
            ) from exc

        # CRL locations come from the x5c header, so only follow them once the
        # signature over that header has been verified.
        if self.revocation_check_enabled:
            check_blob_revocation(blob, self.root_certificate, self._fetcher, self.timeout)

        with self._lock:
            self._metadata = metadata
            self.last_refreshed = datetime.now(timezone.utc)

        LOGGER.info(
            "Loaded metadata BLOB no. %s from %s (%d entries).",
            getattr(metadata, "no", "?"),
            self.url,
            len(metadata.entries),
        )
        return metadata

    @property
    def metadata(self) -> MetadataBlobPayload:
        metadata = self._metadata
        if metadata is None:
            raise MetadataBlobError(f"Metadata BLOB from {self.url} has not been loaded.")
        return metadata

    @property
    def next_update(self) -> Optional[date]:
        metadata = self._metadata
        if metadata is None:
            return None
        return getattr(metadata, "next_update", None)

    def is_stale(self, now: Optional[datetime] = None) -> bool:
        """Return whether the BLOB is missing or past its ``nextUpdate`` date."""

        next_update = self.next_update
        if next_update is None:
            return self._metadata is None
        current = (now or datetime.now(timezone.utc)).astimezone(timezone.utc).date()
        return current >= next_update


ProviderFactory = Callable[..., MetadataBlobProvider]


def _build_provider(
    url: str,
    root_certificate: x509.Certificate,
    *,
    revocation_check_enabled: bool,
    timeout: float,
    provider_factory: ProviderFactory,
) -> Optional[MetadataBlobProvider]:
    try:
        provider = provider_factory(url, root_certificate, timeout=timeout)
    except Exception as exc:  # pylint: disable=broad-except
        LOGGER.error(
            "Exception in constructing url based MDS blob provider for %s. "
            "Dropping the provider. Reason: %s",
            url,
            exc,
        )
        return None

    provider.revocation_check_enabled = revocation_check_enabled

    try:
        provider.refresh()
    except Exception as exc:  # pylint: disable=broad-except
        LOGGER.error(
            "Exception in refreshing url based MDS blob provider for %s. "
            "Dropping the provider. Reason: %s",
            url,
            exc,
        )
        return None

    return provider


def build_blob_providers(
    urls: Sequence[str],
    root_certificate: x509.Certificate,
    *,
    revocation_check_enabled: bool = True,
    timeout: float = DEFAULT_FETCH_TIMEOUT,
    max_workers: int = DEFAULT_FETCH_WORKERS,
    provider_factory: Optional[ProviderFactory] = None,
) -> List[MetadataBlobProvider]:
    """Build and refresh one provider per URL, keeping only the healthy ones.

    Failures are logged and the failing URL is skipped. The result keeps the
    relative order of *urls* and may be empty.
    """

    factory = provider_factory or MetadataBlobProvider
    if not revocation_check_enabled:
        LOGGER.warning(
            "Revocation checking of metadata BLOB signing certificates is disabled."
        )

    def _build(url: str) -> Optional[MetadataBlobProvider]:
        return _build_provider(
            url,
            root_certificate,
            revocation_check_enabled=revocation_check_enabled,
            timeout=timeout,
            provider_factory=factory,
        )

    if max_workers > 1 and len(urls) > 1:
        with ThreadPoolExecutor(
            max_workers=min(max_workers, len(urls)), thread_name_prefix="mds-fetch"
        ) as executor:
            results = list(executor.map(_build, urls))
    else:
        results = [_build(url) for url in urls]

    return [provider for provider in results if provider is not None]


__all__ = [
    "MetadataBlobError",
    "MetadataBlobProvider",
    "ProviderFactory",
    "build_blob_providers",
]
