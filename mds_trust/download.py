"""HTTP(S) retrieval of metadata BLOBs and certificate revocation lists."""
from __future__ import annotations

import logging
import ssl
import urllib.error
import urllib.request
from typing import Callable, Iterable, List, Optional

import certifi

LOGGER = logging.getLogger("mds_trust.download")

_USER_AGENT = "mds-trust/1.0"

Fetcher = Callable[[str, float], bytes]


class MetadataDownloadError(Exception):
    """Raised when a remote metadata resource cannot be downloaded."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        retry_after: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after


def _clean_header_value(value: object) -> Optional[str]:
    if isinstance(value, str):
        stripped = value.strip()
        if stripped:
            return stripped
    return None


def _is_certificate_verification_error(error: BaseException) -> bool:
    if isinstance(error, ssl.SSLCertVerificationError):
        return True

    if isinstance(error, ssl.SSLError):
        error_parts = [str(error)]
        if getattr(error, "reason", None):
            error_parts.append(str(error.reason))
        error_parts.extend(str(arg) for arg in getattr(error, "args", ()) if arg)
        combined = " ".join(part for part in error_parts if part)
        if "certificate verify failed" in combined.lower():
            return True

    return "certificate verify failed" in str(error).lower()


def _ssl_contexts() -> Iterable[ssl.SSLContext]:
    """Yield the system trust store first, then the certifi bundle."""

    contexts: List[ssl.SSLContext] = []

    try:
        contexts.append(ssl.create_default_context())
    except ssl.SSLError as exc:  # pragma: no cover - platform specific
        LOGGER.debug("System TLS trust store unavailable: %s", exc)

    try:
        contexts.append(ssl.create_default_context(cafile=certifi.where()))
    except (OSError, ssl.SSLError) as exc:  # pragma: no cover - platform specific
        LOGGER.debug("certifi TLS trust store unavailable: %s", exc)

    return contexts


def fetch_url(url: str, timeout: float) -> bytes:
    """GET *url* and return the response body.

    Every request is bounded by *timeout* seconds. TLS verification failures
    against the system trust store are retried once with the certifi bundle
    before giving up.
    """

    last_cert_error: Optional[BaseException] = None
    request = urllib.request.Request(url, headers={"User-Agent": _USER_AGENT})

    for context in _ssl_contexts():
        try:
            with urllib.request.urlopen(request, timeout=timeout, context=context) as response:
                status = getattr(response, "status", None) or response.getcode()
                if status != 200:
                    raise MetadataDownloadError(
                        f"Unexpected response status {status} from {url}.",
                        status_code=status,
                    )
                return response.read()
        except urllib.error.HTTPError as exc:
            retry_after = None
            if exc.headers is not None:
                retry_after = _clean_header_value(exc.headers.get("Retry-After"))
            raise MetadataDownloadError(
                f"Failed to download {url} (HTTP {exc.code}).",
                status_code=exc.code,
                retry_after=retry_after,
            ) from exc
        except urllib.error.URLError as exc:
            reason = getattr(exc, "reason", exc)
            if isinstance(reason, BaseException) and _is_certificate_verification_error(reason):
                last_cert_error = reason
                continue
            if _is_certificate_verification_error(exc):
                last_cert_error = exc
                continue
            raise MetadataDownloadError(f"Failed to reach {url}: {reason}") from exc
        except (TimeoutError, OSError) as exc:
            raise MetadataDownloadError(f"Failed to reach {url}: {exc}") from exc

    if last_cert_error is not None:
        raise MetadataDownloadError(
            f"Failed to verify the TLS certificate for {url} ({last_cert_error})."
        ) from last_cert_error
    raise MetadataDownloadError(f"Failed to reach {url}.")


__all__ = ["Fetcher", "MetadataDownloadError", "fetch_url"]
