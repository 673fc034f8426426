"""Resolution of the configured FIDO metadata service endpoints."""
from __future__ import annotations

import logging
import threading
from typing import Any, List, Mapping, Optional, Tuple

from .config import MDS_ENDPOINTS_KEY

LOGGER = logging.getLogger("mds_trust.endpoints")


class EndpointResolver:
    """Memoise the metadata service endpoint list derived from configuration.

    The first successful call to :meth:`resolve` computes the list and every
    later call returns a copy of that cached value, even if the configuration
    changed in the meantime. Only :meth:`reset` forces recomputation.
    """

    def __init__(self, key: str = MDS_ENDPOINTS_KEY) -> None:
        self.key = key
        self._lock = threading.Lock()
        self._endpoints: Optional[Tuple[str, ...]] = None

    def resolve(self, config: Mapping[str, Any]) -> List[str]:
        cached = self._endpoints
        if cached is None:
            with self._lock:
                if self._endpoints is None:
                    self._endpoints = _normalise_endpoints(config.get(self.key), self.key)
                cached = self._endpoints
        return list(cached)

    def reset(self) -> None:
        with self._lock:
            self._endpoints = None


def _normalise_endpoints(value: Any, key: str) -> Tuple[str, ...]:
    if value is None:
        return ()

    if isinstance(value, str):
        return (value,)

    if isinstance(value, (list, tuple)):
        endpoints = []
        for item in value:
            if isinstance(item, str):
                endpoints.append(item)
            else:
                LOGGER.warning("Ignoring non-string MDS endpoint %r in %s.", item, key)
        return tuple(endpoints)

    LOGGER.warning(
        "Unsupported value type %s for %s; treating MDS endpoints as unconfigured.",
        type(value).__name__,
        key,
    )
    return ()


_default_resolver = EndpointResolver()


def get_mds_endpoints(config: Mapping[str, Any]) -> List[str]:
    """Return the process-wide memoised endpoint list."""

    return _default_resolver.resolve(config)


def reset_mds_endpoints() -> None:
    _default_resolver.reset()


def default_endpoint_resolver() -> EndpointResolver:
    return _default_resolver


__all__ = [
    "EndpointResolver",
    "default_endpoint_resolver",
    "get_mds_endpoints",
    "reset_mds_endpoints",
]
