"""Initialisation of the attestation trustworthiness validator.

The pipeline loads the MDS root certificate, builds one remote metadata BLOB
provider per configured endpoint, optionally adds local metadata statements
and publishes a certificate path validator over the combined trust anchors.
Only a missing or unreadable root certificate is reported to the caller;
every other failure is logged and reflected in whether a validator is
available afterwards.
"""
from __future__ import annotations

import enum
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from .anchors import MetadataBlobTrustAnchorRepository, aggregate_repositories
from .blob import MetadataBlobProvider, ProviderFactory, build_blob_providers
from .certificates import RootCertificateError, load_root_certificate
from .config import (
    MDS_METADATA_STATEMENTS_KEY,
    MDS_REVOCATION_CHECK_KEY,
    MDS_ROOT_CERTIFICATE_KEY,
    read_flag,
    read_path,
    read_timeout,
    read_workers,
)
from .endpoints import EndpointResolver, default_endpoint_resolver
from .statements import Absent, Present, load_local_statements
from .validator import CertPathTrustworthinessValidator

LOGGER = logging.getLogger("mds_trust.service")


class MetadataServiceError(Exception):
    """Raised when the metadata service cannot be initialised."""


class InitializationState(str, enum.Enum):
    NOT_STARTED = "not_started"
    LOADING_ROOT = "loading_root"
    BUILDING_PROVIDERS = "building_providers"
    BUILDING_REPOSITORY = "building_repository"
    READY = "ready"
    ABORTED = "aborted"
    FAILED = "failed"


class MetadataService:
    """Builds and publishes the process-wide attestation validator."""

    def __init__(
        self,
        config: Mapping[str, Any],
        *,
        endpoint_resolver: Optional[EndpointResolver] = None,
        provider_factory: Optional[ProviderFactory] = None,
    ) -> None:
        self.config = config
        self.endpoint_resolver = endpoint_resolver or default_endpoint_resolver()
        self.provider_factory = provider_factory
        self.state = InitializationState.NOT_STARTED
        self.last_attempt: Optional[datetime] = None
        self.last_success: Optional[datetime] = None
        self.last_error: Optional[str] = None
        self._providers: List[MetadataBlobProvider] = []
        self._local_statement_count = 0
        self._validator: Optional[CertPathTrustworthinessValidator] = None
        self._run_lock = threading.Lock()
        self._attempts = 0

    def get_validator(self) -> Optional[CertPathTrustworthinessValidator]:
        """Return the published validator, or ``None`` if none is available."""

        return self._validator

    @property
    def providers(self) -> List[MetadataBlobProvider]:
        return list(self._providers)

    def initialize(self) -> InitializationState:
        """Run the initialisation pipeline and publish a fresh validator.

        Raises :class:`MetadataServiceError` when the MDS root certificate
        cannot be loaded. Returns :attr:`InitializationState.ABORTED` without
        touching the published validator when no trust source is available.
        """

        with self._run_lock:
            return self._initialize_locked()

    def _initialize_locked(self) -> InitializationState:
        self._attempts += 1
        self.last_attempt = datetime.now(timezone.utc)
        self.last_error = None

        self.state = InitializationState.LOADING_ROOT
        try:
            root_certificate = load_root_certificate(
                read_path(self.config, MDS_ROOT_CERTIFICATE_KEY)
            )
        except RootCertificateError as exc:
            self.state = InitializationState.FAILED
            self.last_error = str(exc)
            LOGGER.error("Exception in reading the FIDO2 mds root certificate: %s", exc)
            raise MetadataServiceError(
                "Exception in reading the FIDO2 mds root certificate"
            ) from exc

        self.state = InitializationState.BUILDING_PROVIDERS
        endpoints = self.endpoint_resolver.resolve(self.config)
        providers = build_blob_providers(
            endpoints,
            root_certificate,
            revocation_check_enabled=read_flag(self.config, MDS_REVOCATION_CHECK_KEY, True),
            timeout=read_timeout(self.config),
            max_workers=read_workers(self.config),
            provider_factory=self.provider_factory,
        )

        if endpoints and not providers:
            self.state = InitializationState.ABORTED
            LOGGER.debug(
                "Ended up in an empty url based metadata BLOB providers list. "
                "Hence aborting the current initialization."
            )
            return self.state

        self.state = InitializationState.BUILDING_REPOSITORY
        blob_repository = MetadataBlobTrustAnchorRepository(providers) if providers else None
        local_statements = load_local_statements(
            read_path(self.config, MDS_METADATA_STATEMENTS_KEY)
        )
        repository = aggregate_repositories(blob_repository, local_statements)
        if repository is None:
            self.state = InitializationState.ABORTED
            LOGGER.debug(
                "No MDS endpoints or local metadata statements are available. "
                "Hence aborting the current initialization."
            )
            return self.state

        validator = CertPathTrustworthinessValidator(repository, full_chain_prohibited=True)

        self._providers = providers
        self._local_statement_count = (
            len(local_statements.provider) if isinstance(local_statements, Present) else 0
        )
        self._validator = validator
        self.state = InitializationState.READY
        self.last_success = datetime.now(timezone.utc)
        LOGGER.info(
            "Attestation trust validator ready (%d MDS BLOB providers, %s).",
            len(providers),
            "no local statements"
            if isinstance(local_statements, Absent)
            else f"{self._local_statement_count} local statements",
        )
        return self.state

    def ensure_validator(self) -> Optional[CertPathTrustworthinessValidator]:
        """Return the validator, initialising first if none is published.

        Callers that queue up behind a run already in progress share its
        outcome instead of starting runs of their own.
        """

        validator = self._validator
        if validator is not None:
            return validator

        attempts_seen = self._attempts
        with self._run_lock:
            # A run that finished while we waited for the lock answers for us.
            if self._validator is not None or self._attempts != attempts_seen:
                return self._validator
            try:
                self._initialize_locked()
            except MetadataServiceError:
                LOGGER.warning("Metadata service initialisation failed; validator unavailable.")
                return None
        return self._validator

    def needs_refresh(self, now: Optional[datetime] = None) -> bool:
        if self._validator is None:
            return True
        return any(provider.is_stale(now) for provider in self._providers)

    def status(self) -> Dict[str, Any]:
        def _iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value is not None else None

        providers = []
        for provider in self._providers:
            next_update = provider.next_update
            providers.append(
                {
                    "url": provider.url,
                    "revocationCheckEnabled": provider.revocation_check_enabled,
                    "lastRefreshed": _iso(provider.last_refreshed),
                    "nextUpdate": next_update.isoformat() if next_update else None,
                }
            )

        return {
            "state": self.state.value,
            "validatorAvailable": self._validator is not None,
            "endpoints": self.endpoint_resolver.resolve(self.config),
            "providers": providers,
            "localStatements": self._local_statement_count,
            "lastAttempt": _iso(self.last_attempt),
            "lastSuccess": _iso(self.last_success),
            "lastError": self.last_error,
        }


__all__ = ["InitializationState", "MetadataService", "MetadataServiceError"]
