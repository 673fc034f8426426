"""Trust anchor repositories backed by metadata BLOBs and local statements."""
from __future__ import annotations

import abc
import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable, List, Optional, Sequence, Union

from cryptography import x509

from .blob import MetadataBlobError, MetadataBlobProvider
from .certificates import RootCertificateError, load_certificate
from .statements import Absent, LocalFilesMetadataStatementsProvider, LocalStatements, Present

LOGGER = logging.getLogger("mds_trust.anchors")

AaguidLike = Union[bytes, bytearray, str]

# Latest status reports that withdraw trust from an authenticator model.
UNTRUSTED_STATUSES = frozenset(
    {
        "REVOKED",
        "USER_KEY_REMOTE_COMPROMISE",
        "USER_KEY_PHYSICAL_COMPROMISE",
        "ATTESTATION_KEY_COMPROMISE",
        "USER_VERIFICATION_BYPASS",
    }
)


@dataclass(frozen=True)
class TrustAnchor:
    """A certificate that attestation chains may terminate at."""

    certificate: x509.Certificate
    source: str


def normalise_aaguid(value: Optional[AaguidLike]) -> Optional[bytes]:
    """Return the 16 raw AAGUID bytes, accepting bytes or UUID text."""

    if value is None:
        return None
    if isinstance(value, str):
        cleaned = value.strip().replace("-", "")
        try:
            raw = bytes.fromhex(cleaned)
        except ValueError:
            return None
    else:
        raw = bytes(value)
    return raw if len(raw) == 16 else None


def _normalise_key_identifier(value: Any) -> Optional[bytes]:
    if isinstance(value, str):
        try:
            return bytes.fromhex(value.strip())
        except ValueError:
            return None
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    return None


def _statement_anchors(statement: Any, source: str) -> List[TrustAnchor]:
    anchors: List[TrustAnchor] = []
    for der in getattr(statement, "attestation_root_certificates", None) or ():
        try:
            anchors.append(TrustAnchor(load_certificate(der), source))
        except RootCertificateError as exc:
            LOGGER.warning("Ignoring unparsable attestation root certificate from %s: %s", source, exc)
    return anchors


def _matches_aaguid(candidate: Any, aaguid: bytes) -> bool:
    return candidate is not None and bytes(candidate) == aaguid


def _matches_key_identifier(identifiers: Optional[Iterable[Any]], key_identifier: bytes) -> bool:
    for identifier in identifiers or ():
        if _normalise_key_identifier(identifier) == key_identifier:
            return True
    return False


def _status_value(report: Any) -> str:
    status = getattr(report, "status", None)
    return str(getattr(status, "value", status) or "")


def entry_is_trusted(entry: Any) -> bool:
    """Reject BLOB entries whose most recent status report withdraws trust."""

    reports = list(getattr(entry, "status_reports", None) or ())
    if not reports:
        return True

    dated = [report for report in reports if getattr(report, "effective_date", None)]
    latest = max(dated, key=lambda report: report.effective_date) if dated else reports[-1]
    return _status_value(latest) not in UNTRUSTED_STATUSES


class TrustAnchorRepository(abc.ABC):
    """Looks up attestation trust anchors for an authenticator model."""

    @abc.abstractmethod
    def find_by_aaguid(self, aaguid: AaguidLike) -> List[TrustAnchor]:
        """Return the anchors registered for an AAGUID."""

    @abc.abstractmethod
    def find_by_key_identifier(self, key_identifier: bytes) -> List[TrustAnchor]:
        """Return the anchors registered for an attestation key identifier."""


class MetadataBlobTrustAnchorRepository(TrustAnchorRepository):
    """Anchors listed in the metadata statements of one or more BLOBs.

    Providers are queried on every lookup so a refreshed BLOB takes effect
    without rebuilding the repository.
    """

    def __init__(
        self,
        providers: Sequence[MetadataBlobProvider],
        *,
        entry_filter: Optional[Callable[[Any], bool]] = entry_is_trusted,
    ) -> None:
        self.providers = tuple(providers)
        self.entry_filter = entry_filter

    def _entries(self) -> Iterable[tuple]:
        for provider in self.providers:
            try:
                metadata = provider.metadata
            except MetadataBlobError as exc:
                LOGGER.warning("Skipping MDS BLOB provider %s: %s", provider.url, exc)
                continue
            for entry in metadata.entries:
                if self.entry_filter is not None and not self.entry_filter(entry):
                    continue
                yield provider, entry

    def find_by_aaguid(self, aaguid: AaguidLike) -> List[TrustAnchor]:
        wanted = normalise_aaguid(aaguid)
        if wanted is None:
            return []

        anchors: List[TrustAnchor] = []
        for provider, entry in self._entries():
            statement = getattr(entry, "metadata_statement", None)
            candidate = getattr(entry, "aaguid", None)
            if candidate is None and statement is not None:
                candidate = getattr(statement, "aaguid", None)
            if statement is not None and _matches_aaguid(candidate, wanted):
                anchors.extend(_statement_anchors(statement, provider.url))
        return anchors

    def find_by_key_identifier(self, key_identifier: bytes) -> List[TrustAnchor]:
        anchors: List[TrustAnchor] = []
        for provider, entry in self._entries():
            statement = getattr(entry, "metadata_statement", None)
            identifiers = getattr(entry, "attestation_certificate_key_identifiers", None)
            if not identifiers and statement is not None:
                identifiers = getattr(statement, "attestation_certificate_key_identifiers", None)
            if statement is not None and _matches_key_identifier(identifiers, bytes(key_identifier)):
                anchors.extend(_statement_anchors(statement, provider.url))
        return anchors


class MetadataStatementsTrustAnchorRepository(TrustAnchorRepository):
    """Anchors listed in local metadata statement files."""

    def __init__(self, provider: LocalFilesMetadataStatementsProvider) -> None:
        self.provider = provider

    def _statements(self) -> Iterable[tuple]:
        return zip(self.provider.loaded_paths, self.provider.statements)

    def find_by_aaguid(self, aaguid: AaguidLike) -> List[TrustAnchor]:
        wanted = normalise_aaguid(aaguid)
        if wanted is None:
            return []
        anchors: List[TrustAnchor] = []
        for path, statement in self._statements():
            if _matches_aaguid(getattr(statement, "aaguid", None), wanted):
                anchors.extend(_statement_anchors(statement, path))
        return anchors

    def find_by_key_identifier(self, key_identifier: bytes) -> List[TrustAnchor]:
        anchors: List[TrustAnchor] = []
        for path, statement in self._statements():
            identifiers = getattr(statement, "attestation_certificate_key_identifiers", None)
            if _matches_key_identifier(identifiers, bytes(key_identifier)):
                anchors.extend(_statement_anchors(statement, path))
        return anchors


class AggregatingTrustAnchorRepository(TrustAnchorRepository):
    """Fans lookups out to several repositories, first match order preserved."""

    def __init__(self, *repositories: TrustAnchorRepository) -> None:
        if len(repositories) < 2:
            raise ValueError("An aggregating repository needs at least two sources.")
        self.repositories = repositories

    @staticmethod
    def _merge(results: Iterable[List[TrustAnchor]]) -> List[TrustAnchor]:
        merged: List[TrustAnchor] = []
        seen = set()
        for anchors in results:
            for anchor in anchors:
                if anchor.certificate in seen:
                    continue
                seen.add(anchor.certificate)
                merged.append(anchor)
        return merged

    def find_by_aaguid(self, aaguid: AaguidLike) -> List[TrustAnchor]:
        return self._merge(repo.find_by_aaguid(aaguid) for repo in self.repositories)

    def find_by_key_identifier(self, key_identifier: bytes) -> List[TrustAnchor]:
        return self._merge(
            repo.find_by_key_identifier(key_identifier) for repo in self.repositories
        )


def aggregate_repositories(
    blob_repository: Optional[MetadataBlobTrustAnchorRepository],
    local_statements: LocalStatements,
) -> Optional[TrustAnchorRepository]:
    """Combine the available sources into the repository used for validation.

    Returns ``None`` when neither source is available.
    """

    if isinstance(local_statements, Absent):
        return blob_repository

    if not isinstance(local_statements, Present):
        raise TypeError(f"Unexpected local statements value: {local_statements!r}")

    statements_repository = MetadataStatementsTrustAnchorRepository(local_statements.provider)
    if blob_repository is None:
        return statements_repository
    return AggregatingTrustAnchorRepository(blob_repository, statements_repository)


__all__ = [
    "AggregatingTrustAnchorRepository",
    "MetadataBlobTrustAnchorRepository",
    "MetadataStatementsTrustAnchorRepository",
    "TrustAnchor",
    "TrustAnchorRepository",
    "UNTRUSTED_STATUSES",
    "aggregate_repositories",
    "entry_is_trusted",
    "normalise_aaguid",
]
