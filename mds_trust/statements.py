"""Local metadata statement files used as an additional trust source."""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Sequence, Union

from fido2.mds3 import MetadataStatement

LOGGER = logging.getLogger("mds_trust.statements")

_METADATA_STATEMENT_REQUIRED_DEFAULTS: Mapping[str, Any] = {
    "description": "",
    "authenticatorVersion": 0,
    "schema": 3,
    "upv": [],
    "attestationTypes": [],
    "userVerificationDetails": [],
    "keyProtection": [],
    "matcherProtection": [],
    "attachmentHint": [],
    "tcDisplay": [],
    "attestationRootCertificates": [],
}

_LIST_FIELDS = (
    "upv",
    "attestationTypes",
    "userVerificationDetails",
    "keyProtection",
    "matcherProtection",
    "attachmentHint",
    "tcDisplay",
    "attestationRootCertificates",
)


class MetadataStatementError(ValueError):
    """A local metadata statement file could not be parsed."""


def _clone_json_value(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, (str, int, float, bool)):
        return value
    try:
        return json.loads(json.dumps(value))
    except (TypeError, ValueError):
        return None


def normalise_metadata_statement(raw: Mapping[str, Any]) -> Dict[str, Any]:
    """Return a statement dict with the fields ``MetadataStatement`` requires.

    Statements exported from a metadata BLOB entry are nested under
    ``metadataStatement``; bare statements are used as they are.
    """

    if not isinstance(raw, Mapping):
        raise MetadataStatementError("Metadata statement must be a JSON object.")

    source: Mapping[str, Any] = raw
    nested = raw.get("metadataStatement")
    if isinstance(nested, Mapping):
        source = nested

    statement: Dict[str, Any] = {}
    for key, value in source.items():
        cloned = _clone_json_value(value)
        if cloned is not None:
            statement[key] = cloned

    if source is not raw:
        # Identifiers may live on the enclosing BLOB entry only.
        for key in ("aaguid", "aaid", "attestationCertificateKeyIdentifiers"):
            if key not in statement and raw.get(key) is not None:
                statement[key] = _clone_json_value(raw[key])

    if not isinstance(statement.get("description"), str):
        statement["description"] = _METADATA_STATEMENT_REQUIRED_DEFAULTS["description"]
    for key in ("authenticatorVersion", "schema"):
        if not isinstance(statement.get(key), int):
            statement[key] = _METADATA_STATEMENT_REQUIRED_DEFAULTS[key]
    for key in _LIST_FIELDS:
        if not isinstance(statement.get(key), list):
            statement[key] = []

    return statement


def parse_metadata_statement(data: bytes, *, source: str = "<bytes>") -> MetadataStatement:
    try:
        raw = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise MetadataStatementError(f"{source} is not valid JSON: {exc}") from exc

    statement = normalise_metadata_statement(raw)
    try:
        return MetadataStatement.from_dict(statement)
    except (TypeError, ValueError, KeyError) as exc:
        raise MetadataStatementError(
            f"{source} is not a valid metadata statement: {exc}"
        ) from exc


class LocalFilesMetadataStatementsProvider:
    """Metadata statements read once from a fixed set of files."""

    def __init__(self, paths: Sequence[str]) -> None:
        self.paths = list(paths)
        self.statements: List[MetadataStatement] = []
        self.loaded_paths: List[str] = []
        for path in self.paths:
            try:
                with open(path, "rb") as statement_file:
                    data = statement_file.read()
                statement = parse_metadata_statement(data, source=path)
            except (OSError, MetadataStatementError) as exc:
                LOGGER.error("Skipping metadata statement %s: %s", path, exc)
                continue
            self.statements.append(statement)
            self.loaded_paths.append(path)

    def __len__(self) -> int:
        return len(self.statements)


@dataclass(frozen=True)
class Present:
    provider: LocalFilesMetadataStatementsProvider


@dataclass(frozen=True)
class Absent:
    reason: str


LocalStatements = Union[Present, Absent]


def load_local_statements(directory: str) -> LocalStatements:
    """Load every file directly inside *directory* as a metadata statement."""

    if not directory or not os.path.isdir(directory):
        return Absent("metadata statement directory is not configured or missing")

    try:
        with os.scandir(directory) as entries:
            paths = sorted(entry.path for entry in entries if entry.is_file())
    except OSError as exc:
        LOGGER.error("Exception in listing metadata statements in %s: %s", directory, exc)
        return Absent(f"unable to list {directory}")

    if not paths:
        LOGGER.debug("No metadata statements found in the configured directory.")
        return Absent("metadata statement directory is empty")

    provider = LocalFilesMetadataStatementsProvider(paths)
    if not provider.statements:
        LOGGER.warning("None of the files in %s contained a usable metadata statement.", directory)
        return Absent("no usable metadata statements")

    LOGGER.info("Loaded %d local metadata statements from %s.", len(provider), directory)
    return Present(provider)


__all__ = [
    "Absent",
    "LocalFilesMetadataStatementsProvider",
    "LocalStatements",
    "MetadataStatementError",
    "Present",
    "load_local_statements",
    "normalise_metadata_statement",
    "parse_metadata_statement",
]
