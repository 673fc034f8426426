"""Loading helpers for the metadata service trust root certificate."""
from __future__ import annotations

import os
from typing import Union

from cryptography import x509
from cryptography.hazmat.primitives.serialization import Encoding

_PEM_MARKER = b"-----BEGIN CERTIFICATE-----"


class RootCertificateError(Exception):
    """Base class for failures while loading the MDS root certificate."""


class CertificateSourceError(RootCertificateError):
    """The certificate file is missing or cannot be read."""


class CertificateFormatError(RootCertificateError):
    """The certificate bytes are not a valid X.509 certificate."""


def load_certificate(data: Union[bytes, bytearray, memoryview]) -> x509.Certificate:
    """Parse a single PEM or DER encoded certificate."""

    raw = bytes(data)
    if not raw:
        raise CertificateFormatError("Certificate data is empty.")

    try:
        if _PEM_MARKER in raw:
            return x509.load_pem_x509_certificate(raw)
        return x509.load_der_x509_certificate(raw)
    except ValueError as exc:
        raise CertificateFormatError(f"Unable to parse X.509 certificate: {exc}") from exc


def load_root_certificate(path: str) -> x509.Certificate:
    """Read exactly one certificate from *path*.

    An empty path, a missing file or an unreadable file raise
    :class:`CertificateSourceError`. Bytes that do not decode as an X.509
    certificate raise :class:`CertificateFormatError`.
    """

    if not path:
        raise CertificateSourceError("No MDS root certificate path is configured.")

    if not os.path.isfile(path):
        raise CertificateSourceError(f"MDS root certificate file not found: {path}")

    try:
        with open(path, "rb") as cert_file:
            data = cert_file.read()
    except OSError as exc:
        raise CertificateSourceError(
            f"Unable to read MDS root certificate from {path}: {exc}"
        ) from exc

    return load_certificate(data)


def certificate_to_der(certificate: x509.Certificate) -> bytes:
    return certificate.public_bytes(Encoding.DER)


__all__ = [
    "CertificateFormatError",
    "CertificateSourceError",
    "RootCertificateError",
    "certificate_to_der",
    "load_certificate",
    "load_root_certificate",
]
