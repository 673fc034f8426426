"""CRL based revocation checks for the metadata BLOB signing chain."""
from __future__ import annotations

import base64
import binascii
import json
import logging
from typing import List, Optional, Sequence

from cryptography import x509
from cryptography.x509.oid import ExtensionOID

from .download import Fetcher, MetadataDownloadError

LOGGER = logging.getLogger("mds_trust.revocation")


class RevocationCheckError(Exception):
    """Revocation status of a BLOB signing certificate could not be established."""


class CertificateRevokedError(RevocationCheckError):
    """A certificate in the BLOB signing chain is listed on its issuer's CRL."""

    def __init__(self, certificate: x509.Certificate) -> None:
        super().__init__(
            f"Certificate {certificate.subject.rfc4514_string()} "
            f"(serial {certificate.serial_number:x}) has been revoked."
        )
        self.certificate = certificate


def _b64url_decode(segment: bytes) -> bytes:
    padding = b"=" * (-len(segment) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def extract_signing_chain(blob: bytes) -> List[x509.Certificate]:
    """Return the certificates from the ``x5c`` header of a JWS metadata BLOB."""

    try:
        header_segment = blob.strip().split(b".", 1)[0]
        header = json.loads(_b64url_decode(header_segment).decode("utf-8"))
    except (ValueError, UnicodeDecodeError, binascii.Error) as exc:
        raise RevocationCheckError("Metadata BLOB header is not valid JSON.") from exc

    x5c = header.get("x5c") if isinstance(header, dict) else None
    if not isinstance(x5c, list) or not x5c:
        raise RevocationCheckError("Metadata BLOB header does not carry an x5c chain.")

    chain: List[x509.Certificate] = []
    for index, encoded in enumerate(x5c):
        try:
            chain.append(x509.load_der_x509_certificate(base64.b64decode(encoded)))
        except (TypeError, ValueError, binascii.Error) as exc:
            raise RevocationCheckError(
                f"x5c certificate {index + 1} could not be decoded."
            ) from exc
    return chain


def crl_distribution_points(certificate: x509.Certificate) -> List[str]:
    try:
        extension = certificate.extensions.get_extension_for_oid(
            ExtensionOID.CRL_DISTRIBUTION_POINTS
        )
    except x509.ExtensionNotFound:
        return []

    urls: List[str] = []
    for point in extension.value:
        for name in point.full_name or ():
            if isinstance(name, x509.UniformResourceIdentifier):
                urls.append(name.value)
    return urls


def _load_crl(data: bytes) -> x509.CertificateRevocationList:
    if b"-----BEGIN X509 CRL-----" in data:
        return x509.load_pem_x509_crl(data)
    return x509.load_der_x509_crl(data)


def check_certificate(
    certificate: x509.Certificate,
    issuer: x509.Certificate,
    fetcher: Fetcher,
    timeout: float,
) -> None:
    urls = crl_distribution_points(certificate)
    if not urls:
        LOGGER.debug(
            "No CRL distribution points for %s; skipping revocation check.",
            certificate.subject.rfc4514_string(),
        )
        return

    last_error: Optional[BaseException] = None
    for url in urls:
        try:
            crl = _load_crl(fetcher(url, timeout))
        except (MetadataDownloadError, ValueError) as exc:
            LOGGER.warning("Unable to obtain CRL from %s: %s", url, exc)
            last_error = exc
            continue

        if not crl.is_signature_valid(issuer.public_key()):
            last_error = RevocationCheckError(f"CRL from {url} is not signed by the issuer.")
            LOGGER.warning("%s", last_error)
            continue

        if crl.get_revoked_certificate_by_serial_number(certificate.serial_number) is not None:
            raise CertificateRevokedError(certificate)
        return

    raise RevocationCheckError(
        f"No usable CRL for {certificate.subject.rfc4514_string()}."
    ) from last_error


def check_blob_revocation(
    blob: bytes,
    root_certificate: x509.Certificate,
    fetcher: Fetcher,
    timeout: float,
) -> None:
    """Check every certificate of the BLOB signing chain against its issuer's CRL.

    The chain is the ``x5c`` header (leaf first) terminated by
    *root_certificate*. A certificate identical to the root is not checked.
    """

    chain: Sequence[x509.Certificate] = [
        cert for cert in extract_signing_chain(blob) if cert != root_certificate
    ]
    issuers = list(chain[1:]) + [root_certificate]
    for certificate, issuer in zip(chain, issuers):
        check_certificate(certificate, issuer, fetcher, timeout)


__all__ = [
    "CertificateRevokedError",
    "RevocationCheckError",
    "check_blob_revocation",
    "check_certificate",
    "crl_distribution_points",
    "extract_signing_chain",
]
