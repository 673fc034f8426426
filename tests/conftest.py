import base64
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional, Sequence

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from cryptography.x509.oid import NameOID
from fido2.mds3 import MetadataBlobPayload

from mds_trust import endpoints


@dataclass
class IssuedCertificate:
    certificate: x509.Certificate
    key: object

    @property
    def der(self) -> bytes:
        return self.certificate.public_bytes(serialization.Encoding.DER)

    @property
    def pem(self) -> bytes:
        return self.certificate.public_bytes(serialization.Encoding.PEM)

    @property
    def b64(self) -> str:
        return base64.b64encode(self.der).decode("ascii")


class CertificateFactory:
    """Issues throwaway certificates for chain and CRL tests."""

    def __init__(self) -> None:
        self.now = datetime.now(timezone.utc)

    def issue(
        self,
        common_name: str,
        issuer: Optional[IssuedCertificate] = None,
        *,
        ca: bool = True,
        key_type: str = "ec",
        crl_urls: Sequence[str] = (),
        not_before: Optional[datetime] = None,
        not_after: Optional[datetime] = None,
    ) -> IssuedCertificate:
        if key_type == "rsa":
            key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        else:
            key = ec.generate_private_key(ec.SECP256R1())

        subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
        builder = (
            x509.CertificateBuilder()
            .subject_name(subject)
            .issuer_name(issuer.certificate.subject if issuer else subject)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(not_before or self.now - timedelta(days=1))
            .not_valid_after(not_after or self.now + timedelta(days=365))
            .add_extension(x509.BasicConstraints(ca=ca, path_length=None), critical=True)
        )
        if crl_urls:
            builder = builder.add_extension(
                x509.CRLDistributionPoints(
                    [
                        x509.DistributionPoint(
                            full_name=[x509.UniformResourceIdentifier(url) for url in crl_urls],
                            relative_name=None,
                            reasons=None,
                            crl_issuer=None,
                        )
                    ]
                ),
                critical=False,
            )

        signing_key = issuer.key if issuer else key
        certificate = builder.sign(signing_key, hashes.SHA256())
        return IssuedCertificate(certificate, key)

    def crl(self, issuer: IssuedCertificate, revoked_serials: Iterable[int] = ()) -> bytes:
        builder = (
            x509.CertificateRevocationListBuilder()
            .issuer_name(issuer.certificate.subject)
            .last_update(self.now - timedelta(days=1))
            .next_update(self.now + timedelta(days=7))
        )
        for serial in revoked_serials:
            builder = builder.add_revoked_certificate(
                x509.RevokedCertificateBuilder()
                .serial_number(serial)
                .revocation_date(self.now - timedelta(hours=1))
                .build()
            )
        return builder.sign(issuer.key, hashes.SHA256()).public_bytes(
            serialization.Encoding.DER
        )


def _b64url(data: bytes) -> bytes:
    return base64.urlsafe_b64encode(data).rstrip(b"=")


def make_jws(payload: dict, signer: IssuedCertificate, chain: Sequence[IssuedCertificate]) -> bytes:
    """Build an RS256 signed metadata BLOB carrying *chain* in ``x5c``."""

    header = {"alg": "RS256", "typ": "JWT", "x5c": [cert.b64 for cert in chain]}
    message = (
        _b64url(json.dumps(header).encode("utf-8"))
        + b"."
        + _b64url(json.dumps(payload).encode("utf-8"))
    )
    signature = signer.key.sign(message, padding.PKCS1v15(), hashes.SHA256())
    return message + b"." + _b64url(signature)


def make_statement(
    *,
    aaguid: Optional[str] = None,
    key_identifiers: Sequence[str] = (),
    roots: Sequence[IssuedCertificate] = (),
    description: str = "Test authenticator",
) -> dict:
    statement = {
        "description": description,
        "authenticatorVersion": 1,
        "schema": 3,
        "upv": [{"major": 1, "minor": 0}],
        "attestationTypes": ["basic_full"],
        "userVerificationDetails": [],
        "keyProtection": ["hardware"],
        "matcherProtection": ["on_chip"],
        "attachmentHint": ["external"],
        "tcDisplay": [],
        "attestationRootCertificates": [root.b64 for root in roots],
    }
    if aaguid:
        statement["aaguid"] = aaguid
    if key_identifiers:
        statement["attestationCertificateKeyIdentifiers"] = list(key_identifiers)
    return statement


def make_entry(
    *,
    aaguid: Optional[str] = None,
    key_identifiers: Sequence[str] = (),
    roots: Sequence[IssuedCertificate] = (),
    status_reports: Sequence[dict] = (),
) -> dict:
    today = datetime.now(timezone.utc).date().isoformat()
    entry = {
        "metadataStatement": make_statement(
            aaguid=aaguid, key_identifiers=key_identifiers, roots=roots
        ),
        "statusReports": list(status_reports),
        "timeOfLastStatusChange": today,
    }
    if aaguid:
        entry["aaguid"] = aaguid
    if key_identifiers:
        entry["attestationCertificateKeyIdentifiers"] = list(key_identifiers)
    return entry


def make_blob_payload(entries: Sequence[dict], *, next_update: Optional[str] = None, no: int = 1) -> dict:
    return {
        "legalHeader": "Test legal header",
        "no": no,
        "nextUpdate": next_update
        or (datetime.now(timezone.utc).date() + timedelta(days=30)).isoformat(),
        "entries": list(entries),
    }


def make_blob_metadata(entries: Sequence[dict], **kwargs) -> MetadataBlobPayload:
    return MetadataBlobPayload.from_dict(make_blob_payload(entries, **kwargs))


@pytest.fixture
def pki() -> CertificateFactory:
    return CertificateFactory()


@pytest.fixture
def mds_root(pki) -> IssuedCertificate:
    return pki.issue("Test MDS Root", key_type="rsa")


@pytest.fixture
def mds_root_path(tmp_path, mds_root) -> str:
    path = tmp_path / "mds-root.pem"
    path.write_bytes(mds_root.pem)
    return str(path)


@pytest.fixture(autouse=True)
def _reset_endpoint_cache():
    endpoints.reset_mds_endpoints()
    yield
    endpoints.reset_mds_endpoints()
