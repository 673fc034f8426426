"""Certificate path trustworthiness validation against trust anchor repositories."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Optional, Sequence, Union

from cryptography import x509
from cryptography.exceptions import InvalidSignature as _InvalidSignature
from fido2.attestation import AttestationVerifier, UntrustedAttestation, verify_x509_chain
from fido2.attestation.base import InvalidAttestation

from .anchors import AaguidLike, TrustAnchor, TrustAnchorRepository, normalise_aaguid
from .certificates import RootCertificateError, certificate_to_der, load_certificate

LOGGER = logging.getLogger("mds_trust.validator")

_ZERO_AAGUID = bytes(16)

CertificateLike = Union[bytes, bytearray, memoryview, x509.Certificate]


class TrustAnchorNotFound(UntrustedAttestation):
    """No trust anchor is registered for the authenticator."""


class CertPathValidationError(UntrustedAttestation):
    """The attestation chain does not lead to a registered trust anchor."""


class FullChainProhibited(CertPathValidationError):
    """The attestation chain includes its own root."""


def attestation_key_identifier(certificate: x509.Certificate) -> bytes:
    """SHA-1 of the subject public key, as used by U2F metadata entries."""

    return x509.SubjectKeyIdentifier.from_public_key(certificate.public_key()).digest


def _is_self_signed(certificate: x509.Certificate) -> bool:
    if certificate.issuer != certificate.subject:
        return False
    try:
        certificate.verify_directly_issued_by(certificate)
    except (ValueError, TypeError, _InvalidSignature):
        return False
    return True


def _coerce_chain(chain: Sequence[CertificateLike]) -> List[x509.Certificate]:
    certificates: List[x509.Certificate] = []
    for index, item in enumerate(chain):
        if isinstance(item, x509.Certificate):
            certificates.append(item)
            continue
        try:
            certificates.append(load_certificate(item))
        except RootCertificateError as exc:
            raise CertPathValidationError(
                f"Attestation certificate {index + 1} is not valid: {exc}"
            ) from exc
    return certificates


class CertPathTrustworthinessValidator:
    """Validate attestation chains against a :class:`TrustAnchorRepository`.

    The validator is read-only after construction. With
    ``full_chain_prohibited`` set, a chain must stop short of its root: the
    root has to come from the repository, never from the authenticator.
    """

    def __init__(
        self,
        repository: TrustAnchorRepository,
        *,
        full_chain_prohibited: bool = True,
    ) -> None:
        self._repository = repository
        self._full_chain_prohibited = full_chain_prohibited

    @property
    def repository(self) -> TrustAnchorRepository:
        return self._repository

    @property
    def full_chain_prohibited(self) -> bool:
        return self._full_chain_prohibited

    def find_trust_anchors(
        self,
        leaf: x509.Certificate,
        *,
        aaguid: Optional[AaguidLike] = None,
        key_identifier: Optional[bytes] = None,
    ) -> List[TrustAnchor]:
        normalised = normalise_aaguid(aaguid)
        if normalised is not None and normalised != _ZERO_AAGUID:
            return self._repository.find_by_aaguid(normalised)

        identifier = key_identifier or attestation_key_identifier(leaf)
        return self._repository.find_by_key_identifier(identifier)

    def validate(
        self,
        chain: Sequence[CertificateLike],
        *,
        aaguid: Optional[AaguidLike] = None,
        key_identifier: Optional[bytes] = None,
        now: Optional[datetime] = None,
    ) -> TrustAnchor:
        """Return the trust anchor *chain* terminates at.

        *chain* is ordered leaf first. Anchors are looked up by AAGUID, or by
        attestation key identifier when the AAGUID is absent or all zeroes.
        Raises a subclass of :class:`UntrustedAttestation` on failure.
        """

        certificates = _coerce_chain(chain)
        if not certificates:
            raise CertPathValidationError("Attestation certificate chain is empty.")

        anchors = self.find_trust_anchors(
            certificates[0], aaguid=aaguid, key_identifier=key_identifier
        )
        if not anchors:
            raise TrustAnchorNotFound("No trust anchor is registered for this authenticator.")

        if self._full_chain_prohibited:
            anchor_certificates = {anchor.certificate for anchor in anchors}
            if any(cert in anchor_certificates for cert in certificates) or _is_self_signed(
                certificates[-1]
            ):
                raise FullChainProhibited("Attestation chain must not contain its root.")

        moment = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
        for cert in certificates:
            if not cert.not_valid_before_utc <= moment <= cert.not_valid_after_utc:
                raise CertPathValidationError(
                    f"Certificate {cert.subject.rfc4514_string()} is not valid at "
                    f"{moment.isoformat()}."
                )

        chain_der = [certificate_to_der(cert) for cert in certificates]
        last = certificates[-1]
        for anchor in anchors:
            if last.issuer != anchor.certificate.subject:
                continue
            try:
                verify_x509_chain(chain_der + [certificate_to_der(anchor.certificate)])
            except (InvalidAttestation, ValueError) as exc:
                LOGGER.debug(
                    "Chain does not verify against anchor %s: %s",
                    anchor.certificate.subject.rfc4514_string(),
                    exc,
                )
                continue
            return anchor

        raise CertPathValidationError(
            "Attestation chain does not verify against any registered trust anchor."
        )

    def is_trustworthy(self, chain: Sequence[CertificateLike], **kwargs) -> bool:
        try:
            self.validate(chain, **kwargs)
        except UntrustedAttestation:
            return False
        return True


class TrustAnchorAttestationVerifier(AttestationVerifier):
    """Adapter letting ``fido2.server.Fido2Server`` consult the validator."""

    def __init__(self, validator: CertPathTrustworthinessValidator, attestation_types=None):
        super().__init__(attestation_types)
        self.validator = validator

    def ca_lookup(self, attestation_result, auth_data):
        trust_path = list(getattr(attestation_result, "trust_path", None) or ())
        if not trust_path:
            return None

        credential_data = getattr(auth_data, "credential_data", None)
        aaguid = getattr(credential_data, "aaguid", None)
        try:
            anchor = self.validator.validate(trust_path, aaguid=aaguid)
        except UntrustedAttestation as exc:
            LOGGER.info("Attestation trust path rejected: %s", exc)
            return None
        return certificate_to_der(anchor.certificate)


__all__ = [
    "CertPathTrustworthinessValidator",
    "CertPathValidationError",
    "FullChainProhibited",
    "TrustAnchorAttestationVerifier",
    "TrustAnchorNotFound",
    "attestation_key_identifier",
]
