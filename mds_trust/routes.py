"""HTTP routes exposing the attestation trust service."""
from __future__ import annotations

import base64
import binascii
from typing import Any, List

from fido2.attestation import UntrustedAttestation
from flask import jsonify, request

from .config import MDS_REFRESH_ROUTE_KEY, app, read_flag
from .service import MetadataService, MetadataServiceError

_EXTENSION_KEY = "mds_trust"

app.extensions[_EXTENSION_KEY] = MetadataService(app.config)


def get_metadata_service() -> MetadataService:
    return app.extensions[_EXTENSION_KEY]


def _decode_certificate(value: Any) -> bytes:
    if not isinstance(value, str) or not value.strip():
        raise ValueError("Certificates must be base64 encoded strings.")
    text = value.strip()
    padding = "=" * (-len(text) % 4)
    try:
        if "-" in text or "_" in text:
            return base64.urlsafe_b64decode(text + padding)
        return base64.b64decode(text + padding, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError("Certificates must be base64 encoded strings.") from exc


@app.route("/api/mds/status", methods=["GET"])
def mds_status():
    return jsonify(get_metadata_service().status())


@app.route("/api/mds/refresh", methods=["POST"])
def mds_refresh():
    if not read_flag(app.config, MDS_REFRESH_ROUTE_KEY, False):
        return jsonify({"error": "Manual metadata refresh is disabled."}), 404

    service = get_metadata_service()
    try:
        service.initialize()
    except MetadataServiceError as exc:
        app.logger.error("Metadata service refresh failed: %s", exc)
        payload = service.status()
        payload["error"] = str(exc)
        return jsonify(payload), 503
    return jsonify(service.status())


@app.route("/api/mds/verify", methods=["POST"])
def mds_verify():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify({"error": "Request body must be a JSON object."}), 400

    raw_chain = data.get("x5c")
    if not isinstance(raw_chain, list) or not raw_chain:
        return jsonify({"error": "x5c must be a non-empty list of certificates."}), 400

    try:
        chain: List[bytes] = [_decode_certificate(value) for value in raw_chain]
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400

    aaguid = data.get("aaguid")
    if aaguid is not None and not isinstance(aaguid, str):
        return jsonify({"error": "aaguid must be a string."}), 400

    validator = get_metadata_service().ensure_validator()
    if validator is None:
        return jsonify({"error": "Attestation trust validation is unavailable."}), 503

    try:
        anchor = validator.validate(chain, aaguid=aaguid)
    except UntrustedAttestation as exc:
        return jsonify({"trusted": False, "reason": str(exc) or type(exc).__name__})

    return jsonify(
        {
            "trusted": True,
            "trustAnchor": {
                "subject": anchor.certificate.subject.rfc4514_string(),
                "source": anchor.source,
            },
        }
    )


__all__ = ["get_metadata_service", "mds_refresh", "mds_status", "mds_verify"]
