"""FIDO metadata service trust anchors for attestation chain validation.

The HTTP routes are registered by importing :mod:`mds_trust.routes`;
:mod:`mds_trust.app` is the server entry point.
"""
