import json
import logging
import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from conftest import make_blob_metadata, make_entry, make_statement
from mds_trust import blob
from mds_trust.anchors import (
    AggregatingTrustAnchorRepository,
    MetadataBlobTrustAnchorRepository,
    MetadataStatementsTrustAnchorRepository,
)
from mds_trust.blob import MetadataBlobProvider
from mds_trust.config import (
    MDS_ENDPOINTS_KEY,
    MDS_FETCH_WORKERS_KEY,
    MDS_METADATA_STATEMENTS_KEY,
    MDS_REVOCATION_CHECK_KEY,
    MDS_ROOT_CERTIFICATE_KEY,
)
from mds_trust.download import MetadataDownloadError
from mds_trust.endpoints import EndpointResolver
from mds_trust.service import InitializationState, MetadataService, MetadataServiceError

AAGUID = "00112233-4455-6677-8899-aabbccddeeff"
LOCAL_AAGUID = "ffeeddcc-bbaa-9988-7766-554433221100"


class FakeMds:
    """Serves canned BLOBs per URL and stands in for signature verification."""

    def __init__(self, monkeypatch):
        self.blobs = {}
        self.metadata = {}
        self.failing = set()
        self.created = []
        self.fetches = []
        self.delay = 0.0
        monkeypatch.setattr(blob, "parse_blob", self._parse)

    def serve(self, url, metadata):
        payload = f"blob:{url}".encode("utf-8")
        self.blobs[url] = payload
        self.metadata[payload] = metadata

    def _parse(self, data, trust_root):
        return self.metadata[data]

    def _fetch(self, url, timeout):
        self.fetches.append(url)
        if self.delay:
            time.sleep(self.delay)
        if url in self.failing or url not in self.blobs:
            raise MetadataDownloadError(f"{url} unreachable", status_code=503)
        return self.blobs[url]

    def factory(self, url, root_certificate, *, timeout):
        provider = MetadataBlobProvider(url, root_certificate, timeout=timeout, fetcher=self._fetch)
        self.created.append(provider)
        return provider


@pytest.fixture
def mds(monkeypatch):
    return FakeMds(monkeypatch)


def _config(root_path, endpoints=(), statements_dir="", **extra):
    config = {
        MDS_ROOT_CERTIFICATE_KEY: root_path,
        MDS_ENDPOINTS_KEY: list(endpoints),
        MDS_METADATA_STATEMENTS_KEY: statements_dir,
        MDS_REVOCATION_CHECK_KEY: False,
    }
    config.update(extra)
    return config


def _service(config, mds):
    return MetadataService(config, endpoint_resolver=EndpointResolver(), provider_factory=mds.factory)


def _write_statements(directory, *statements):
    directory.mkdir(exist_ok=True)
    for index, statement in enumerate(statements):
        (directory / f"statement-{index}.json").write_text(json.dumps(statement), encoding="utf-8")
    return str(directory)


def test_missing_root_certificate_is_fatal(tmp_path, mds):
    service = _service(_config(str(tmp_path / "missing.pem"), ["https://a.example"]), mds)

    with pytest.raises(MetadataServiceError) as excinfo:
        service.initialize()

    assert excinfo.value.__cause__ is not None
    assert service.state is InitializationState.FAILED
    assert service.get_validator() is None
    assert mds.created == []


def test_unparsable_root_certificate_keeps_previous_validator(tmp_path, mds, mds_root_path):
    mds.serve("https://a.example", make_blob_metadata([make_entry(aaguid=AAGUID)]))
    config = _config(mds_root_path, ["https://a.example"])
    service = _service(config, mds)
    service.initialize()
    previous = service.get_validator()
    assert previous is not None

    broken = tmp_path / "broken.pem"
    broken.write_bytes(b"-----BEGIN CERTIFICATE-----\ngarbage\n-----END CERTIFICATE-----\n")
    config[MDS_ROOT_CERTIFICATE_KEY] = str(broken)

    with pytest.raises(MetadataServiceError):
        service.initialize()
    assert service.get_validator() is previous


def test_all_endpoints_failing_aborts_softly(caplog, mds, mds_root_path):
    service = _service(_config(mds_root_path, ["https://a.example", "https://b.example"]), mds)

    with caplog.at_level(logging.DEBUG, logger="mds_trust"):
        state = service.initialize()

    assert state is InitializationState.ABORTED
    assert service.get_validator() is None
    assert "aborting" in caplog.text
    assert "https://a.example" in caplog.text
    assert "https://b.example" in caplog.text


def test_all_endpoints_failing_ignores_local_statements(tmp_path, pki, mds, mds_root_path):
    statements_dir = _write_statements(tmp_path / "statements", make_statement(aaguid=LOCAL_AAGUID))
    service = _service(_config(mds_root_path, ["https://a.example"], statements_dir), mds)

    assert service.initialize() is InitializationState.ABORTED
    assert service.get_validator() is None


def test_partial_success_keeps_survivors_in_order(mds, mds_root_path):
    urls = ["https://a.example", "https://b.example", "https://c.example"]
    for url in urls:
        mds.serve(url, make_blob_metadata([make_entry(aaguid=AAGUID)]))
    mds.failing.add("https://b.example")
    service = _service(_config(mds_root_path, urls, **{MDS_FETCH_WORKERS_KEY: 3}), mds)

    assert service.initialize() is InitializationState.READY

    repository = service.get_validator().repository
    assert isinstance(repository, MetadataBlobTrustAnchorRepository)
    assert [provider.url for provider in repository.providers] == [
        "https://a.example",
        "https://c.example",
    ]
    assert [provider.url for provider in service.providers] == [
        "https://a.example",
        "https://c.example",
    ]


def test_single_endpoint_and_empty_statement_dir_uses_blob_repository(tmp_path, mds, mds_root_path):
    mds.serve("https://a.example", make_blob_metadata([make_entry(aaguid=AAGUID)]))
    empty_dir = tmp_path / "statements"
    empty_dir.mkdir()
    config = _config(mds_root_path, statements_dir=str(empty_dir))
    config[MDS_ENDPOINTS_KEY] = "https://a.example"
    service = _service(config, mds)

    service.initialize()

    repository = service.get_validator().repository
    assert isinstance(repository, MetadataBlobTrustAnchorRepository)
    assert len(repository.providers) == 1


def test_local_statements_only(tmp_path, pki, mds, mds_root_path):
    statements_dir = _write_statements(
        tmp_path / "statements",
        make_statement(aaguid=AAGUID),
        make_statement(aaguid=LOCAL_AAGUID),
    )
    service = _service(_config(mds_root_path, [], statements_dir), mds)

    assert service.initialize() is InitializationState.READY

    repository = service.get_validator().repository
    assert isinstance(repository, MetadataStatementsTrustAnchorRepository)
    assert len(repository.provider) == 2
    assert service.status()["localStatements"] == 2


def test_no_sources_at_all_aborts(mds, mds_root_path):
    service = _service(_config(mds_root_path), mds)

    assert service.initialize() is InitializationState.ABORTED
    assert service.get_validator() is None


def test_blob_and_local_statements_are_aggregated(tmp_path, pki, mds, mds_root_path):
    blob_root = pki.issue("BLOB Vendor Root")
    local_root = pki.issue("Local Vendor Root")
    intermediate = pki.issue("Local Vendor Intermediate", local_root)
    leaf = pki.issue("Local Vendor Attestation", intermediate, ca=False)

    mds.serve("https://a.example", make_blob_metadata([make_entry(aaguid=AAGUID, roots=[blob_root])]))
    statements_dir = _write_statements(
        tmp_path / "statements",
        make_statement(aaguid=LOCAL_AAGUID, roots=[local_root]),
    )
    service = _service(_config(mds_root_path, ["https://a.example"], statements_dir), mds)
    service.initialize()

    validator = service.get_validator()
    assert isinstance(validator.repository, AggregatingTrustAnchorRepository)
    assert validator.full_chain_prohibited is True
    assert [a.certificate for a in validator.repository.find_by_aaguid(AAGUID)] == [
        blob_root.certificate
    ]

    anchor = validator.validate([leaf.der, intermediate.der], aaguid=LOCAL_AAGUID)
    assert anchor.certificate == local_root.certificate


def test_reinitialisation_replaces_validator(mds, mds_root_path):
    mds.serve("https://a.example", make_blob_metadata([make_entry(aaguid=AAGUID)], no=1))
    service = _service(_config(mds_root_path, ["https://a.example"]), mds)
    service.initialize()
    first = service.get_validator()

    mds.serve("https://a.example", make_blob_metadata([make_entry(aaguid=AAGUID)], no=2))
    service.initialize()

    assert service.get_validator() is not first
    assert service.providers[0].metadata.no == 2


def test_revocation_flag_reaches_providers(mds, mds_root_path):
    mds.serve("https://a.example", make_blob_metadata([]))
    service = _service(_config(mds_root_path, ["https://a.example"]), mds)
    service.initialize()

    assert [p.revocation_check_enabled for p in mds.created] == [False]
    assert service.status()["providers"][0]["revocationCheckEnabled"] is False


def test_endpoints_are_resolved_once(mds, mds_root_path):
    mds.serve("https://a.example", make_blob_metadata([]))
    config = _config(mds_root_path, ["https://a.example"])
    service = _service(config, mds)
    service.initialize()

    config[MDS_ENDPOINTS_KEY] = ["https://b.example"]
    service.initialize()

    assert [p.url for p in mds.created] == ["https://a.example", "https://a.example"]


def test_ensure_validator_retries_until_available(mds, mds_root_path):
    service = _service(_config(mds_root_path, ["https://a.example"]), mds)
    assert service.ensure_validator() is None
    assert service.state is InitializationState.ABORTED

    mds.serve("https://a.example", make_blob_metadata([]))
    validator = service.ensure_validator()

    assert validator is not None
    assert service.ensure_validator() is validator


def test_ensure_validator_swallows_fatal_errors(tmp_path, mds):
    service = _service(_config(str(tmp_path / "missing.pem")), mds)

    assert service.ensure_validator() is None
    assert service.state is InitializationState.FAILED
    assert service.status()["lastError"]


def test_needs_refresh_follows_next_update(mds, mds_root_path):
    next_update = datetime.now(timezone.utc).date() + timedelta(days=2)
    mds.serve("https://a.example", make_blob_metadata([], next_update=next_update.isoformat()))
    service = _service(_config(mds_root_path, ["https://a.example"]), mds)

    assert service.needs_refresh()
    service.initialize()

    assert not service.needs_refresh()
    assert service.needs_refresh(datetime.now(timezone.utc) + timedelta(days=3))


def test_status_snapshot(mds, mds_root_path):
    mds.serve("https://a.example", make_blob_metadata([]))
    service = _service(_config(mds_root_path, ["https://a.example"]), mds)

    before = service.status()
    assert before["state"] == "not_started"
    assert before["validatorAvailable"] is False

    service.initialize()
    after = service.status()

    assert after["state"] == "ready"
    assert after["validatorAvailable"] is True
    assert after["endpoints"] == ["https://a.example"]
    assert after["providers"][0]["url"] == "https://a.example"
    assert after["providers"][0]["nextUpdate"]
    assert after["lastSuccess"]


def test_concurrent_callers_share_one_initialisation(mds, mds_root_path):
    mds.serve("https://a.example", make_blob_metadata([]))
    mds.delay = 0.3
    service = _service(_config(mds_root_path, ["https://a.example"]), mds)
    barrier = threading.Barrier(5)
    results = []

    def call():
        barrier.wait()
        results.append(service.ensure_validator())

    threads = [threading.Thread(target=call) for _ in range(5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert mds.fetches == ["https://a.example"]
    assert len(results) == 5
    assert all(result is results[0] for result in results)
    assert results[0] is not None
