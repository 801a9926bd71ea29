"""Manifest pruning and verify-on-disk reconciliation."""
from __future__ import annotations

import asyncio
import logging

import pytest

from crates_mirror.domain.errors import ManifestError
from crates_mirror.domain.models import CrateRecord
from crates_mirror.services.mirror.progress import STAGE_VERIFY, ProgressCounters
from crates_mirror.services.mirror.reconcile import (
    ManifestReconciler,
    PassThroughReconciler,
    StoreVerifier,
    load_manifest,
    parse_manifest_line,
)
from crates_mirror.storage import crate_store
from crates_mirror.storage.crate_store import CrateStore
from factories import make_record, payload_for


def _store_file(store: CrateStore, record: CrateRecord, data: bytes) -> None:
    path = store.path_for(record)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)


# ---------------------------------------------------------------------------
# Manifest
# ---------------------------------------------------------------------------


def test_parse_manifest_line_handles_wide_whitespace():
    entry = parse_manifest_line(f"{'c' * 64}    ./se/rd/serde-1.0.0.crate\n")
    assert entry.checksum == "c" * 64
    assert entry.path == "./se/rd/serde-1.0.0.crate"


def test_parse_manifest_line_rejects_missing_path():
    with pytest.raises(ValueError):
        parse_manifest_line("c" * 64)


def test_load_manifest_skips_malformed_lines(tmp_path, caplog):
    record = make_record("serde", "1.0.0")
    manifest = tmp_path / "manifest.txt"
    manifest.write_text(
        f"{record.checksum}  se/rd/serde-1.0.0.crate\n"
        "garbage\n"
        "\n"
        "1234 short/checksum.crate\n",
        encoding="utf-8",
    )

    with caplog.at_level(logging.WARNING):
        entries = load_manifest(manifest)

    assert list(entries) == [record.checksum]
    assert sum("malformed manifest line" in r.message for r in caplog.records) == 2


def test_missing_manifest_is_fatal(tmp_path):
    with pytest.raises(ManifestError):
        load_manifest(tmp_path / "missing.txt")


def test_manifest_drops_checksum_hit_and_keeps_same_version_with_other_checksum():
    listed = make_record("foo", "1.0.0", b"first")
    republished = make_record("foo", "1.0.0", b"second")
    unrelated = make_record("bar", "0.1.0")
    reconciler = ManifestReconciler(
        {listed.checksum: parse_manifest_line(f"{listed.checksum} 3/fo/foo-1.0.0.crate")}
    )

    result = asyncio.run(reconciler.reconcile([listed, republished, unrelated]))

    assert result.records == [republished, unrelated]
    assert result.summary.dropped == 1
    assert result.summary.strategy == "manifest"


def test_manifest_name_mismatch_warns_but_still_drops(caplog):
    record = make_record("foo", "1.0.0")
    reconciler = ManifestReconciler(
        {record.checksum: parse_manifest_line(f"{record.checksum} elsewhere/renamed-9.9.9.crate")}
    )

    with caplog.at_level(logging.WARNING):
        result = asyncio.run(reconciler.reconcile([record]))

    assert result.records == []
    assert result.summary.filename_mismatches == 1
    assert any("Name mismatch" in r.message for r in caplog.records)


def test_manifest_from_file(tmp_path):
    record = make_record("serde", "1.0.0")
    manifest = tmp_path / "manifest.txt"
    manifest.write_text(f"{record.checksum} se/rd/serde-1.0.0.crate\n", encoding="utf-8")

    result = asyncio.run(ManifestReconciler.from_file(manifest).reconcile([record]))
    assert result.records == []


def test_pass_through_keeps_everything():
    records = [make_record("a", "1.0.0"), make_record("b", "1.0.0")]
    result = asyncio.run(PassThroughReconciler().reconcile(records))
    assert result.records == records
    assert result.summary.dropped == 0


# ---------------------------------------------------------------------------
# Verify on disk
# ---------------------------------------------------------------------------


def test_verify_classifies_missing_invalid_and_valid(store_dir):
    store = CrateStore(store_dir)
    valid = make_record("serde", "1.0.0")
    invalid = make_record("rand", "0.8.5")
    missing = make_record("abc", "2.1.0")
    _store_file(store, valid, payload_for("serde", "1.0.0"))
    _store_file(store, invalid, b"corrupted")

    progress = ProgressCounters()
    result = asyncio.run(StoreVerifier(store, workers=2, progress=progress).reconcile([valid, invalid, missing]))

    assert result.records == [missing, invalid]
    assert result.summary.missing == 1
    assert result.summary.invalid == 1
    assert result.summary.dropped == 1
    assert progress.items[STAGE_VERIFY] == 3


def test_verify_twice_without_writes_is_stable(store_dir):
    store = CrateStore(store_dir)
    records = [make_record(f"crate{i}", "1.0.0") for i in range(12)]
    for record in records:
        _store_file(store, record, payload_for(record.name, record.version))

    verifier = StoreVerifier(store, workers=4)
    first = asyncio.run(verifier.reconcile(records))
    second = asyncio.run(verifier.reconcile(records))

    assert first.records == []
    assert second.records == []
    assert second.summary.dropped == 12


def test_verify_treats_unreadable_archive_as_invalid(store_dir, monkeypatch, caplog):
    store = CrateStore(store_dir)
    broken = make_record("broken", "1.0.0")
    good = make_record("serde", "1.0.0")
    _store_file(store, broken, payload_for("broken", "1.0.0"))
    _store_file(store, good, payload_for("serde", "1.0.0"))
    real = crate_store.sha256_file

    async def sha256_file(path):
        if path.name == broken.filename:
            raise PermissionError(13, "Permission denied", str(path))
        return await real(path)

    monkeypatch.setattr(crate_store, "sha256_file", sha256_file)

    with caplog.at_level(logging.WARNING):
        result = asyncio.run(StoreVerifier(store, workers=2).reconcile([broken, good]))

    assert result.records == [broken]
    assert result.summary.invalid == 1
    assert result.summary.dropped == 1
    assert "Unable to read stored crate" in caplog.text
