"""Validation rules of the domain models."""
from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from crates_mirror.domain.models import CrateRecord, ManifestEntry, MirrorReport, MirrorSettings
from factories import index_line


def test_record_parses_registry_field_names():
    record = CrateRecord.model_validate_json(index_line("serde", "1.0.0", "A" * 64, yanked=True))
    assert record.name == "serde"
    assert record.version == "1.0.0"
    assert record.checksum == "a" * 64
    assert record.retracted is True
    assert record.key == ("serde", "1.0.0")
    assert record.filename == "serde-1.0.0.crate"


def test_record_yanked_defaults_to_false():
    record = CrateRecord.model_validate({"name": "a", "vers": "1.0.0", "cksum": "0" * 64})
    assert record.retracted is False


def test_record_rejects_bad_checksum():
    with pytest.raises(ValidationError):
        CrateRecord(name="a", version="1.0.0", checksum="not-hex")
    with pytest.raises(ValidationError):
        CrateRecord(name="a", version="1.0.0", checksum="ab" * 16)


def test_record_is_immutable_and_hashable():
    record = CrateRecord(name="a", version="1.0.0", checksum="0" * 64)
    with pytest.raises(ValidationError):
        record.name = "b"
    assert len({record, CrateRecord(name="a", version="1.0.0", checksum="0" * 64)}) == 1


def test_manifest_entry_filename_is_basename():
    entry = ManifestEntry(checksum="F" * 64, path="./se/rd/serde-1.0.0.crate")
    assert entry.checksum == "f" * 64
    assert entry.filename == "serde-1.0.0.crate"


def test_settings_reject_combined_strategies():
    with pytest.raises(ValidationError):
        MirrorSettings(manifest_path=Path("manifest.txt"), verify_store=True)


def test_settings_reject_zero_workers():
    with pytest.raises(ValidationError):
        MirrorSettings(fetch_workers=0)


def test_settings_allow_disabling_timeout():
    assert MirrorSettings(request_timeout=None).request_timeout is None


def test_report_complete_only_without_failures():
    report = MirrorReport()
    assert report.complete
    report.fetch.failed = 1
    assert not report.complete
