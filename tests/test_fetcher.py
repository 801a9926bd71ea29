"""The per-record fetch state machine and the fetch pool."""
from __future__ import annotations

import asyncio
import hashlib

import httpx

from crates_mirror.domain.models import CrateRecord, FetchOutcome
from crates_mirror.services.mirror.fetcher import CrateFetcher
from crates_mirror.services.mirror.progress import STAGE_FETCH, ProgressCounters
from crates_mirror.storage import crate_store
from crates_mirror.storage.crate_store import PARTIAL_SUFFIX, CrateStore
from factories import DL, FakeRegistry, make_record, payload_for, registry


def _fetch(fake, store, records, **kwargs):
    async def run():
        async with fake.client() as client:
            fetcher = CrateFetcher(store, registry(), client, **kwargs)
            return await fetcher.fetch(records)

    return asyncio.run(run())


def _fetch_one(fake, store, record, **kwargs):
    async def run():
        async with fake.client() as client:
            return await CrateFetcher(store, registry(), client, **kwargs).fetch_one(record)

    return asyncio.run(run())


def _sha(path):
    return hashlib.sha256(path.read_bytes()).hexdigest()


def _no_partials(root):
    return not any(p.name.endswith(PARTIAL_SUFFIX) for p in root.rglob("*"))


def _unreadable(is_broken):
    real = crate_store.sha256_file

    async def sha256_file(path):
        if is_broken(path):
            raise PermissionError(13, "Permission denied", str(path))
        return await real(path)

    return sha256_file


def test_download_streams_into_sharded_path(store_dir):
    record = make_record("serde", "1.0.0")
    fake = FakeRegistry({record.key: payload_for("serde", "1.0.0")})
    store = CrateStore(store_dir)
    progress = ProgressCounters()

    summary = _fetch(fake, store, [record], progress=progress)

    path = store_dir / "se" / "rd" / "serde-1.0.0.crate"
    assert _sha(path) == record.checksum
    assert fake.requests == [f"{DL}/serde/1.0.0/download"]
    assert summary.downloaded == 1
    assert summary.bytes_downloaded == len(payload_for("serde", "1.0.0"))
    assert progress.items[STAGE_FETCH] == 1
    assert progress.bytes[STAGE_FETCH] == summary.bytes_downloaded
    assert _no_partials(store_dir)


def test_local_hit_skips_network(store_dir):
    record = make_record("a", "1.0.0")
    store = CrateStore(store_dir)
    path = store.path_for(record)
    path.parent.mkdir(parents=True)
    path.write_bytes(payload_for("a", "1.0.0"))
    fake = FakeRegistry()

    result = _fetch_one(fake, store, record)

    assert result.outcome is FetchOutcome.LOCAL_HIT
    assert fake.requests == []


def test_invalid_local_file_is_replaced(store_dir):
    record = make_record("abc", "2.1.0")
    store = CrateStore(store_dir)
    path = store.path_for(record)
    path.parent.mkdir(parents=True)
    path.write_bytes(b"truncated")
    fake = FakeRegistry({record.key: payload_for("abc", "2.1.0")})

    result = _fetch_one(fake, store, record)

    assert result.outcome is FetchOutcome.DOWNLOADED
    assert _sha(path) == record.checksum


def test_invalid_local_file_is_removed_when_refetch_fails(store_dir):
    record = make_record("abc", "2.1.0")
    store = CrateStore(store_dir)
    path = store.path_for(record)
    path.parent.mkdir(parents=True)
    path.write_bytes(b"truncated")
    fake = FakeRegistry(status=503)

    result = _fetch_one(fake, store, record)

    assert result.outcome is FetchOutcome.FAILED
    assert not path.exists()


def test_wrong_bytes_from_registry_are_never_finalized(store_dir):
    record = make_record("rand", "0.8.5")
    fake = FakeRegistry({record.key: b"something else entirely"})
    store = CrateStore(store_dir)

    summary = _fetch(fake, store, [record])

    assert summary.failed == 1
    assert summary.downloaded == 0
    assert not store.path_for(record).exists()
    assert _no_partials(store_dir)


def test_missing_upstream_is_a_failure_not_an_abort(store_dir):
    present = make_record("tokio", "1.0.0")
    absent = make_record("nope", "0.0.1")
    fake = FakeRegistry({present.key: payload_for("tokio", "1.0.0")})
    store = CrateStore(store_dir)

    summary = _fetch(fake, store, [absent, present], workers=1)

    assert summary.failed == 1
    assert summary.downloaded == 1
    assert store.path_for(present).is_file()


def test_stream_error_midway_leaves_nothing_behind(store_dir):
    record = make_record("hyper", "1.0.0")
    fake = FakeRegistry()

    async def broken_body():
        yield b"partial bytes"
        raise httpx.ReadError("connection reset")

    fake.overrides[record.key] = lambda request: httpx.Response(200, content=broken_body())
    store = CrateStore(store_dir)

    result = _fetch_one(fake, store, record)

    assert result.outcome is FetchOutcome.FAILED
    assert "connection reset" in result.error
    assert not store.path_for(record).exists()
    assert _no_partials(store_dir)


def test_search_paths_are_consulted_in_order(tmp_path, store_dir):
    record = make_record("serde", "1.0.0")
    good = payload_for("serde", "1.0.0")
    first, second, third = tmp_path / "first", tmp_path / "second", tmp_path / "third"
    (first / "old").mkdir(parents=True)
    (first / "old" / record.filename).write_bytes(b"stale copy")
    (second / "deep" / "er").mkdir(parents=True)
    (second / "deep" / "er" / record.filename).write_bytes(good)
    third.mkdir()
    (third / record.filename).write_bytes(good)
    fake = FakeRegistry()
    store = CrateStore(store_dir)

    result = _fetch_one(fake, store, record, search_paths=[first, second, third])

    assert result.outcome is FetchOutcome.SEARCH_PATH_HIT
    assert result.source == str(second / "deep" / "er" / record.filename)
    assert _sha(store.path_for(record)) == record.checksum
    assert fake.requests == []


def test_search_path_without_match_falls_back_to_download(tmp_path, store_dir):
    record = make_record("serde", "1.0.0")
    elsewhere = tmp_path / "elsewhere"
    elsewhere.mkdir()
    (elsewhere / record.filename).write_bytes(b"wrong")
    fake = FakeRegistry({record.key: payload_for("serde", "1.0.0")})

    result = _fetch_one(fake, CrateStore(store_dir), record, search_paths=[elsewhere, tmp_path / "missing"])

    assert result.outcome is FetchOutcome.DOWNLOADED
    assert len(fake.requests) == 1


def test_download_limit_is_per_worker(store_dir):
    records = [make_record(f"crate{i}", "1.0.0") for i in range(10)]
    fake = FakeRegistry({r.key: payload_for(r.name, r.version) for r in records})

    summary = _fetch(fake, CrateStore(store_dir), records, workers=2, download_limit=2)

    assert summary.downloaded == 4
    assert summary.not_attempted == 6
    assert len(fake.requests) == 4


def test_local_hits_do_not_count_towards_limit(store_dir):
    store = CrateStore(store_dir)
    present = [make_record(f"have{i}", "1.0.0") for i in range(3)]
    for record in present:
        path = store.path_for(record)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(payload_for(record.name, record.version))
    wanted = make_record("want", "1.0.0")
    fake = FakeRegistry({wanted.key: payload_for("want", "1.0.0")})

    summary = _fetch(fake, store, present + [wanted], workers=1, download_limit=1)

    assert summary.local_hits == 3
    assert summary.downloaded == 1
    assert summary.not_attempted == 0


def test_conflicting_records_only_fetch_the_first(store_dir):
    first = CrateRecord(name="foo", version="1.0.0", checksum=hashlib.sha256(b"one").hexdigest())
    second = CrateRecord(name="foo", version="1.0.0", checksum=hashlib.sha256(b"two").hexdigest())
    fake = FakeRegistry({first.key: b"one"})
    store = CrateStore(store_dir)

    summary = _fetch(fake, store, [first, second])

    assert summary.downloaded == 1
    assert summary.conflicts == 1
    assert len(fake.requests) == 1
    assert _sha(store.path_for(first)) == first.checksum


def test_many_records_with_wide_pool(store_dir):
    records = [make_record(f"pkg{i:03d}", f"1.{i}.0") for i in range(60)]
    fake = FakeRegistry({r.key: payload_for(r.name, r.version) for r in records})
    store = CrateStore(store_dir)

    summary = _fetch(fake, store, records, workers=20)

    assert summary.downloaded == 60
    assert all(_sha(store.path_for(r)) == r.checksum for r in records)


def test_unreadable_local_file_fails_only_that_record(store_dir, monkeypatch):
    broken = make_record("broken", "1.0.0")
    good = make_record("serde", "1.0.0")
    store = CrateStore(store_dir)
    path = store.path_for(broken)
    path.parent.mkdir(parents=True)
    path.write_bytes(payload_for("broken", "1.0.0"))
    monkeypatch.setattr(crate_store, "sha256_file", _unreadable(lambda p: p.name == broken.filename))
    fake = FakeRegistry({good.key: payload_for("serde", "1.0.0")})

    summary = _fetch(fake, store, [broken, good], workers=1)

    assert summary.failed == 1
    assert summary.downloaded == 1
    assert fake.requests == [f"{DL}/serde/1.0.0/download"]
    assert _sha(store.path_for(good)) == good.checksum


def test_unreadable_search_candidate_is_skipped(tmp_path, store_dir, monkeypatch):
    record = make_record("serde", "1.0.0")
    good = payload_for("serde", "1.0.0")
    locked, usable = tmp_path / "locked", tmp_path / "usable"
    locked.mkdir()
    (locked / record.filename).write_bytes(good)
    usable.mkdir()
    (usable / record.filename).write_bytes(good)
    monkeypatch.setattr(crate_store, "sha256_file", _unreadable(lambda p: p.parent == locked))
    fake = FakeRegistry()

    result = _fetch_one(fake, CrateStore(store_dir), record, search_paths=[locked, usable])

    assert result.outcome is FetchOutcome.SEARCH_PATH_HIT
    assert result.source == str(usable / record.filename)
    assert fake.requests == []
