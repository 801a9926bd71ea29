"""
One complete mirror run: index -> records -> reconciliation -> fetch.

Everything that can make the run fatal (registry config, manifest, index
walk) happens before the first download is attempted.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Iterable, Optional

import httpx

from crates_mirror.data.crate_table import save_snapshot
from crates_mirror.domain.models import CrateRecord, MirrorReport, MirrorSettings
from crates_mirror.core.settings import load_registry_config
from crates_mirror.services.mirror.fetcher import CrateFetcher
from crates_mirror.services.mirror.index_parser import IndexParser
from crates_mirror.services.mirror.progress import NullProgress, ProgressObserver
from crates_mirror.services.mirror.reconcile import (
    ManifestReconciler,
    PassThroughReconciler,
    Reconciler,
    StoreVerifier,
)
from crates_mirror.storage.crate_store import CrateStore

logger = logging.getLogger(__name__)


def write_diff(records: Iterable[CrateRecord], store: CrateStore, path: Path) -> int:
    """Write the store-relative path of every record, one per line."""
    path.parent.mkdir(parents=True, exist_ok=True)
    count = 0
    with path.open("w", encoding="utf-8") as f:
        for record in records:
            f.write(f"{store.relative_path(record)}\n")
            count += 1
    logger.info(f"Wrote {count} pending crates to {path}")
    return count


def format_report(report: MirrorReport) -> str:
    parse, reconcile, fetch = report.parse, report.reconcile, report.fetch
    lines = [
        f"Index:     {parse.files} files, {parse.records} records "
        f"({parse.retracted} yanked, {parse.skipped_lines} malformed, "
        f"{parse.duplicates} duplicates, {parse.conflicts} conflicts)",
        f"Reconcile: strategy={reconcile.strategy}, {reconcile.considered} considered, "
        f"{reconcile.dropped} already mirrored, {reconcile.missing} missing, {reconcile.invalid} invalid",
        f"Fetch:     {fetch.requested} requested, {fetch.local_hits} present, "
        f"{fetch.search_path_hits} copied, {fetch.downloaded} downloaded, {fetch.failed} failed, "
        f"{fetch.conflicts} conflicting, {fetch.not_attempted} not attempted",
    ]
    if not report.complete:
        lines.append("Mirror is INCOMPLETE; re-run to retry the remaining crates.")
    return "\n".join(lines)


class MirrorPipeline:
    """Wires the index parser, a reconciler and the fetcher together for one run."""

    def __init__(
        self,
        settings: MirrorSettings,
        progress: Optional[ProgressObserver] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings
        self.progress = progress or NullProgress()
        self.store = CrateStore(settings.store_dir)
        self._client = client

    def build_reconciler(self) -> Reconciler:
        if self.settings.manifest_path is not None:
            return ManifestReconciler.from_file(self.settings.manifest_path)
        if self.settings.verify_store:
            return StoreVerifier(self.store, self.settings.verify_workers, self.progress)
        return PassThroughReconciler()

    @asynccontextmanager
    async def http_client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(
            follow_redirects=True,
            timeout=self.settings.request_timeout,
            headers={"User-Agent": self.settings.user_agent},
        ) as client:
            yield client

    async def run(self) -> MirrorReport:
        settings = self.settings
        report = MirrorReport()

        registry = load_registry_config(settings.index_dir)
        reconciler = self.build_reconciler()

        logger.info(f"Collecting metadata from {settings.index_dir}")
        parsed = await IndexParser(settings.parse_workers, self.progress).parse(settings.index_dir)
        report.parse = parsed.summary

        if settings.snapshot_path is not None:
            save_snapshot(parsed.records, settings.snapshot_path)

        logger.info(f"Reconciling {len(parsed.records)} records (strategy: {reconciler.name})")
        reconciled = await reconciler.reconcile(parsed.records)
        report.reconcile = reconciled.summary

        if settings.diff_path is not None:
            write_diff(reconciled.records, self.store, settings.diff_path)

        logger.info(f"Fetching {len(reconciled.records)} crates into {settings.store_dir}")
        async with self.http_client() as client:
            fetcher = CrateFetcher(
                self.store,
                registry,
                client,
                search_paths=settings.search_paths,
                workers=settings.fetch_workers,
                download_limit=settings.download_limit,
                progress=self.progress,
            )
            report.fetch = await fetcher.fetch(reconciled.records)

        return report
