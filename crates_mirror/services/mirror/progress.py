"""
Progress observers for the mirror pipeline.

Observers only watch: nothing in the pipeline waits on them or branches on
what they return, so swapping in NullProgress changes no behaviour.
"""
from __future__ import annotations

import logging
import time
from typing import Dict, Optional

logger = logging.getLogger(__name__)

STAGE_WALK = "walk"
STAGE_PARSE = "parse"
STAGE_VERIFY = "verify"
STAGE_FETCH = "fetch"


class ProgressObserver:
    """Interface handed to each stage. The default implementation ignores everything."""

    def start(self, stage: str, total: Optional[int] = None) -> None:
        pass

    def advance(self, stage: str, count: int = 1) -> None:
        pass

    def add_bytes(self, stage: str, nbytes: int) -> None:
        pass

    def finish(self, stage: str) -> None:
        pass


class NullProgress(ProgressObserver):
    """Explicit no-op observer."""


class ProgressCounters(ProgressObserver):
    """
    Keeps per-stage item and byte counters.

    All updates happen on the event loop thread, so plain integers suffice.
    """

    def __init__(self) -> None:
        self.items: Dict[str, int] = {}
        self.bytes: Dict[str, int] = {}
        self.totals: Dict[str, Optional[int]] = {}

    def start(self, stage: str, total: Optional[int] = None) -> None:
        self.items.setdefault(stage, 0)
        self.bytes.setdefault(stage, 0)
        self.totals[stage] = total

    def advance(self, stage: str, count: int = 1) -> None:
        self.items[stage] = self.items.get(stage, 0) + count

    def add_bytes(self, stage: str, nbytes: int) -> None:
        self.bytes[stage] = self.bytes.get(stage, 0) + nbytes


class LoggingProgress(ProgressCounters):
    """Counters that also emit a progress line every ``log_every`` items."""

    def __init__(self, log_every: int = 1000) -> None:
        super().__init__()
        self.log_every = log_every
        self._started: Dict[str, float] = {}

    def start(self, stage: str, total: Optional[int] = None) -> None:
        super().start(stage, total)
        self._started[stage] = time.monotonic()
        if total is not None:
            logger.info(f"{stage.capitalize()}: {total} items")
        else:
            logger.info(f"{stage.capitalize()}: started")

    def advance(self, stage: str, count: int = 1) -> None:
        before = self.items.get(stage, 0)
        super().advance(stage, count)
        after = self.items[stage]
        if self.log_every and after // self.log_every > before // self.log_every:
            total = self.totals.get(stage)
            if total:
                percent = (after / total) * 100
                logger.info(f"{stage.capitalize()}: {after}/{total} ({percent:.1f}%)")
            else:
                logger.info(f"{stage.capitalize()}: {after}")

    def finish(self, stage: str) -> None:
        elapsed = time.monotonic() - self._started.get(stage, time.monotonic())
        message = f"{stage.capitalize()}: complete, {self.items.get(stage, 0)} items in {elapsed:.1f}s"
        nbytes = self.bytes.get(stage, 0)
        if nbytes:
            message += f", {nbytes / (1024 * 1024):.1f} MiB"
        logger.info(message)
