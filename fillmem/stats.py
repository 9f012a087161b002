from __future__ import annotations

import datetime
import logging
import threading
import time
from typing import Callable, Optional

from .kstat import (
    KstatError,
    KstatReader,
    MODULE_UNIX,
    MODULE_ZFS,
    NAME_ARCSTATS,
    NAME_SYSTEM_PAGES,
    PAGE_SIZE,
    STAT_AVAILRMEM,
    STAT_C,
    STAT_C_MAX,
    STAT_C_MIN,
    STAT_FREEMEM,
)
from .state import StatsSample

logger = logging.getLogger(__name__)

SLUGGISH_FACTOR = 3


def read_sample(k: KstatReader) -> StatsSample:
    """Refresh the chain and pull the ARC and page counters. Missing reads as 0."""
    k.chain_update()
    sample: StatsSample = {
        "arc_c": 0,
        "arc_c_min": 0,
        "arc_c_max": 0,
        "freemem": 0,
        "availrmem": 0,
    }

    k.lookup(MODULE_ZFS, NAME_ARCSTATS)
    if k.step() and k.module == MODULE_ZFS and k.name == NAME_ARCSTATS:
        sample["arc_c"] = k.data_u64(STAT_C) or 0
        sample["arc_c_min"] = k.data_u64(STAT_C_MIN) or 0
        sample["arc_c_max"] = k.data_u64(STAT_C_MAX) or 0

    k.lookup(MODULE_UNIX, NAME_SYSTEM_PAGES)
    if k.step() and k.module == MODULE_UNIX and k.name == NAME_SYSTEM_PAGES:
        sample["availrmem"] = k.data_u64(STAT_AVAILRMEM) or 0
        sample["freemem"] = k.data_u64(STAT_FREEMEM) or 0

    return sample


def format_sample(now: datetime.datetime, sample: StatsSample) -> str:
    out = now.strftime("%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"
    for label, key, in_pages in (
        ("c", "arc_c", False),
        ("min", "arc_c_min", False),
        ("max", "arc_c_max", False),
        ("free", "freemem", True),
        ("avrm", "availrmem", True),
    ):
        v = sample.get(key, 0)
        if in_pages:
            v *= PAGE_SIZE
        out += f" {label} {v / 1024.0 / 1024.0:7.1f}"
    return out


class StatsTask:
    """Periodic sampler; every line goes out through `log`."""

    def __init__(self, reader: KstatReader, log: Callable[[str], None], interval_ms: int = 500,
                 clock: Optional[Callable[[], datetime.datetime]] = None):
        self.reader = reader
        self.log = log
        self.interval = interval_ms / 1000.0
        self.clock = clock or (lambda: datetime.datetime.now(datetime.timezone.utc))
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._last_run = time.monotonic()

    def start(self) -> None:
        self._last_run = time.monotonic()
        self._thread = threading.Thread(target=self._run, name="timer", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            self.tick()

    def tick(self) -> None:
        now = time.monotonic()
        msec = int((now - self._last_run) * 1000)
        if msec > SLUGGISH_FACTOR * self.interval * 1000:
            self.log(f"{msec} msec since last stats; sluggish?")
        self._last_run = now

        stamp = self.clock()
        try:
            sample = read_sample(self.reader)
        except KstatError as exc:
            logger.warning("stats refresh failed: %s", exc)
            return
        self.log(format_sample(stamp, sample))
