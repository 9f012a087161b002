"""
Operator commands.

The memory workload is plain compute: it checks the session for a pending
Ctrl-C every CHECK_EVERY bytes and stops early when one was taken. Every
rejected or malformed line produces exactly one log line.
"""

from __future__ import annotations

import datetime
import logging
import time
from typing import Callable, Dict, List, Optional

from . import ux
from .kstat import PAGE_SIZE, KstatError, KstatReader, boot_time, cpu_mhz, nproc, pages

logger = logging.getLogger(__name__)

CHECK_EVERY = 10000
MEGABYTE = 1024 * 1024

# byte -> byte + 1 (mod 256)
_INCREMENT = bytes((i + 1) & 0xFF for i in range(256))


def _format_boot(booted: Optional[int]) -> str:
    if booted is None:
        return "?"
    try:
        when = datetime.datetime.fromtimestamp(booted, datetime.timezone.utc)
    except (OverflowError, OSError, ValueError):
        return "?"
    return when.strftime("%Y-%m-%d %H:%M:%SZ")


class MemoryWorkload:
    def __init__(self) -> None:
        self.allocs: List[bytearray] = []

    @property
    def total(self) -> int:
        return sum(len(a) for a in self.allocs)


class Dispatcher:
    def __init__(self, session, open_stats: Optional[Callable[[], Optional[KstatReader]]] = None,
                 workload: Optional[MemoryWorkload] = None, check_every: int = CHECK_EVERY):
        self.session = session
        self.open_stats = open_stats
        self.workload = workload or MemoryWorkload()
        self.check_every = check_every
        self._handlers: Dict[str, Callable[[List[str]], None]] = {
            "grow": self.grow,
            "touch": self.touch,
            "info": self.info,
            "help": self.help,
        }

    def dispatch(self, line: str) -> None:
        tokens = line.split()
        if not tokens:
            return
        verb, args = tokens[0], tokens[1:]
        handler = self._handlers.get(verb)
        if handler is None:
            self.session.log(ux.error(f'"{verb}" not understood'))
            return
        logger.info("command: %s", line)
        try:
            handler(args)
        except Exception as exc:
            logger.exception("command %r failed", verb)
            self.session.log(ux.error(f"{verb} failed: {exc}"))

    def _interrupted(self) -> bool:
        if self.session.take_ctrlc():
            logger.info("command interrupted")
            self.session.log(ux.warn("interrupted!"))
            return True
        return False

    # --- commands

    def grow(self, args: List[str]) -> None:
        if not args:
            self.session.log("grow by how much?")
            return
        arg = args[0]
        if not (arg.isascii() and arg.isdigit()):
            self.session.log(ux.error(f"invalid megabyte count {arg!r}"))
            return
        megs = int(arg)

        start = time.monotonic()
        size = megs * MEGABYTE
        chunk = b"A" * self.check_every
        buf = bytearray()
        try:
            while len(buf) < size:
                remaining = size - len(buf)
                buf += chunk if remaining >= len(chunk) else chunk[:remaining]
                if self._interrupted():
                    return
        except MemoryError:
            self.session.log(ux.error(f"out of memory after {len(buf) // MEGABYTE} megabytes"))
            return

        self.workload.allocs.append(buf)
        ms = int((time.monotonic() - start) * 1000)
        logger.info("grew by %d MiB in %d ms (total %d bytes)", megs, ms, self.workload.total)
        self.session.log(ux.success(f"grew by {megs} megabytes in {ms} msec"))

    def touch(self, args: List[str]) -> None:
        start = time.monotonic()
        touched = 0
        for a in self.workload.allocs:
            for off in range(0, len(a), self.check_every):
                end = min(off + self.check_every, len(a))
                a[off:end] = a[off:end].translate(_INCREMENT)
                touched += end - off
                if self._interrupted():
                    return

        ms = int((time.monotonic() - start) * 1000)
        logger.info("touched %d bytes in %d ms", touched, ms)
        self.session.log(ux.success(f"touched {touched // MEGABYTE} megabytes in {ms} msec"))

    def info(self, args: List[str]) -> None:
        try:
            reader = self.open_stats() if self.open_stats else None
        except KstatError as exc:
            self.session.log(ux.error(f"statistics unavailable: {exc}"))
            return
        if reader is None:
            self.session.log(ux.warn("no statistics source configured"))
            return

        def attempt(fn):
            try:
                return fn(reader)
            except KstatError as exc:
                logger.debug("info: %s", exc)
                return None

        with reader:
            mhz = attempt(cpu_mhz)
            procs = attempt(nproc)
            booted = attempt(boot_time)
            pg = attempt(pages)

        parts = [
            f"cpu {mhz if mhz is not None else '?'} MHz",
            f"{procs if procs is not None else '?'} processes",
        ]
        parts.append("booted " + _format_boot(booted))
        if pg is not None:
            parts.append(
                f"free {pg.freemem * PAGE_SIZE / MEGABYTE:.1f} of "
                f"{pg.physmem * PAGE_SIZE / MEGABYTE:.1f} MiB"
            )
        parts.append(f"holding {self.workload.total // MEGABYTE} MiB")
        self.session.log(", ".join(parts))

    def help(self, args: List[str]) -> None:
        for line in (
            ux.usage("grow", "<megabytes>", "allocate and fill a new buffer"),
            ux.usage("touch", "", "increment every byte held so far"),
            ux.usage("info", "", "cpu, process and memory summary"),
            ux.usage("help", "", "this list"),
            ux.dim("  ^C interrupts a running command or ends the session; ^D ends it"),
        ):
            self.session.log(line)
