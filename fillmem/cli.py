from __future__ import annotations

import argparse
import logging
import queue
import threading
from pathlib import Path

from rich.align import Align
from rich.console import Console
from rich.panel import Panel

from . import config, ux
from .commands import Dispatcher
from .gate import BusyGate
from .kstat import KstatError, open_source
from .logs import setup_logging
from .state import Activity
from .stats import StatsTask
from .term import EditSession, SetupError, TermError, start_terminal

console = Console()
logger = logging.getLogger(__name__)


def parse_args(argv=None):
    p = argparse.ArgumentParser(description="fillmem: memory stress console with live kernel statistics")
    p.add_argument("--prompt", default=config.PROMPT, help="Prompt text")
    p.add_argument("--interval-ms", type=int, default=config.STATS_INTERVAL_MS,
                   help="Statistics sampling period in milliseconds")
    p.add_argument("--stats-source", choices=["auto", "libkstat", "proc", "none"],
                   default=config.STATS_SOURCE, help="Where kernel statistics come from")
    p.add_argument("--proc-root", default=config.PROC_ROOT, help="procfs mount point")
    p.add_argument("--log-dir", type=Path, default=config.LOG_DIR, help="Diagnostic log directory")
    p.add_argument("--log-level", default=config.LOG_LEVEL, help="Diagnostic log level")
    p.add_argument("--no-banner", action="store_true", help="Skip the startup banner")
    p.add_argument("--no-color", action="store_true", help="Plain log lines without ANSI colour")
    args = p.parse_args(argv)
    if args.interval_ms <= 0:
        p.error("--interval-ms must be positive")
    return args


def _banner(prompt: str) -> Panel:
    text = (
        "[bold cyan]fillmem[/bold cyan]\n"
        "[white]memory stress console with live kernel statistics[/white]\n\n"
        f"[green]Prompt:[/] {prompt.strip()}\n"
        "[green]Commands:[/] grow <megabytes>, touch, info, help\n"
        "[green]Exit:[/] ^C or ^D at the prompt"
    )
    return Panel(Align.center(text, vertical="middle"), border_style="bright_blue", padding=(1, 4))


def editor_loop(session: EditSession, gate: BusyGate, activities: queue.Queue) -> None:
    """Prompt for lines, never while a command is still running."""
    while True:
        gate.wait_until_idle()
        try:
            text = session.line()
        except (TermError, OSError) as exc:
            logger.error("editor stopped: %s", exc)
            activities.put(Activity(kind="error", text=str(exc)))
            return
        if text is None:
            activities.put(Activity(kind="end", text=None))
            return
        gate.mark_busy()
        activities.put(Activity(kind="line", text=text))


def run(session: EditSession, gate: BusyGate, dispatcher: Dispatcher, activities: queue.Queue) -> int:
    while True:
        act = activities.get()
        if act["kind"] == "line":
            try:
                dispatcher.dispatch(act["text"])
            finally:
                gate.mark_idle()
        elif act["kind"] == "end":
            session.log(" * end!")
            return 0
        else:
            session.cleanup()
            logger.error("editor failed: %s", act["text"])
            console.print(f"[bold red]Error:[/] {act['text']}")
            return 1


def main(argv=None) -> int:
    args = parse_args(argv)
    if args.no_color:
        ux.set_color(False)

    try:
        log_path = setup_logging(args.log_dir, args.log_level)
    except (OSError, RuntimeError) as e:
        logging.getLogger().addHandler(logging.NullHandler())
        log_path = None
        console.print(f"[yellow]Diagnostic logging disabled:[/] {e}")

    if not args.no_banner:
        console.print(_banner(args.prompt))

    def open_stats():
        return open_source(args.stats_source, args.proc_root)

    try:
        reader = open_stats()
        stats_note = "" if reader else "statistics disabled"
    except KstatError as e:
        reader = None
        stats_note = f"statistics disabled: {e}"

    try:
        session = start_terminal(args.prompt)
    except SetupError as e:
        logger.error("terminal setup failed: %s", e)
        console.print(f"[bold red]fillmem:[/] {e}")
        if reader is not None:
            reader.close()
        return 1

    gate = BusyGate()
    activities: queue.Queue = queue.Queue()
    dispatcher = Dispatcher(session, open_stats=open_stats)

    stats_task = None
    if reader is not None:
        stats_task = StatsTask(reader, session.log, args.interval_ms)
        stats_task.start()
    else:
        session.log(ux.warn(stats_note))
    if log_path is not None:
        session.log(ux.dim(f"diagnostics in {log_path}"))

    threading.Thread(
        target=editor_loop, args=(session, gate, activities), name="editor", daemon=True
    ).start()

    try:
        return run(session, gate, dispatcher, activities)
    finally:
        session.cleanup()
        if stats_task is not None:
            stats_task.stop(timeout=2.0)
        if reader is not None:
            reader.close()
