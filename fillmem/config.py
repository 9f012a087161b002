import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()  # read .env


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}") from None


PROMPT = os.getenv("FILLMEM_PROMPT", "fillmem> ")
STATS_INTERVAL_MS = _int_env("FILLMEM_STATS_INTERVAL_MS", 500)
STATS_SOURCE = os.getenv("FILLMEM_STATS_SOURCE", "auto")
PROC_ROOT = os.getenv("FILLMEM_PROC_ROOT", "/proc")
LOG_DIR = Path(os.getenv("FILLMEM_LOG_DIR", str(Path.home() / ".fillmem" / "logs"))).expanduser()
LOG_LEVEL = os.getenv("FILLMEM_LOG_LEVEL", "INFO")

if STATS_INTERVAL_MS <= 0:
    raise RuntimeError("FILLMEM_STATS_INTERVAL_MS must be positive")
