from __future__ import annotations

from typing import Optional
from typing_extensions import Literal, TypedDict


class StatsSample(TypedDict, total=False):
    # zfs:arcstats, in bytes
    arc_c: int
    arc_c_min: int
    arc_c_max: int

    # unix:system_pages, in pages
    freemem: int
    availrmem: int


class Activity(TypedDict):
    # 'line' carries the submitted text, 'end' nothing, 'error' a message
    kind: Literal["line", "end", "error"]
    text: Optional[str]
