"""Builds a small fake procfs tree for the statistics tests."""

from pathlib import Path

MEMINFO = """\
MemTotal:        8192000 kB
MemFree:         4096000 kB
MemAvailable:    6144000 kB
Buffers:          100000 kB
"""

STAT = """\
cpu  10 20 30 40 0 0 0 0 0 0
btime 1700000000
processes 1234
"""

CPUINFO = """\
processor\t: 0
model name\t: Test CPU
cpu MHz\t\t: 2400.000

processor\t: 1
model name\t: Test CPU
cpu MHz\t\t: 2400.000
"""

ARCSTATS = """\
13 1 0x01 4 1088 4299776 1234567
name                            type data
hits                            4    100
c                               4    1073741824
c_min                           4    33554432
c_max                           4    2147483648
"""

POOL_IO = """\
20 3 0x00 1 80 1 2
nread    nwritten reads    writes   wtime    wlentime wupdate  rtime    rlentime rupdate  wcnt     rcnt
1        2        3        4        5        6        7        8        9        10       11       12
"""


def build(root: Path, arcstats: bool = True) -> Path:
    root = Path(root)
    (root / "meminfo").write_text(MEMINFO)
    (root / "stat").write_text(STAT)
    (root / "cpuinfo").write_text(CPUINFO)
    for pid in ("1", "42"):
        (root / pid).mkdir()
    (root / "self").mkdir()

    zfs = root / "spl" / "kstat" / "zfs"
    (zfs / "tank").mkdir(parents=True)
    if arcstats:
        (zfs / "arcstats").write_text(ARCSTATS)
    (zfs / "tank" / "io").write_text(POOL_IO)
    return root
