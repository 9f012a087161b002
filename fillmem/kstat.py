"""
Kernel statistics readers.

Two backends share one walking interface:

- LibKstat: ctypes binding to libkstat(3LIB) on illumos and Solaris
- ProcKstat: Linux procfs, i.e. the SPL kstat files ZFS exposes under
  spl/kstat plus a few synthesized entries (system_pages, system_misc,
  cpu_info) built from meminfo, stat and cpuinfo

Usage mirrors kstat(3KSTAT): lookup() positions a cursor, step() advances it,
and the typed accessors read a named statistic from the current entry.
chain_update() refreshes the snapshot and invalidates any walk in progress.
Lookups and accessors never raise; they return None (or False) instead.
"""

from __future__ import annotations

import ctypes
import ctypes.util
import logging
import os
import struct
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, NamedTuple, Optional

logger = logging.getLogger(__name__)


MODULE_CPU_INFO = "cpu_info"
STAT_CLOCK_MHZ = "clock_MHz"

MODULE_UNIX = "unix"
NAME_SYSTEM_MISC = "system_misc"
STAT_BOOT_TIME = "boot_time"
STAT_NPROC = "nproc"
STAT_NCPUS = "ncpus"

NAME_SYSTEM_PAGES = "system_pages"
STAT_FREEMEM = "freemem"
STAT_PHYSMEM = "physmem"
STAT_AVAILRMEM = "availrmem"

MODULE_ZFS = "zfs"
NAME_ARCSTATS = "arcstats"
STAT_C = "c"
STAT_C_MIN = "c_min"
STAT_C_MAX = "c_max"

KSTAT_TYPE_RAW = 0
KSTAT_TYPE_NAMED = 1
KSTAT_TYPE_INTR = 2
KSTAT_TYPE_IO = 3
KSTAT_TYPE_TIMER = 4

KSTAT_DATA_CHAR = 0
KSTAT_DATA_INT32 = 1
KSTAT_DATA_UINT32 = 2
KSTAT_DATA_INT64 = 3
KSTAT_DATA_UINT64 = 4
KSTAT_DATA_STRING = 9

KSTAT_STRLEN = 31

# Page counts are reported and converted back to bytes at this size.
PAGE_SIZE = 4096
_VALUE_SIZE = 16

_INT_FORMATS = {
    KSTAT_DATA_INT32: "=i",
    KSTAT_DATA_UINT32: "=I",
    KSTAT_DATA_INT64: "=q",
    KSTAT_DATA_UINT64: "=Q",
}


class KstatError(RuntimeError):
    pass


@dataclass
class KstatIO:
    nread: int
    nwritten: int
    reads: int
    writes: int
    wtime: int
    wlentime: int
    wlastupdate: int
    rtime: int
    rlentime: int
    rlastupdate: int
    wcnt: int
    rcnt: int


_IO_FIELDS = [
    "nread", "nwritten", "reads", "writes",
    "wtime", "wlentime", "wlastupdate",
    "rtime", "rlentime", "rlastupdate",
    "wcnt", "rcnt",
]


@dataclass
class KstatNamed:
    """One named statistic. `raw` holds the 16-byte value union as stored."""

    name: str
    data_type: int
    raw: bytes

    @property
    def value(self) -> Any:
        if self.data_type in (KSTAT_DATA_CHAR, KSTAT_DATA_STRING):
            return self.raw.split(b"\0", 1)[0].decode("ascii", "replace")
        fmt = _INT_FORMATS.get(self.data_type)
        if fmt is None:
            return None
        return struct.unpack_from(fmt, self.raw)[0]


@dataclass
class KstatEntry:
    module: str
    instance: int
    name: str
    klass: str
    type: int
    handle: Any = None


def _pack_value(data_type: int, text: str) -> bytes:
    fmt = _INT_FORMATS.get(data_type)
    if fmt is None:
        raw = text.encode("ascii", "replace")[:_VALUE_SIZE]
    else:
        raw = struct.pack(fmt, int(text, 16) if text.startswith("0x") else int(text))
    return raw.ljust(_VALUE_SIZE, b"\0")


# ----------------------------
# Common walker
# ----------------------------

class KstatReader:
    """Snapshot of the kstat chain with a cursor over it."""

    def __init__(self) -> None:
        self._chain: List[KstatEntry] = []
        self._pos: Optional[int] = None
        self._stepping = False

    def __enter__(self):
        return self

    def __exit__(self, *_):
        self.close()

    def close(self) -> None:
        pass

    # --- backend hooks

    def _snapshot(self) -> List[KstatEntry]:
        raise NotImplementedError

    def _read_named(self, entry: KstatEntry) -> List[KstatNamed]:
        raise NotImplementedError

    def _read_io(self, entry: KstatEntry) -> KstatIO:
        raise NotImplementedError

    # --- chain

    def chain_update(self) -> None:
        self._stepping = False
        self._pos = None
        self._chain = self._snapshot()

    def lookup(self, module: Optional[str] = None, name: Optional[str] = None,
               instance: int = -1) -> None:
        self._stepping = False
        self._pos = None
        for i, e in enumerate(self._chain):
            if module is not None and e.module != module:
                continue
            if name is not None and e.name != name:
                continue
            if instance != -1 and e.instance != instance:
                continue
            self._pos = i
            break

    def walk(self) -> None:
        self._stepping = False
        self._pos = 0 if self._chain else None

    def step(self) -> bool:
        """Call once to start iterating and again for each following entry."""
        if not self._stepping:
            self._stepping = True
        elif self._pos is not None:
            self._pos += 1
            if self._pos >= len(self._chain):
                self._pos = None

        if self._pos is None:
            self._stepping = False
            return False
        return True

    def entries(self) -> List[KstatEntry]:
        return list(self._chain)

    # --- current entry

    def _current(self) -> KstatEntry:
        if self._pos is None:
            raise RuntimeError("step() must return True first")
        return self._chain[self._pos]

    @property
    def module(self) -> str:
        return self._current().module

    @property
    def name(self) -> str:
        return self._current().name

    @property
    def klass(self) -> str:
        return self._current().klass

    @property
    def instance(self) -> int:
        return self._current().instance

    @property
    def type(self) -> int:
        return self._current().type

    def _named(self) -> Optional[List[KstatNamed]]:
        if self._pos is None:
            return None
        entry = self._chain[self._pos]
        if entry.type != KSTAT_TYPE_NAMED:
            return None
        try:
            return self._read_named(entry)
        except KstatError as exc:
            logger.debug("read of %s:%d:%s failed: %s", entry.module, entry.instance, entry.name, exc)
            return None

    def ndata(self) -> int:
        return len(self._named() or ())

    def data_get(self, n: int) -> Optional[KstatNamed]:
        data = self._named()
        if data is None or n >= len(data):
            return None
        return data[n]

    def io(self) -> Optional[KstatIO]:
        if self._pos is None:
            return None
        entry = self._chain[self._pos]
        if entry.type != KSTAT_TYPE_IO:
            return None
        try:
            return self._read_io(entry)
        except KstatError as exc:
            logger.debug("io read of %s:%s failed: %s", entry.module, entry.name, exc)
            return None

    def _unpack(self, statistic: str, fmt: str) -> Optional[int]:
        for kn in self._named() or ():
            if kn.name == statistic:
                return struct.unpack_from(fmt, kn.raw)[0]
        return None

    def data_s32(self, statistic: str) -> Optional[int]:
        return self._unpack(statistic, "=i")

    def data_u32(self, statistic: str) -> Optional[int]:
        return self._unpack(statistic, "=I")

    def data_s64(self, statistic: str) -> Optional[int]:
        return self._unpack(statistic, "=q")

    def data_u64(self, statistic: str) -> Optional[int]:
        return self._unpack(statistic, "=Q")

    def data_long(self, statistic: str) -> Optional[int]:
        return self._unpack(statistic, "@l")

    def data_ulong(self, statistic: str) -> Optional[int]:
        return self._unpack(statistic, "@L")


# ----------------------------
# libkstat (illumos / Solaris)
# ----------------------------

class _Kstat(ctypes.Structure):
    pass


_Kstat._fields_ = [
    ("ks_crtime", ctypes.c_longlong),
    ("ks_next", ctypes.POINTER(_Kstat)),
    ("ks_kid", ctypes.c_int),
    ("ks_module", ctypes.c_char * KSTAT_STRLEN),
    ("ks_resv", ctypes.c_ubyte),
    ("ks_instance", ctypes.c_int),
    ("ks_name", ctypes.c_char * KSTAT_STRLEN),
    ("ks_type", ctypes.c_ubyte),
    ("ks_class", ctypes.c_char * KSTAT_STRLEN),
    ("ks_flags", ctypes.c_ubyte),
    ("ks_data", ctypes.c_void_p),
    ("ks_ndata", ctypes.c_uint),
    ("ks_data_size", ctypes.c_size_t),
    ("ks_snaptime", ctypes.c_longlong),
]


class _KstatCtl(ctypes.Structure):
    _fields_ = [
        ("kc_chain_id", ctypes.c_int),
        ("kc_chain", ctypes.POINTER(_Kstat)),
        ("kc_kd", ctypes.c_int),
    ]


class _KstatValue(ctypes.Union):
    _fields_ = [
        ("c", ctypes.c_char * _VALUE_SIZE),
        ("l", ctypes.c_long),
        ("ul", ctypes.c_ulong),
        ("ui32", ctypes.c_uint32),
        ("i32", ctypes.c_int32),
        ("ui64", ctypes.c_uint64),
        ("i64", ctypes.c_int64),
    ]


class _KstatNamedC(ctypes.Structure):
    _fields_ = [
        ("name", ctypes.c_char * KSTAT_STRLEN),
        ("data_type", ctypes.c_ubyte),
        ("value", _KstatValue),
    ]


class _KstatIOC(ctypes.Structure):
    _fields_ = [
        ("nread", ctypes.c_ulonglong),
        ("nwritten", ctypes.c_ulonglong),
        ("reads", ctypes.c_uint),
        ("writes", ctypes.c_uint),
        ("wtime", ctypes.c_longlong),
        ("wlentime", ctypes.c_longlong),
        ("wlastupdate", ctypes.c_longlong),
        ("rtime", ctypes.c_longlong),
        ("rlentime", ctypes.c_longlong),
        ("rlastupdate", ctypes.c_longlong),
        ("wcnt", ctypes.c_uint),
        ("rcnt", ctypes.c_uint),
    ]


def _cstr(b: bytes) -> str:
    return b.decode("ascii", "replace")


class LibKstat(KstatReader):
    def __init__(self, library: Optional[str] = None):
        super().__init__()
        self._kc = None
        path = library or ctypes.util.find_library("kstat")
        if not path:
            raise KstatError("libkstat not found")
        try:
            lib = ctypes.CDLL(path, use_errno=True)
        except OSError as exc:
            raise KstatError(f"cannot load {path}: {exc}") from exc

        lib.kstat_open.restype = ctypes.POINTER(_KstatCtl)
        lib.kstat_open.argtypes = []
        lib.kstat_close.restype = ctypes.c_int
        lib.kstat_close.argtypes = [ctypes.POINTER(_KstatCtl)]
        lib.kstat_chain_update.restype = ctypes.c_int
        lib.kstat_chain_update.argtypes = [ctypes.POINTER(_KstatCtl)]
        lib.kstat_read.restype = ctypes.c_int
        lib.kstat_read.argtypes = [ctypes.POINTER(_KstatCtl), ctypes.POINTER(_Kstat), ctypes.c_void_p]
        self._lib = lib

        kc = lib.kstat_open()
        if not kc:
            err = ctypes.get_errno()
            raise KstatError(f"kstat_open(3KSTAT) failed: {os.strerror(err)}")
        self._kc = kc
        self.chain_update()

    def close(self) -> None:
        if self._kc:
            self._lib.kstat_close(self._kc)
            self._kc = None

    def _snapshot(self) -> List[KstatEntry]:
        if not self._kc:
            raise KstatError("kstat handle closed")
        if self._lib.kstat_chain_update(self._kc) == -1:
            err = ctypes.get_errno()
            raise KstatError(f"kstat_chain_update() failure: {os.strerror(err)}")

        entries = []
        ptr = self._kc.contents.kc_chain
        while ptr:
            ks = ptr.contents
            entries.append(KstatEntry(
                module=_cstr(ks.ks_module),
                instance=ks.ks_instance,
                name=_cstr(ks.ks_name),
                klass=_cstr(ks.ks_class),
                type=ks.ks_type,
                handle=ptr,
            ))
            ptr = ks.ks_next
        return entries

    def _read(self, entry: KstatEntry) -> _Kstat:
        if self._lib.kstat_read(self._kc, entry.handle, None) == -1:
            err = ctypes.get_errno()
            raise KstatError(f"kstat_read() failure: {os.strerror(err)}")
        return entry.handle.contents

    def _read_named(self, entry: KstatEntry) -> List[KstatNamed]:
        ks = self._read(entry)
        if not ks.ks_data or ks.ks_ndata < 1:
            return []
        arr = ctypes.cast(ks.ks_data, ctypes.POINTER(_KstatNamedC * ks.ks_ndata)).contents
        return [
            KstatNamed(
                name=_cstr(kn.name),
                data_type=kn.data_type,
                raw=ctypes.string_at(ctypes.addressof(kn.value), _VALUE_SIZE),
            )
            for kn in arr
        ]

    def _read_io(self, entry: KstatEntry) -> KstatIO:
        ks = self._read(entry)
        if not ks.ks_data:
            raise KstatError("io kstat has no data")
        kio = ctypes.cast(ks.ks_data, ctypes.POINTER(_KstatIOC)).contents
        return KstatIO(**{f: getattr(kio, f) for f in _IO_FIELDS})


# ----------------------------
# procfs (Linux)
# ----------------------------

_SYNTHETIC = "synthetic"


class ProcKstat(KstatReader):
    def __init__(self, root: str = "/proc"):
        super().__init__()
        self.root = Path(root)
        if not self.root.is_dir():
            raise KstatError(f"{root} is not a directory")
        self.chain_update()

    def _read_text(self, path: Path) -> str:
        try:
            return path.read_text(encoding="ascii", errors="replace")
        except OSError as exc:
            raise KstatError(f"cannot read {path}: {exc}") from exc

    def _snapshot(self) -> List[KstatEntry]:
        if not self.root.is_dir():
            raise KstatError(f"{self.root} went away")

        entries: List[KstatEntry] = []
        spl = self.root / "spl" / "kstat"
        if spl.is_dir():
            for dirpath, dirnames, filenames in os.walk(spl):
                dirnames.sort()
                rel = Path(dirpath).relative_to(spl)
                if rel == Path("."):
                    continue
                module = rel.as_posix()
                for fn in sorted(filenames):
                    path = Path(dirpath) / fn
                    try:
                        with path.open(encoding="ascii", errors="replace") as fh:
                            first = fh.readline().split()
                        ks_type = int(first[1])
                    except (OSError, IndexError, ValueError):
                        continue
                    entries.append(KstatEntry(module, 0, fn, "misc", ks_type, path))

        entries.append(KstatEntry(MODULE_UNIX, 0, NAME_SYSTEM_PAGES, "pages",
                                  KSTAT_TYPE_NAMED, (_SYNTHETIC, NAME_SYSTEM_PAGES)))
        entries.append(KstatEntry(MODULE_UNIX, 0, NAME_SYSTEM_MISC, "misc",
                                  KSTAT_TYPE_NAMED, (_SYNTHETIC, NAME_SYSTEM_MISC)))
        for cpu in self._cpus():
            entries.append(KstatEntry(MODULE_CPU_INFO, cpu, f"cpu_info{cpu}", "misc",
                                      KSTAT_TYPE_NAMED, (_SYNTHETIC, MODULE_CPU_INFO)))
        return entries

    def _read_named(self, entry: KstatEntry) -> List[KstatNamed]:
        if isinstance(entry.handle, tuple):
            return self._synthesize(entry)

        lines = self._read_text(entry.handle).splitlines()
        data = []
        # line 0 is the kstat header, line 1 the column titles
        for ln in lines[2:]:
            parts = ln.split(None, 2)
            if len(parts) < 3:
                continue
            name, dtype, text = parts
            try:
                dt = int(dtype)
                data.append(KstatNamed(name, dt, _pack_value(dt, text.strip())))
            except (ValueError, struct.error):
                continue
        return data

    def _read_io(self, entry: KstatEntry) -> KstatIO:
        if isinstance(entry.handle, tuple):
            raise KstatError("not an io kstat")
        lines = self._read_text(entry.handle).splitlines()
        try:
            values = [int(v) for v in lines[2].split()]
        except (IndexError, ValueError) as exc:
            raise KstatError(f"malformed io kstat {entry.handle}") from exc
        if len(values) < len(_IO_FIELDS):
            raise KstatError(f"short io kstat {entry.handle}")
        return KstatIO(*values[:len(_IO_FIELDS)])

    # --- synthesized entries

    def _meminfo(self) -> dict:
        out = {}
        for ln in self._read_text(self.root / "meminfo").splitlines():
            key, _, rest = ln.partition(":")
            fields = rest.split()
            if fields and fields[0].isdigit():
                kb = int(fields[0])
                out[key.strip()] = kb * 1024 if len(fields) > 1 and fields[1] == "kB" else kb
        return out

    def _cpuinfo(self) -> List[dict]:
        try:
            text = self._read_text(self.root / "cpuinfo")
        except KstatError:
            return []
        cpus, cur = [], {}
        for ln in text.splitlines():
            if not ln.strip():
                if cur:
                    cpus.append(cur)
                cur = {}
                continue
            key, _, val = ln.partition(":")
            cur[key.strip()] = val.strip()
        if cur:
            cpus.append(cur)
        return [c for c in cpus if "processor" in c]

    def _cpus(self) -> List[int]:
        out = []
        for c in self._cpuinfo():
            try:
                out.append(int(c["processor"]))
            except ValueError:
                continue
        return out

    def _synthesize(self, entry: KstatEntry) -> List[KstatNamed]:
        what = entry.handle[1]
        if what == NAME_SYSTEM_PAGES:
            mem = self._meminfo()
            stats = [
                (STAT_PHYSMEM, mem.get("MemTotal")),
                (STAT_FREEMEM, mem.get("MemFree")),
                (STAT_AVAILRMEM, mem.get("MemAvailable")),
            ]
            return [
                KstatNamed(name, KSTAT_DATA_UINT64, _pack_value(KSTAT_DATA_UINT64, str(v // PAGE_SIZE)))
                for name, v in stats if v is not None
            ]

        if what == NAME_SYSTEM_MISC:
            data = []
            for ln in self._read_text(self.root / "stat").splitlines():
                if not ln.startswith("btime "):
                    continue
                try:
                    raw = _pack_value(KSTAT_DATA_UINT32, ln.split()[1])
                except (IndexError, ValueError, struct.error):
                    logger.debug("unparseable btime line %r", ln)
                    continue
                data.append(KstatNamed(STAT_BOOT_TIME, KSTAT_DATA_UINT32, raw))
            try:
                nproc = sum(1 for p in self.root.iterdir() if p.name.isdigit())
            except OSError as exc:
                raise KstatError(f"cannot list {self.root}: {exc}") from exc
            data.append(KstatNamed(STAT_NPROC, KSTAT_DATA_UINT32, _pack_value(KSTAT_DATA_UINT32, str(nproc))))
            data.append(KstatNamed(STAT_NCPUS, KSTAT_DATA_UINT32,
                                   _pack_value(KSTAT_DATA_UINT32, str(len(self._cpus())))))
            return data

        if what == MODULE_CPU_INFO:
            for c in self._cpuinfo():
                if c.get("processor") != str(entry.instance):
                    continue
                try:
                    mhz = int(float(c["cpu MHz"]))
                except (KeyError, ValueError):
                    return []
                return [KstatNamed(STAT_CLOCK_MHZ, KSTAT_DATA_INT64,
                                   _pack_value(KSTAT_DATA_INT64, str(mhz)))]
            return []

        raise KstatError(f"unknown synthetic kstat {what}")


# ----------------------------
# Factory and convenience queries
# ----------------------------

def open_source(kind: str = "auto", proc_root: str = "/proc") -> Optional[KstatReader]:
    """Open a statistics reader. Returns None for kind 'none'."""
    kind = (kind or "auto").lower()
    if kind == "none":
        return None
    if kind == "libkstat":
        return LibKstat()
    if kind == "proc":
        return ProcKstat(proc_root)
    if kind != "auto":
        raise KstatError(f"unknown statistics source {kind!r}")

    if ctypes.util.find_library("kstat"):
        try:
            return LibKstat()
        except KstatError as exc:
            logger.info("libkstat unusable, trying procfs: %s", exc)
    try:
        return ProcKstat(proc_root)
    except KstatError as exc:
        raise KstatError(f"no statistics source available: {exc}") from exc


def cpu_mhz(k: KstatReader) -> int:
    k.lookup(MODULE_CPU_INFO)
    while k.step():
        if k.module != MODULE_CPU_INFO:
            continue
        mhz = k.data_long(STAT_CLOCK_MHZ)
        if mhz is not None:
            return mhz
    raise KstatError("cpu speed kstat not found")


def boot_time(k: KstatReader) -> int:
    k.lookup(MODULE_UNIX, NAME_SYSTEM_MISC)
    while k.step():
        if k.module != MODULE_UNIX or k.name != NAME_SYSTEM_MISC:
            continue
        t = k.data_u32(STAT_BOOT_TIME)
        if t is not None:
            return t
    raise KstatError("boot time kstat not found")


def nproc(k: KstatReader) -> int:
    k.lookup(MODULE_UNIX, NAME_SYSTEM_MISC)
    while k.step():
        if k.module != MODULE_UNIX or k.name != NAME_SYSTEM_MISC:
            continue
        n = k.data_u32(STAT_NPROC)
        if n is not None:
            return n
    raise KstatError("process count kstat not found")


class Pages(NamedTuple):
    freemem: int
    physmem: int


def pages(k: KstatReader) -> Pages:
    k.lookup(MODULE_UNIX, NAME_SYSTEM_PAGES)
    while k.step():
        if k.module != MODULE_UNIX or k.name != NAME_SYSTEM_PAGES:
            continue
        freemem = k.data_ulong(STAT_FREEMEM)
        physmem = k.data_ulong(STAT_PHYSMEM)
        if freemem is not None and physmem is not None:
            return Pages(freemem, physmem)
    raise KstatError("system pages kstat not available")
