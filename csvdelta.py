#!/usr/bin/env python3
import csv, sys, io, re, gzip, time, argparse
from typing import Dict, Iterable, List, NamedTuple, Optional, Tuple
from collections import deque

import psutil
import zstandard as zstd
from hdrh.histogram import HdrHistogram

MB = 1024 * 1024
GB = 1024 * MB

OOB_ERROR = "error"
OOB_DROP = "drop"
OOB_SATURATE = "saturate"
OOB_RULES = (OOB_ERROR, OOB_DROP, OOB_SATURATE)

NEG_OOB = "oob"    # negative deltas go through the OOB rule like any other value
NEG_SKIP = "skip"  # negative deltas are discarded before the OOB rule
NEGATIVE_MODES = (NEG_OOB, NEG_SKIP)

DUP_OVERWRITE = "overwrite"
DUP_QUEUE = "queue"
DUP_ERROR = "error"
DUPLICATE_MODES = (DUP_OVERWRITE, DUP_QUEUE, DUP_ERROR)

ENGINE_PYTHON = "python"
ENGINE_POLARS = "polars"

MODE_SINGLE = "SINGLE"
MODE_DUAL = "DUAL"

COMPRESSED_SUFFIXES = (".gz", ".zst")

INT_CELL = re.compile(r"[+-]?[0-9]+")
I64_MIN, I64_MAX = -2**63, 2**63 - 1

def human(n: int) -> str:
    if n >= GB: return f"{n/GB:.1f} GB"
    if n >= MB: return f"{n/MB:.1f} MB"
    return f"{n} B"

# ---- Errors ----
class DeltaHistError(Exception):
    exit_code = 1

class ConfigurationError(DeltaHistError):
    exit_code = 2

class SourceIOError(DeltaHistError):
    pass

class ParseError(DeltaHistError):
    pass

class RangeError(DeltaHistError):
    pass

# ---- Configuration ----
class RunConfig(NamedTuple):
    primary_source: str
    primary_column: str
    secondary_column: str
    max_value: int = 30000
    sigfigs: int = 2
    secondary_source: Optional[str] = None
    join_column: Optional[str] = None
    oob_rule: str = OOB_ERROR
    negative: str = NEG_OOB
    duplicate_keys: str = DUP_OVERWRITE
    engine: str = ENGINE_PYTHON

def run_mode(cfg: RunConfig) -> str:
    return MODE_DUAL if cfg.secondary_source is not None else MODE_SINGLE

def validate_config(cfg: RunConfig) -> None:
    """Reject option combinations that can never run. Called before any input is opened."""
    if (cfg.secondary_source is None) != (cfg.join_column is None):
        if cfg.join_column is None:
            raise ConfigurationError("join column not supplied (--rhs-fname needs --join-column)")
        raise ConfigurationError("rhs file not supplied (--join-column needs --rhs-fname)")
    if cfg.oob_rule not in OOB_RULES:
        raise ConfigurationError(f"unknown oob rule {cfg.oob_rule!r}")
    if cfg.negative not in NEGATIVE_MODES:
        raise ConfigurationError(f"unknown negative handling {cfg.negative!r}")
    if cfg.duplicate_keys not in DUPLICATE_MODES:
        raise ConfigurationError(f"unknown duplicate key policy {cfg.duplicate_keys!r}")
    if cfg.engine not in (ENGINE_PYTHON, ENGINE_POLARS):
        raise ConfigurationError(f"unknown engine {cfg.engine!r}")
    if cfg.engine == ENGINE_POLARS:
        if run_mode(cfg) == MODE_DUAL:
            raise ConfigurationError("polars engine supports single-file runs only")
        if cfg.primary_source == "-" or cfg.primary_source.endswith(COMPRESSED_SUFFIXES):
            raise ConfigurationError("polars engine reads plain CSV files only")

# ---- Row source ----
class Row(NamedTuple):
    primary: Optional[int]
    secondary: Optional[int] = None
    join_key: Optional[str] = None

def open_text(path: str):
    """Open a CSV location for text reading, decompressing by suffix. '-' is stdin."""
    if path == "-":
        return io.TextIOWrapper(sys.stdin.buffer, encoding="utf-8-sig", newline="")
    if path.endswith(".gz"):
        return gzip.open(path, "rt", newline="", encoding="utf-8-sig")
    if path.endswith(".zst"):
        raw = open(path, "rb")
        return io.TextIOWrapper(zstd.ZstdDecompressor().stream_reader(raw), encoding="utf-8-sig", newline="")
    return open(path, newline="", encoding="utf-8-sig", buffering=1024*1024)  # larger buffer

def column_index(headers: List[str], name: str, path: str) -> int:
    try:
        return headers.index(name)
    except ValueError:
        raise ParseError(f"{name} is not a valid column in {path}") from None

class CsvRowSource:
    """Rows of one CSV input, decoded by header name.

    Opening (``with CsvRowSource(...) as src``) reads the header and resolves
    every configured column, so a bad column name fails before any data row
    is read. Iteration is single-pass and yields :class:`Row` in file order.
    """
    def __init__(self, path: str, value_column: str, other_column: Optional[str] = None,
                 join_column: Optional[str] = None):
        self.path = path
        self.value_column = value_column
        self.other_column = other_column
        self.join_column = join_column
        self.rows_read = 0
        self._fh = None
        self._reader = None
        self._value_idx = 0
        self._other_idx: Optional[int] = None
        self._join_idx: Optional[int] = None

    def __enter__(self) -> "CsvRowSource":
        try:
            self._fh = open_text(self.path)
        except OSError as e:
            raise SourceIOError(f"cannot open {self.path}: {e}") from e
        try:
            self._reader = csv.reader(self._fh)
            headers = self._next_record()
            if headers is None:
                raise ParseError(f"{self.path} is empty (no header row)")
            self._value_idx = column_index(headers, self.value_column, self.path)
            if self.other_column is not None:
                self._other_idx = column_index(headers, self.other_column, self.path)
            if self.join_column is not None:
                self._join_idx = column_index(headers, self.join_column, self.path)
        except BaseException:
            self.close()
            raise
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def close(self) -> None:
        if self._fh is not None:
            if self.path == "-":
                self._fh.detach()  # leave the process's stdin open
            else:
                self._fh.close()
        self._fh = None

    def _next_record(self) -> Optional[List[str]]:
        try:
            return next(self._reader)
        except StopIteration:
            return None
        except csv.Error as e:
            raise ParseError(f"{self.path}:{self._reader.line_num}: malformed CSV: {e}") from e
        except UnicodeDecodeError as e:
            raise ParseError(f"{self.path}:{self._reader.line_num}: not UTF-8 text: {e}") from e
        except (OSError, EOFError, zstd.ZstdError) as e:
            raise SourceIOError(f"error reading {self.path}: {e}") from e

    def _int_cell(self, rec: List[str], idx: int, column: str) -> Optional[int]:
        # short rows and empty cells are missing observations, not errors
        if idx >= len(rec) or rec[idx] == "":
            return None
        cell = rec[idx]
        # ASCII digits only: int() would also take "1_000", " 5 " and non-ASCII digits
        value = int(cell) if len(cell) <= 20 and INT_CELL.fullmatch(cell) else None
        if value is None or not I64_MIN <= value <= I64_MAX:
            raise ParseError(
                f"{self.path}:{self._reader.line_num}: illegal value {cell!r} in column {column!r}"
            )
        return value

    def __iter__(self):
        if self._reader is None:
            raise RuntimeError(f"{self.path} is not open")
        while True:
            rec = self._next_record()
            if rec is None:
                return
            self.rows_read += 1
            primary = self._int_cell(rec, self._value_idx, self.value_column)
            secondary = None
            if self._other_idx is not None:
                secondary = self._int_cell(rec, self._other_idx, self.other_column)
            key = None
            if self._join_idx is not None and self._join_idx < len(rec) and rec[self._join_idx]:
                key = rec[self._join_idx]
            yield Row(primary, secondary, key)

# ---- Merge join ----
class MergeJoin:
    """Match left join keys against a right-hand Row stream that is not sorted by key.

    The right stream is consumed once, front to back, over the life of the
    join. Rows pulled while seeking one key are parked by their own key until
    a later ``take`` asks for them. Right rows without a key are skipped.
    """
    __slots__ = ("_rows", "_pending", "_size", "duplicate_keys", "peak_pending")

    def __init__(self, rows: Iterable[Row], duplicate_keys: str = DUP_OVERWRITE):
        self._rows = iter(rows)
        self._pending: Dict[str, deque] = {}
        self._size = 0
        self.duplicate_keys = duplicate_keys
        self.peak_pending = 0

    def __len__(self) -> int:
        return self._size

    def pending_keys(self) -> List[str]:
        return list(self._pending)

    def take(self, key: str) -> Optional[Row]:
        queued = self._pending.get(key)
        if queued:
            row = queued.popleft()
            if not queued:
                del self._pending[key]
            self._size -= 1
            return row
        for row in self._rows:
            if row.join_key is None:
                continue
            if row.join_key == key:
                return row
            self._park(row)
        return None

    def _park(self, row: Row) -> None:
        queued = self._pending.get(row.join_key)
        if queued is None:
            self._pending[row.join_key] = deque([row])
            self._size += 1
        elif self.duplicate_keys == DUP_QUEUE:
            queued.append(row)
            self._size += 1
        elif self.duplicate_keys == DUP_ERROR:
            raise ParseError(f"join key {row.join_key!r} repeats in the right file before it was matched")
        else:
            queued[0] = row  # last writer wins
        if self._size > self.peak_pending:
            self.peak_pending = self._size

# ---- OOB policy ----
def apply_oob(rule: str, v: int, max_value: int) -> Optional[int]:
    """Value to record for delta ``v`` under ``rule``, or None to drop it.

    In-range means ``0 <= v < max_value``. Outside that range ``drop`` discards,
    ``saturate`` clamps to ``[0, max_value]`` and ``error`` raises RangeError.
    """
    if 0 <= v < max_value:
        return v
    if rule == OOB_DROP:
        return None
    if rule == OOB_SATURATE:
        return 0 if v < 0 else max_value
    if rule == OOB_ERROR:
        raise RangeError(f"could not record {v}: outside [0, {max_value})")
    raise ConfigurationError(f"unknown oob rule {rule!r}")

# ---- Histogram ----
class DeltaHistogram:
    """HDR histogram over [0, max_value] with ``sigfigs`` significant digits."""
    def __init__(self, max_value: int, sigfigs: int):
        if max_value < 2:
            raise RangeError(f"histogram parameter error: max_value must be at least 2, got {max_value}")
        if not 1 <= sigfigs <= 5:
            raise RangeError(f"histogram parameter error: sigfigs must be between 1 and 5, got {sigfigs}")
        self.max_value = max_value
        self.sigfigs = sigfigs
        try:
            self._hist: Optional[HdrHistogram] = HdrHistogram(1, max_value, sigfigs)
        except ValueError as e:
            raise RangeError(f"histogram parameter error: {e}") from e

    def _live(self) -> HdrHistogram:
        if self._hist is None:
            raise RuntimeError("histogram was already serialized")
        return self._hist

    def record(self, v: int, count: int = 1) -> None:
        if not 0 <= v <= self.max_value or not self._live().record_value(v, count):
            raise RangeError(f"could not record {v}: outside [0, {self.max_value}]")

    def saturating_record(self, v: int, count: int = 1) -> None:
        self._live().record_value(min(max(v, 0), self.max_value), count)

    @property
    def total_count(self) -> int:
        return self._live().get_total_count()

    def min_value(self) -> int:
        return self._live().get_min_value()

    def max_recorded(self) -> int:
        return self._live().get_max_value()

    def value_at_percentile(self, pct: float) -> int:
        return self._live().get_value_at_percentile(pct)

    def serialize(self) -> str:
        """Compressed V2 encoding, base64. The histogram cannot be used afterwards."""
        hist = self._live()
        self._hist = None
        return hist.encode().decode("ascii")

def decode_histogram(text) -> HdrHistogram:
    if isinstance(text, bytes):
        text = text.decode("ascii")
    return HdrHistogram.decode(text.strip())

# ---- Run statistics / progress ----
class RunStats:
    __slots__ = ("lhs_rows", "rhs_rows", "pairs", "recorded", "clamped", "dropped", "missing",
                 "unmatched", "negative_skipped", "pending_left", "peak_pending", "peak_rss")
    def __init__(self):
        for name in self.__slots__:
            setattr(self, name, 0)
    def result(self) -> dict:
        return {name: getattr(self, name) for name in self.__slots__}

class Progress:
    """Periodic ``[progress]`` lines on stderr: rows/s over a 5s window, join backlog, RSS."""
    def __init__(self, every_rows: int = 0):
        self.every_rows = every_rows
        self.peak_rss = 0
        self._proc = psutil.Process()
        self._start = time.time()
        self._window = deque()  # (time, rows)
        self._last_report = 0

    def sample_rss(self) -> int:
        rss = self._proc.memory_info().rss
        if rss > self.peak_rss:
            self.peak_rss = rss
        return self.peak_rss

    def tick(self, rows: int, pending: int) -> None:
        if self.every_rows > 0 and rows > 0 and rows % self.every_rows == 0:
            self._window.append((time.time(), rows))
            self.report(rows, pending)

    def finish(self, rows: int, pending: int) -> None:
        if self.every_rows > 0 and rows != self._last_report:
            self._window.append((time.time(), rows))
            self.report(rows, pending)
        self.sample_rss()

    def report(self, rows: int, pending: int) -> None:
        now = time.time()
        while self._window and now - self._window[0][0] > 5:
            self._window.popleft()
        if len(self._window) >= 2:
            dt = self._window[-1][0] - self._window[0][0]
            dr = self._window[-1][1] - self._window[0][1]
            rps = dr / dt if dt > 0 else 0
        else:
            rps = rows / (now - self._start) if (now - self._start) > 0 else 0
        rss = self.sample_rss()
        print(f"[progress] {rows:,} rows | {rps:,.0f} rows/s | pending {pending:,} | rss {human(rss)}",
              file=sys.stderr)
        self._last_report = rows

# ---- Pipeline ----
def _fold(hist: DeltaHistogram, cfg: RunConfig, stats: RunStats,
          lhs: Optional[int], rhs: Optional[int]) -> None:
    if lhs is None or rhs is None:
        stats.missing += 1
        return
    _fold_delta(hist, cfg, stats, lhs - rhs)

def _fold_delta(hist: DeltaHistogram, cfg: RunConfig, stats: RunStats, v: int, count: int = 1) -> None:
    stats.pairs += count
    if v < 0 and cfg.negative == NEG_SKIP:
        stats.negative_skipped += count
        return
    value = apply_oob(cfg.oob_rule, v, cfg.max_value)
    if value is None:
        stats.dropped += count
        return
    if value != v:
        stats.clamped += count
        hist.saturating_record(v, count)
    else:
        hist.record(value, count)
    stats.recorded += count

def _run_single(cfg: RunConfig, hist: DeltaHistogram, stats: RunStats, progress: Progress) -> None:
    with CsvRowSource(cfg.primary_source, cfg.primary_column, cfg.secondary_column) as src:
        for row in src:
            progress.tick(src.rows_read, 0)
            _fold(hist, cfg, stats, row.primary, row.secondary)
        stats.lhs_rows = src.rows_read
        progress.finish(src.rows_read, 0)

def _run_dual(cfg: RunConfig, hist: DeltaHistogram, stats: RunStats, progress: Progress) -> None:
    with CsvRowSource(cfg.primary_source, cfg.primary_column, join_column=cfg.join_column) as left, \
         CsvRowSource(cfg.secondary_source, cfg.secondary_column, join_column=cfg.join_column) as right:
        join = MergeJoin(right, cfg.duplicate_keys)
        for row in left:
            progress.tick(left.rows_read, len(join))
            if row.join_key is None:
                stats.missing += 1
                continue
            match = join.take(row.join_key)
            if match is None:
                stats.unmatched += 1
                continue
            _fold(hist, cfg, stats, row.primary, match.primary)
        stats.lhs_rows = left.rows_read
        stats.rhs_rows = right.rows_read
        stats.pending_left = len(join)
        stats.peak_pending = join.peak_pending
        progress.finish(left.rows_read, len(join))

def _run_polars(cfg: RunConfig, hist: DeltaHistogram, stats: RunStats, progress: Progress) -> None:
    import polars as pl  # type: ignore
    lhs, rhs = cfg.primary_column, cfg.secondary_column
    try:
        names = pl.scan_csv(cfg.primary_source).collect_schema().names()
        for col in (lhs, rhs):
            if col not in names:
                raise ParseError(f"{col} is not a valid column in {cfg.primary_source}")
        # one row per distinct delta (null = a value was missing), so memory follows the spread of deltas
        lf = (
            pl.scan_csv(cfg.primary_source, schema_overrides={lhs: pl.Int64, rhs: pl.Int64})
            .select((pl.col(lhs) - pl.col(rhs)).alias("delta"))
            .group_by("delta")
            .agg(pl.len().alias("n"))
        )
        try:
            out = lf.collect(engine="streaming")
        except TypeError:
            out = lf.collect(streaming=True)
    except OSError as e:
        raise SourceIOError(f"cannot read {cfg.primary_source}: {e}") from e
    except pl.exceptions.PolarsError as e:
        raise ParseError(f"{cfg.primary_source}: {e}") from e
    rows = 0
    for delta, n in out.sort("delta", nulls_last=True).iter_rows():
        rows += n
        if delta is None:
            stats.missing += n
        else:
            _fold_delta(hist, cfg, stats, delta, n)
    stats.lhs_rows = rows
    progress.finish(rows, 0)

def build_histogram(cfg: RunConfig, progress: Optional[Progress] = None) -> Tuple[DeltaHistogram, RunStats]:
    """Run the whole pipeline for ``cfg``. Any DeltaHistError aborts the run."""
    validate_config(cfg)
    hist = DeltaHistogram(cfg.max_value, cfg.sigfigs)
    stats = RunStats()
    if progress is None:
        progress = Progress()
    if run_mode(cfg) == MODE_DUAL:
        _run_dual(cfg, hist, stats, progress)
    elif cfg.engine == ENGINE_POLARS:
        _run_polars(cfg, hist, stats, progress)
    else:
        _run_single(cfg, hist, stats, progress)
    stats.peak_rss = progress.peak_rss
    return hist, stats

def print_stats(stats: RunStats, mode: str) -> None:
    def pr(label: str, value: str):
        print(f"[stats] {label.ljust(24)}{value}", file=sys.stderr)
    r = stats.result()
    pr("Mode:", mode)
    pr("Left rows:", f"{r['lhs_rows']:,}")
    if mode == MODE_DUAL:
        pr("Right rows:", f"{r['rhs_rows']:,}")
        pr("Unmatched:", f"{r['unmatched']:,}")
        pr("Pending at end:", f"{r['pending_left']:,}")
        pr("Peak pending:", f"{r['peak_pending']:,}")
    pr("Pairs:", f"{r['pairs']:,}")
    pr("Missing values:", f"{r['missing']:,}")
    pr("Recorded:", f"{r['recorded']:,}")
    pr("Clamped:", f"{r['clamped']:,}")
    pr("Dropped:", f"{r['dropped']:,}")
    pr("Negative skipped:", f"{r['negative_skipped']:,}")
    pr("Peak RSS:", human(r['peak_rss']))

def main(argv=None):
    ap = argparse.ArgumentParser(description="HDR histogram of the difference between two integer CSV columns")
    ap.add_argument("--fname", required=True, help="CSV path ('.gz'/'.zst' decompressed, '-' for stdin)")
    ap.add_argument("--lhs-column", required=True, help="Column the difference is taken from")
    ap.add_argument("--rhs-column", required=True, help="Column subtracted (read from --rhs-fname when joining)")
    ap.add_argument("--max-value", type=int, default=30000, help="Largest representable value (default 30000)")
    ap.add_argument("--sigfigs", type=int, default=2,
                    help="Significant decimal digits kept, 1-5 (default 2); hdrh rejects 0")
    ap.add_argument("--rhs-fname", help="Second CSV joined to --fname on --join-column")
    ap.add_argument("--join-column", help="Key column present in both files")
    ap.add_argument("--oob", choices=OOB_RULES, default=OOB_ERROR,
                    help="Out-of-range deltas: fail the run, drop them, or clamp them (default error)")
    ap.add_argument("--negative", choices=NEGATIVE_MODES, default=NEG_OOB,
                    help="Negative deltas: apply the --oob rule, or skip them silently (default oob)")
    ap.add_argument("--duplicate-keys", choices=DUPLICATE_MODES, default=DUP_OVERWRITE,
                    help="Right-file key seen again while still unmatched: keep the newest, queue, or fail")
    ap.add_argument("--engine", choices=[ENGINE_PYTHON, ENGINE_POLARS], default=ENGINE_PYTHON,
                    help="Computation engine for single-file runs (default python)")
    ap.add_argument("--progress", action="store_true", help="Report rows/s, join backlog and RSS on stderr")
    ap.add_argument("--progress-every-rows", type=int, default=500_000,
                    help="Emit progress every N left rows when --progress is set (0=disable)")
    ap.add_argument("--stats", action="store_true", help="Print run counters to stderr after a successful run")
    args = ap.parse_args(argv)

    cfg = RunConfig(
        primary_source=args.fname,
        primary_column=args.lhs_column,
        secondary_column=args.rhs_column,
        max_value=args.max_value,
        sigfigs=args.sigfigs,
        secondary_source=args.rhs_fname,
        join_column=args.join_column,
        oob_rule=args.oob,
        negative=args.negative,
        duplicate_keys=args.duplicate_keys,
        engine=args.engine,
    )
    progress = Progress(args.progress_every_rows if args.progress else 0)
    try:
        hist, stats = build_histogram(cfg, progress)
        line = hist.serialize()
    except DeltaHistError as e:
        print(f"error: {e}", file=sys.stderr)
        sys.exit(e.exit_code)
    print(line)
    if args.stats:
        print_stats(stats, run_mode(cfg))

if __name__ == "__main__":
    main()
