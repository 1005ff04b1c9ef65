#!/usr/bin/env python3
"""
Git Contributor & File Statistics (v1.0.0)

Computes contributor and file-change statistics for a git repository:
- Parses `git log` output (commit records, numstat blocks, name-only paths)
- Aggregates per-author and per-file metrics on a worker pool
- Deduplicates commits that appear more than once in the log stream
- Ranks results deterministically and renders terminal bar charts
- Interactive drill-down into a single contributor

Usage:
    gitstats contributors /path/to/repo --min-commits 5
    gitstats files /path/to/repo --ignore vendor/ --ignore .lock
"""

import json
import os
import queue
import subprocess
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import click
import yaml
from colorama import Fore, Style, just_fix_windows_console
from tqdm import tqdm

just_fix_windows_console()

# Version information
VERSION = "1.0.0"

FIELD_DELIMITER = "|"
DEFAULT_CHUNK_SIZE = 500
DEFAULT_BAR_WIDTH = 50
DEFAULT_TOP_FILES = 25
BAR_CHAR = "█"
DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"

CONFIG_FILE_NAMES = [
    ".gitstats.yaml",
    ".gitstats.yml",
    ".gitstats.json",
]


class GitCommandError(RuntimeError):
    """Raised when the git log export cannot be produced."""


# ============================================================================
# DATA STRUCTURES & MODELS
# ============================================================================


@dataclass(frozen=True)
class CommitRecord:
    """One commit header from the log stream."""

    hash: str
    author: str
    timestamp: datetime
    subject: str = ""


@dataclass(frozen=True)
class StatRecord:
    """Lines added/removed for one file, owned by the preceding header."""

    lines_added: int
    lines_removed: int
    path: str = ""


@dataclass(frozen=True)
class FilePathRecord:
    path: str
    sequence: int = 0


@dataclass(frozen=True)
class CommitUnit:
    """
    A commit header combined with the numstat lines that followed it.

    Positional association is resolved when the unit is built, so units can
    be dispatched to workers in any order.
    """

    sequence: int
    commit: CommitRecord
    stats: Tuple[StatRecord, ...] = ()

    @property
    def lines_added(self) -> int:
        return sum(s.lines_added for s in self.stats)

    @property
    def lines_removed(self) -> int:
        return sum(s.lines_removed for s in self.stats)


@dataclass(frozen=True)
class StatBlock:
    """Raw header line and its stat lines, before parsing."""

    sequence: int
    header: str
    stat_lines: Tuple[str, ...] = ()


@dataclass
class Contributor:
    """Accumulated statistics for a single author."""

    name: str
    commits: int
    first_commit: datetime
    latest_commit: datetime
    lines_added: int = 0
    lines_removed: int = 0
    first_seen: int = 0

    @property
    def net_lines(self) -> int:
        """Net lines (added - removed)."""
        return self.lines_added - self.lines_removed

    @property
    def lines_changed(self) -> int:
        """Total lines changed (added + removed)."""
        return self.lines_added + self.lines_removed


@dataclass
class FileChange:
    """Accumulated change count for a single path."""

    path: str
    change_count: int = 0
    first_seen: int = 0


@dataclass
class ParseBatch:
    """Records parsed by one worker from one chunk, plus its diagnostics."""

    records: List[Any] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    skipped: int = 0


@dataclass
class AggregationMetrics:
    """Counters collected while aggregating one log stream"""

    lines_read: int = 0
    records_parsed: int = 0
    lines_skipped: int = 0
    duplicates_skipped: int = 0
    chunks_processed: int = 0
    workers: int = 0
    total_time: float = 0.0

    def to_dict(self) -> Dict:
        return {
            "lines_read": self.lines_read,
            "records_parsed": self.records_parsed,
            "lines_skipped": self.lines_skipped,
            "duplicates_skipped": self.duplicates_skipped,
            "chunks_processed": self.chunks_processed,
            "workers": self.workers,
            "total_time_seconds": round(self.total_time, 3),
        }


# ============================================================================
# CONFIGURATION FILE SUPPORT
# ============================================================================


def load_config_file(config_path: str) -> Dict[str, Any]:
    """
    Load configuration from YAML or JSON file.
    Supports .gitstats.yaml, .gitstats.yml, .gitstats.json
    """
    if not os.path.exists(config_path):
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    file_ext = os.path.splitext(config_path)[1].lower()

    with open(config_path, "r", encoding="utf-8") as f:
        if file_ext in [".yaml", ".yml"]:
            data = yaml.safe_load(f)
        elif file_ext == ".json":
            data = json.load(f)
        else:
            raise ValueError(f"Unsupported config file format: {file_ext}")

    return data or {}


def find_config_file(repo_path: str) -> Optional[str]:
    """
    Auto-discover configuration file in repository or current directory.
    """
    search_paths = [
        repo_path,
        os.getcwd(),
    ]

    for search_dir in search_paths:
        for config_name in CONFIG_FILE_NAMES:
            config_path = os.path.join(search_dir, config_name)
            if os.path.exists(config_path):
                return config_path

    return None


class ConfigResolver:
    """
    Resolve configuration with precedence: CLI > Config File > Defaults
    """

    def __init__(
        self,
        cli_args: Dict[str, Any],
        config_path: Optional[str],
        repo_path: str,
    ):
        self.cli = {k: v for k, v in cli_args.items() if v is not None}
        self.config = {}
        self.config_source = None

        if config_path:
            self.config = load_config_file(config_path)
            self.config_source = config_path
        else:
            auto_path = find_config_file(repo_path)
            if auto_path:
                try:
                    self.config = load_config_file(auto_path)
                    self.config_source = auto_path
                except (OSError, ValueError, yaml.YAMLError) as e:
                    print(
                        f"Warning: Found config file but failed to load: {e}",
                        file=sys.stderr,
                    )

        if not isinstance(self.config, dict):
            raise ValueError(
                f"Configuration must be a mapping, got {type(self.config).__name__}"
            )

        # Normalize config keys (kebab-case to snake_case)
        self.config = {k.replace("-", "_"): v for k, v in self.config.items()}

    def get(self, key: str, default: Any = None) -> Any:
        """Resolve value based on precedence"""
        if key in self.cli:
            return self.cli[key]
        if key in self.config:
            return self.config[key]
        return default


# ============================================================================
# PROGRESS REPORTING
# ============================================================================


class ProgressReporter:
    """
    Console reporting for the CLI.
    - Color-coded output (colorama)
    - Progress bars (tqdm), verbose mode only
    - Stage banners kept out of the way of the charts unless verbose
    """

    def __init__(
        self, quiet: bool = False, verbose: bool = False, use_colors: bool = True
    ):
        self.quiet = quiet
        self.verbose = verbose and not quiet
        self.use_colors = use_colors
        self.start_time = time.time()
        self.stage_times = {}

    def _colorize(self, text: str, color: str) -> str:
        """Apply color if enabled"""
        if self.use_colors:
            return f"{color}{text}{Style.RESET_ALL}"
        return text

    def stage_start(self, stage_name: str, message: str = ""):
        """Mark the start of a processing stage"""
        self.stage_times[stage_name] = time.time()
        if not self.verbose:
            return

        separator = self._colorize("=" * 70, Fore.CYAN)
        stage_text = self._colorize(f"🔄 {stage_name}", Fore.BLUE + Style.BRIGHT)

        print(f"\n{separator}")
        print(stage_text)
        if message:
            print(f"   {message}")
        print(separator)

    def stage_complete(self, stage_name: str, stats: Dict = None):
        """Mark completion of a processing stage"""
        if not self.verbose:
            return
        elapsed = time.time() - self.stage_times.get(stage_name, time.time())

        complete_text = self._colorize(
            f"✅ {stage_name} complete ({elapsed:.2f}s)", Fore.GREEN + Style.BRIGHT
        )
        print(complete_text)

        if stats:
            for key, value in stats.items():
                print(f"   {key}: {value}")

    def create_progress_bar(
        self, total: int, desc: str = "Processing", unit: str = " chunks"
    ) -> Optional[tqdm]:
        """Create a progress bar with ETA"""
        if not self.verbose:
            return None

        return tqdm(
            total=total,
            desc=self._colorize(desc, Fore.CYAN),
            unit=unit,
            ncols=100,
            bar_format="{l_bar}{bar}| {n_fmt}/{total_fmt} [{elapsed}<{remaining}, {rate_fmt}]",
        )

    def info(self, message: str):
        """Display informational message"""
        if not self.quiet:
            info_text = self._colorize("ℹ️  ", Fore.BLUE)
            print(f"{info_text}{message}")

    def warning(self, message: str):
        """Display warning message"""
        if not self.quiet:
            warning_text = self._colorize("⚠️  ", Fore.YELLOW + Style.BRIGHT)
            print(f"{warning_text}{message}")

    def error(self, message: str):
        """Display error message (always shown)"""
        error_text = self._colorize(f"❌ ERROR: {message}", Fore.RED + Style.BRIGHT)
        print(error_text, file=sys.stderr)

    def summary(self, stats: Dict[str, Any]):
        """Display final summary (verbose only)"""
        if not self.verbose:
            return
        elapsed = time.time() - self.start_time

        separator = self._colorize("=" * 70, Fore.CYAN)
        header = self._colorize("📊 ANALYSIS SUMMARY", Fore.MAGENTA + Style.BRIGHT)

        print(f"\n{separator}")
        print(header)
        print(separator)
        for key, value in stats.items():
            print(f"   {key}: {value}")

        time_text = self._colorize(f"⏱️  Total time: {elapsed:.2f}s", Fore.YELLOW)
        print(f"\n{time_text}")
        print(f"{separator}\n")


# ============================================================================
# LOG SOURCE
# ============================================================================


def split_log_output(text: str) -> List[str]:
    """Split captured git stdout into lines, dropping the final trailing blank line."""
    lines = [line.rstrip("\r") for line in text.split("\n")]
    if lines and lines[-1] == "":
        lines.pop()
    return lines


class GitLogSource:
    """
    Runs `git log` against a repository and captures its output as lines.

    Three output shapes are produced:
    - commit records: one `hash|author|epoch|subject` line per commit
    - numstat stream: `hash|author|epoch` headers followed by numstat lines
    - name-only stream: one touched path per line, commits separated by blanks
    """

    COMMIT_FORMAT = "%H|%an|%at|%s"
    NUMSTAT_FORMAT = "%H|%an|%at"

    def __init__(
        self,
        repo_path: str,
        timeout: Optional[float] = None,
        git_binary: str = "git",
    ):
        self.repo_path = os.path.abspath(repo_path)
        self.timeout = timeout
        self.git_binary = git_binary

    def _run(self, args: List[str]) -> List[str]:
        if not os.path.isdir(self.repo_path):
            raise GitCommandError(f"Repository path not found: {self.repo_path}")

        cmd = [self.git_binary, "-C", self.repo_path] + args
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                check=True,
                timeout=self.timeout,
            )
        except FileNotFoundError as e:
            raise GitCommandError(f"git executable not found: {self.git_binary}") from e
        except subprocess.TimeoutExpired as e:
            raise GitCommandError(
                f"git log timed out after {self.timeout}s: {self.repo_path}"
            ) from e
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or "").strip()
            raise GitCommandError(
                f"error accessing git repository {self.repo_path}: {stderr or e}"
            ) from e

        return split_log_output(result.stdout)

    def commit_log(self) -> List[str]:
        """One pipe-delimited record per commit."""
        return self._run(["log", f"--pretty=format:{self.COMMIT_FORMAT}"])

    def numstat_log(self) -> List[str]:
        """Header lines interleaved with `added<TAB>removed<TAB>path` lines."""
        return self._run(["log", f"--format={self.NUMSTAT_FORMAT}", "--numstat"])

    def name_only_log(self) -> List[str]:
        """One path per touched file per commit."""
        return self._run(["log", "--name-only", "--pretty=format:"])


# ============================================================================
# RECORD PARSER
# ============================================================================


class ParseState(Enum):
    AWAITING_HEADER = "awaiting_header"
    AWAITING_STATS = "awaiting_stats"


def epoch_to_datetime(value: str) -> datetime:
    """Convert integer epoch seconds to an aware UTC datetime."""
    return datetime.fromtimestamp(int(value.strip()), timezone.utc)


def parse_commit_line(line: str) -> Optional[CommitRecord]:
    """
    Parse a `hash|author|epoch|subject` line.

    Returns None for lines with too few fields or a non-numeric timestamp.
    """
    parts = line.split(FIELD_DELIMITER, 3)
    if len(parts) != 4:
        return None

    commit_hash, author, epoch, subject = parts
    try:
        timestamp = epoch_to_datetime(epoch)
    except (ValueError, OverflowError, OSError):
        return None

    return CommitRecord(
        hash=commit_hash.strip(), author=author, timestamp=timestamp, subject=subject
    )


def parse_header_line(line: str) -> Optional[CommitRecord]:
    """
    Parse a numstat-stream header.

    Accepts `author|epoch` as well as `hash|author|epoch[|subject]`.
    """
    parts = line.split(FIELD_DELIMITER, 3)
    if len(parts) < 2:
        return None
    if len(parts) == 2:
        parts = [""] + parts
    commit_hash, author, epoch = parts[:3]
    subject = parts[3] if len(parts) == 4 else ""

    try:
        timestamp = epoch_to_datetime(epoch)
    except (ValueError, OverflowError, OSError):
        return None

    return CommitRecord(
        hash=commit_hash.strip(), author=author, timestamp=timestamp, subject=subject
    )


def _count(token: str) -> int:
    # Binary files are reported as "-"
    try:
        return max(int(token), 0)
    except ValueError:
        return 0


def parse_stat_line(line: str) -> Optional[StatRecord]:
    """
    Parse a numstat line: "<added>\\t<removed>\\t<path>".

    Git separates the fields with tabs, so paths may contain spaces; lines
    without tabs are split on whitespace. Exactly three fields are required.
    Non-numeric counts degrade to zero.
    """
    parts = line.split("\t") if "\t" in line else line.split()
    if len(parts) != 3:
        return None

    added, removed, path = parts
    return StatRecord(
        lines_added=_count(added), lines_removed=_count(removed), path=path.strip()
    )


def parse_path_line(line: str, sequence: int = 0) -> Optional[FilePathRecord]:
    path = line.strip()
    if not path:
        return None
    return FilePathRecord(path=path, sequence=sequence)


def split_stat_blocks(lines: Iterable[str]) -> Tuple[List[StatBlock], List[str]]:
    """
    Group a numstat stream into header + stat-line blocks.

    Runs in stream order, so each stat line stays attached to the header
    that preceded it. Returns the blocks and diagnostics for orphan lines.
    """
    blocks = []
    errors = []
    state = ParseState.AWAITING_HEADER
    header = None
    stat_lines = []

    def close_block():
        if header is not None:
            blocks.append(StatBlock(len(blocks), header, tuple(stat_lines)))

    for lineno, line in enumerate(lines, 1):
        if not line.strip():
            continue

        if FIELD_DELIMITER in line:
            close_block()
            header = line
            stat_lines = []
            state = ParseState.AWAITING_STATS
        elif state is ParseState.AWAITING_STATS:
            stat_lines.append(line)
        else:
            errors.append(f"line {lineno}: stat line without a commit header: {line[:50]}")

    close_block()
    return blocks, errors


def parse_stat_block(block: StatBlock) -> Tuple[Optional[CommitUnit], List[str]]:
    """Turn one raw block into a CommitUnit plus diagnostics."""
    commit = parse_header_line(block.header)
    if commit is None:
        return None, [f"block {block.sequence}: malformed commit header: {block.header[:50]}"]

    stats = []
    errors = []
    for line in block.stat_lines:
        stat = parse_stat_line(line)
        if stat is None:
            errors.append(f"block {block.sequence}: malformed stat line: {line[:50]}")
            continue
        stats.append(stat)

    return CommitUnit(sequence=block.sequence, commit=commit, stats=tuple(stats)), errors


def chunk_iterator(items: Sequence, chunk_size: int = DEFAULT_CHUNK_SIZE):
    """Split a sequence into consecutive chunks."""
    for i in range(0, len(items), chunk_size):
        yield items[i : i + chunk_size]


# ============================================================================
# AGGREGATE TABLES
# ============================================================================


class ContributorTable:
    """
    Author key -> Contributor, plus the set of already-counted hashes.

    All mutation happens under one lock; `record` may be called from any
    thread.
    """

    def __init__(self, case_fold: bool = True):
        self.case_fold = case_fold
        self.contributors: Dict[str, Contributor] = {}
        self.counted_hashes = set()
        self.duplicates_skipped = 0
        self._lock = threading.Lock()

    def key_for(self, author: str) -> str:
        return author.casefold() if self.case_fold else author

    def record(self, unit: CommitUnit) -> bool:
        """
        Fold one commit unit into the table.

        Returns False when the commit hash was already counted; such a unit
        only refreshes discovery order.
        """
        commit = unit.commit
        key = self.key_for(commit.author)

        with self._lock:
            contributor = self.contributors.get(key)

            if commit.hash and commit.hash in self.counted_hashes:
                self.duplicates_skipped += 1
                if contributor is not None and unit.sequence < contributor.first_seen:
                    contributor.first_seen = unit.sequence
                    contributor.name = commit.author
                return False
            if commit.hash:
                self.counted_hashes.add(commit.hash)

            if contributor is None:
                self.contributors[key] = Contributor(
                    name=commit.author,
                    commits=1,
                    first_commit=commit.timestamp,
                    latest_commit=commit.timestamp,
                    lines_added=unit.lines_added,
                    lines_removed=unit.lines_removed,
                    first_seen=unit.sequence,
                )
                return True

            contributor.commits += 1
            contributor.lines_added += unit.lines_added
            contributor.lines_removed += unit.lines_removed
            if commit.timestamp < contributor.first_commit:
                contributor.first_commit = commit.timestamp
            if commit.timestamp > contributor.latest_commit:
                contributor.latest_commit = commit.timestamp
            if unit.sequence < contributor.first_seen:
                contributor.first_seen = unit.sequence
                contributor.name = commit.author
            return True

    def values(self) -> List[Contributor]:
        with self._lock:
            return list(self.contributors.values())

    def get(self, author: str) -> Optional[Contributor]:
        with self._lock:
            return self.contributors.get(self.key_for(author))

    def __len__(self) -> int:
        with self._lock:
            return len(self.contributors)


class FileChangeTable:
    """Path -> FileChange occurrence counts."""

    def __init__(self):
        self.files: Dict[str, FileChange] = {}
        self._lock = threading.Lock()

    def record(self, record: FilePathRecord):
        with self._lock:
            change = self.files.get(record.path)
            if change is None:
                self.files[record.path] = FileChange(
                    path=record.path, change_count=1, first_seen=record.sequence
                )
                return
            change.change_count += 1
            change.first_seen = min(change.first_seen, record.sequence)

    def values(self) -> List[FileChange]:
        with self._lock:
            return list(self.files.values())

    def get(self, path: str) -> Optional[FileChange]:
        with self._lock:
            return self.files.get(path)

    def __len__(self) -> int:
        with self._lock:
            return len(self.files)


def should_ignore(path: str, ignore_substrings: Sequence[str]) -> bool:
    return any(substr in path for substr in ignore_substrings if substr)


# ============================================================================
# CONCURRENT AGGREGATOR
# ============================================================================

_DONE = object()


class ConcurrentAggregator:
    """
    Fan-out/reduce over a captured log stream.

    Chunks of input are parsed on a thread pool; every parsed batch goes
    through a bounded queue to a single reducer thread, which is the only
    writer of the aggregate tables. Numstat headers and their stat lines
    are grouped in stream order before anything reaches the pool.
    """

    def __init__(
        self,
        workers: Optional[int] = None,
        case_fold: bool = True,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        reporter: Optional[ProgressReporter] = None,
    ):
        if workers is None:
            workers = os.cpu_count() or 4
        if workers < 1:
            raise ValueError(f"workers must be at least 1, got {workers}")
        if chunk_size < 1:
            raise ValueError(f"chunk_size must be at least 1, got {chunk_size}")

        self.workers = workers
        self.case_fold = case_fold
        self.chunk_size = chunk_size
        self.reporter = reporter or ProgressReporter(quiet=True)
        self.errors: List[str] = []
        self.metrics = AggregationMetrics(workers=workers)

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def contributors_from_commit_log(self, lines: Sequence[str]) -> ContributorTable:
        """Aggregate `hash|author|epoch|subject` lines."""
        self.metrics.lines_read += len(lines)
        indexed = list(enumerate(lines))
        table = ContributorTable(case_fold=self.case_fold)
        self._run(indexed, self._parse_commit_chunk, table.record, "Parsing commits")
        self.metrics.duplicates_skipped += table.duplicates_skipped
        return table

    def contributors_from_numstat_log(self, lines: Sequence[str]) -> ContributorTable:
        """Aggregate a numstat stream (headers interleaved with stat lines)."""
        self.metrics.lines_read += len(lines)
        blocks, errors = split_stat_blocks(lines)
        self.errors.extend(errors)
        self.metrics.lines_skipped += len(errors)

        table = ContributorTable(case_fold=self.case_fold)
        self._run(blocks, self._parse_block_chunk, table.record, "Parsing commits")
        self.metrics.duplicates_skipped += table.duplicates_skipped
        return table

    def reduce_contributors(self, units: Iterable[CommitUnit]) -> ContributorTable:
        """Aggregate already-resolved commit units, in whatever order they come."""
        table = ContributorTable(case_fold=self.case_fold)
        self._run(list(units), self._pass_through_chunk, table.record, "Reducing commits")
        self.metrics.duplicates_skipped += table.duplicates_skipped
        return table

    def files_from_name_only_log(
        self, lines: Sequence[str], ignore: Sequence[str] = ()
    ) -> FileChangeTable:
        """Count path occurrences, dropping paths containing any ignore substring."""
        self.metrics.lines_read += len(lines)
        ignore = tuple(ignore)
        indexed = list(enumerate(lines))
        table = FileChangeTable()

        def parse_chunk(chunk):
            batch = ParseBatch()
            for sequence, line in chunk:
                record = parse_path_line(line, sequence)
                if record is None or should_ignore(record.path, ignore):
                    continue
                batch.records.append(record)
            return batch

        self._run(indexed, parse_chunk, table.record, "Counting files")
        return table

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    @staticmethod
    def _parse_commit_chunk(chunk) -> ParseBatch:
        batch = ParseBatch()
        for sequence, line in chunk:
            if not line.strip():
                continue
            record = parse_commit_line(line)
            if record is None:
                batch.skipped += 1
                # Short lines are dropped quietly; a bad timestamp is worth a note
                if line.count(FIELD_DELIMITER) >= 3:
                    batch.errors.append(
                        f"line {sequence + 1}: invalid timestamp in commit record: {line[:50]}"
                    )
                continue
            batch.records.append(CommitUnit(sequence=sequence, commit=record))
        return batch

    @staticmethod
    def _parse_block_chunk(chunk) -> ParseBatch:
        batch = ParseBatch()
        for block in chunk:
            unit, errors = parse_stat_block(block)
            batch.errors.extend(errors)
            batch.skipped += len(errors)
            if unit is not None:
                batch.records.append(unit)
        return batch

    @staticmethod
    def _pass_through_chunk(chunk) -> ParseBatch:
        return ParseBatch(records=list(chunk))

    # ------------------------------------------------------------------
    # Fan-out / reduce
    # ------------------------------------------------------------------

    def _run(
        self,
        items: Sequence,
        work: Callable[[Sequence], ParseBatch],
        fold: Callable[[Any], Any],
        desc: str,
    ):
        start = time.time()
        chunks = list(chunk_iterator(items, self.chunk_size))
        results = queue.Queue(maxsize=self.workers * 2)
        reducer_errors = []
        # Chunk index -> diagnostics; merged in stream order once the run ends
        chunk_errors = {}
        progress_bar = self.reporter.create_progress_bar(total=len(chunks), desc=desc)

        def produce(index, chunk):
            results.put((index, work(chunk)))

        def reduce():
            while True:
                item = results.get()
                if item is _DONE:
                    return
                index, batch = item
                if reducer_errors:
                    # Keep draining so producers never block on a dead reducer
                    continue
                try:
                    for record in batch.records:
                        fold(record)
                    chunk_errors[index] = batch.errors
                    self.metrics.records_parsed += len(batch.records)
                    self.metrics.lines_skipped += batch.skipped
                    self.metrics.chunks_processed += 1
                    if progress_bar:
                        progress_bar.update(1)
                except Exception as e:
                    reducer_errors.append(e)

        reducer = threading.Thread(target=reduce, name="gitstats-reducer", daemon=True)
        reducer.start()

        worker_error = None
        try:
            with ThreadPoolExecutor(max_workers=self.workers) as executor:
                futures = [
                    executor.submit(produce, index, chunk)
                    for index, chunk in enumerate(chunks)
                ]
                for future in as_completed(futures):
                    exc = future.exception()
                    if exc is not None and worker_error is None:
                        worker_error = exc
        finally:
            results.put(_DONE)
            reducer.join()
            if progress_bar:
                progress_bar.close()
            self.metrics.total_time += time.time() - start

        for index in sorted(chunk_errors):
            self.errors.extend(chunk_errors[index])

        if worker_error is not None:
            raise worker_error
        if reducer_errors:
            raise reducer_errors[0]


# ============================================================================
# RESULT RANKER
# ============================================================================


@dataclass
class ChartRow:
    index: int
    label: str
    metric: int
    entity: Any


@dataclass
class ChartData:
    """
    Ranked rows ready for a bar chart.

    `total_metric` covers every ranked entity, including those dropped by
    the threshold filter or the top-N limit, so percentages stay relative
    to the whole history.
    """

    rows: List[ChartRow]
    max_metric: int
    max_label_length: int
    total_metric: int

    def bar_length(self, metric: int, width: int = DEFAULT_BAR_WIDTH) -> int:
        if self.max_metric <= 0:
            return 0
        # Round half up
        return int(metric * width / self.max_metric + 0.5)

    def percentage(self, metric: int) -> float:
        if self.total_metric <= 0:
            return 0.0
        return metric / self.total_metric * 100

    def select(self, index: int) -> Optional[Any]:
        """1-based lookup; None when out of range."""
        if 1 <= index <= len(self.rows):
            return self.rows[index - 1].entity
        return None

    def __len__(self) -> int:
        return len(self.rows)


def rank(entities: Iterable[Any], metric: str) -> List[Any]:
    """
    Order entities by `metric` descending.

    Ties keep stream discovery order (`first_seen`), which does not depend
    on how work was scheduled.
    """
    return sorted(entities, key=lambda e: (-getattr(e, metric), e.first_seen))


def build_chart(
    ranked: Sequence[Any],
    metric: str,
    label: str,
    min_value: int = 0,
    limit: Optional[int] = None,
) -> ChartData:
    """Apply the threshold filter and top-N limit to a ranked sequence."""
    total = sum(getattr(e, metric) for e in ranked)
    kept = [e for e in ranked if getattr(e, metric) >= min_value]
    if limit is not None:
        kept = kept[:limit]

    rows = [
        ChartRow(index=i, label=getattr(e, label), metric=getattr(e, metric), entity=e)
        for i, e in enumerate(kept, 1)
    ]
    return ChartData(
        rows=rows,
        max_metric=max((r.metric for r in rows), default=0),
        max_label_length=max((len(r.label) for r in rows), default=0),
        total_metric=total,
    )


# ============================================================================
# CHART RENDERING & INTERACTIVE PROMPT
# ============================================================================


class BarChartRenderer:
    """Draws proportional bar charts with a cycling color palette."""

    PALETTE = [
        Fore.RED,
        Fore.GREEN,
        Fore.YELLOW,
        Fore.BLUE,
        Fore.MAGENTA,
        Fore.CYAN,
        Fore.LIGHTRED_EX,
        Fore.LIGHTGREEN_EX,
        Fore.LIGHTYELLOW_EX,
        Fore.LIGHTBLUE_EX,
    ]

    def __init__(self, use_colors: bool = True, width: int = DEFAULT_BAR_WIDTH):
        self.use_colors = use_colors
        self.width = width

    def bar(self, length: int, position: int) -> str:
        text = BAR_CHAR * length
        if not self.use_colors:
            return text
        color = self.PALETTE[position % len(self.PALETTE)]
        return f"{color}{text}{Style.RESET_ALL}"

    def render_contributors(self, chart: ChartData):
        for i, row in enumerate(chart.rows):
            bar = self.bar(chart.bar_length(row.metric, self.width), i)
            click.echo(
                f"{row.index:2d}. {row.label.ljust(chart.max_label_length)} | {bar} "
                f"({row.metric} commits, {chart.percentage(row.metric):.2f}%)"
            )

    def render_files(self, chart: ChartData, top: int):
        click.echo(f"File Change Frequency Chart (Top {top}):")
        click.echo("-------------------------------------")
        for i, row in enumerate(chart.rows):
            bar = self.bar(chart.bar_length(row.metric, self.width), i)
            click.echo(
                f"{row.index:2d}. {row.label.ljust(chart.max_label_length)} |{bar} ({row.metric})"
            )

    def render_contributor_details(self, contributor: Contributor, line_stats: bool = True):
        click.echo(f"\nDetails for {contributor.name}:")
        click.echo(f"Total Commits: {contributor.commits}")
        click.echo(f"First Commit: {contributor.first_commit.strftime(DATETIME_FORMAT)}")
        click.echo(f"Latest Commit: {contributor.latest_commit.strftime(DATETIME_FORMAT)}")
        if line_stats:
            click.echo(f"Lines Added: {contributor.lines_added:,}")
            click.echo(f"Lines Removed: {contributor.lines_removed:,}")
            click.echo(f"Lines Changed: {contributor.lines_changed:,}")
            click.echo(f"Net Lines: {contributor.net_lines:+,}")


def run_detail_prompt(
    chart: ChartData,
    renderer: BarChartRenderer,
    stream=None,
    line_stats: bool = True,
):
    """
    Read selections until 'q' or EOF and print the chosen contributor.

    Invalid input re-prompts without changing anything.
    """
    if stream is None:
        stream = sys.stdin

    click.echo("\nEnter the number of a contributor to see more details, or 'q' to quit:")
    for raw in stream:
        text = raw.strip()
        if text == "q":
            break
        try:
            selected = chart.select(int(text))
        except ValueError:
            selected = None
        if selected is None:
            click.echo(f"Invalid input. Please enter a number between 1 and {len(chart)}")
            continue
        renderer.render_contributor_details(selected, line_stats=line_stats)
        click.echo("\nEnter another number or 'q' to quit:")


# ============================================================================
# CLI INTERFACE
# ============================================================================


def _common_options(func):
    """Options shared by every subcommand."""
    options = [
        click.argument(
            "repo_path",
            type=click.Path(file_okay=False, resolve_path=True),
        ),
        click.option(
            "--config",
            type=click.Path(exists=True, dir_okay=False),
            help="Configuration file path (.yaml or .json)",
        ),
        click.option(
            "--workers",
            type=click.IntRange(min=1),
            help="Worker threads for aggregation (default: CPU count)",
        ),
        click.option("--bar-width", type=click.IntRange(min=1), help="Bar width in characters"),
        click.option("--timeout", type=float, help="Timeout in seconds for the git log call"),
        click.option(
            "-q", "--quiet", is_flag=True, default=None, help="Suppress warnings and info"
        ),
        click.option(
            "-v",
            "--verbose",
            is_flag=True,
            default=None,
            help="Show stage progress and aggregation summary",
        ),
        click.option("--no-color", is_flag=True, default=None, help="Disable colored output"),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def _make_reporter(resolver: ConfigResolver) -> ProgressReporter:
    return ProgressReporter(
        quiet=resolver.get("quiet", False),
        verbose=resolver.get("verbose", False),
        use_colors=not resolver.get("no_color", False),
    )


def _config_int(
    resolver: ConfigResolver, key: str, default: Any, minimum: Optional[int] = None
) -> int:
    """Read an integer setting, applying the same bounds as the CLI option."""
    value = resolver.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{key} must be an integer, got {value!r}")
    if minimum is not None and value < minimum:
        raise ValueError(f"{key} must be at least {minimum}, got {value}")
    return value


def _make_renderer(
    resolver: ConfigResolver, reporter: ProgressReporter
) -> BarChartRenderer:
    return BarChartRenderer(
        use_colors=reporter.use_colors,
        width=_config_int(resolver, "bar_width", DEFAULT_BAR_WIDTH, minimum=1),
    )


def _make_aggregator(
    resolver: ConfigResolver, reporter: ProgressReporter, case_fold: bool = True
) -> ConcurrentAggregator:
    workers = resolver.get("workers")
    if workers is not None:
        workers = _config_int(resolver, "workers", None, minimum=1)
    return ConcurrentAggregator(
        workers=workers,
        case_fold=case_fold,
        chunk_size=_config_int(resolver, "chunk_size", DEFAULT_CHUNK_SIZE, minimum=1),
        reporter=reporter,
    )


def _report_diagnostics(reporter: ProgressReporter, aggregator: ConcurrentAggregator):
    if not aggregator.errors:
        return
    reporter.warning(f"Skipped {len(aggregator.errors)} malformed log line(s)")
    if reporter.verbose:
        for message in aggregator.errors:
            print(f"   {message}")


def _fail(reporter: ProgressReporter, message: str, verbose: bool):
    reporter.error(message)
    if verbose:
        import traceback

        traceback.print_exc()
    sys.exit(1)


@click.group(context_settings=dict(help_option_names=["-h", "--help"]))
@click.version_option(version=VERSION)
def cli():
    """
    gitstats - contributor and file-change statistics for a git repository.
    """


@cli.command()
@_common_options
@click.option(
    "--min-commits",
    type=int,
    help="Show contributors with at least this many commits",
)
@click.option(
    "--line-stats/--no-line-stats",
    default=None,
    help="Collect lines added/removed (numstat log) [default: on]",
)
@click.option(
    "--case-sensitive-authors",
    is_flag=True,
    default=None,
    help="Treat author names differing only in case as different people",
)
@click.option(
    "--no-interactive",
    is_flag=True,
    default=None,
    help="Print the chart and exit without the detail prompt",
)
def contributors(repo_path, config, **kwargs):
    """
    Show a bar graph of contributors ranked by commit count, then allow a
    detailed view of individual contributors.
    """
    verbose = bool(kwargs.get("verbose"))
    reporter = ProgressReporter(use_colors=not kwargs.get("no_color"))

    try:
        resolver = ConfigResolver(kwargs, config, repo_path)
        reporter = _make_reporter(resolver)
        verbose = reporter.verbose
        if resolver.config_source:
            reporter.info(f"Using configuration: {resolver.config_source}")

        min_commits = _config_int(resolver, "min_commits", 0)
        line_stats = resolver.get("line_stats", True)
        renderer = _make_renderer(resolver, reporter)
        source = GitLogSource(repo_path, timeout=resolver.get("timeout"))
        aggregator = _make_aggregator(
            resolver, reporter, case_fold=not resolver.get("case_sensitive_authors", False)
        )
    except Exception as e:
        _fail(reporter, f"Invalid configuration: {e}", verbose)

    try:
        reporter.stage_start("Git Log Export", f"Repository: {repo_path}")
        lines = source.numstat_log() if line_stats else source.commit_log()
        reporter.stage_complete("Git Log Export", {"Lines captured": f"{len(lines):,}"})

        reporter.stage_start("Aggregation", f"{aggregator.workers} worker(s)")
        if line_stats:
            table = aggregator.contributors_from_numstat_log(lines)
        else:
            table = aggregator.contributors_from_commit_log(lines)
        reporter.stage_complete("Aggregation", {"Contributors": f"{len(table):,}"})
    except Exception as e:
        _fail(reporter, f"Failed to get commit log: {e}", verbose)

    _report_diagnostics(reporter, aggregator)
    reporter.summary(
        dict({"Repository": repo_path, "Contributors": len(table)}, **aggregator.metrics.to_dict())
    )

    chart = build_chart(
        rank(table.values(), "commits"), "commits", "name", min_value=min_commits
    )
    if not chart.rows:
        click.echo(f"No contributors with at least {min_commits} commits found.")
        return

    renderer.render_contributors(chart)

    if not resolver.get("no_interactive", False):
        run_detail_prompt(chart, renderer, line_stats=line_stats)


@cli.command()
@_common_options
@click.option(
    "-i",
    "--ignore",
    multiple=True,
    help="Substrings to ignore in file paths (can be used multiple times)",
)
@click.option("--top", type=click.IntRange(min=1), help="Number of files to chart (default: 25)")
def files(repo_path, config, **kwargs):
    """
    Show a chart of the most frequently changed files in the repository.
    """
    # click passes an empty tuple when --ignore is absent; let config decide then
    if not kwargs.get("ignore"):
        kwargs["ignore"] = None

    verbose = bool(kwargs.get("verbose"))
    reporter = ProgressReporter(use_colors=not kwargs.get("no_color"))

    try:
        resolver = ConfigResolver(kwargs, config, repo_path)
        reporter = _make_reporter(resolver)
        verbose = reporter.verbose
        if resolver.config_source:
            reporter.info(f"Using configuration: {resolver.config_source}")

        ignore = resolver.get("ignore") or []
        if isinstance(ignore, str):
            ignore = [ignore]
        top = _config_int(resolver, "top", DEFAULT_TOP_FILES, minimum=1)
        renderer = _make_renderer(resolver, reporter)
        source = GitLogSource(repo_path, timeout=resolver.get("timeout"))
        aggregator = _make_aggregator(resolver, reporter)
    except Exception as e:
        _fail(reporter, f"Invalid configuration: {e}", verbose)

    try:
        reporter.stage_start("Git Log Export", f"Repository: {repo_path}")
        lines = source.name_only_log()
        reporter.stage_complete("Git Log Export", {"Lines captured": f"{len(lines):,}"})

        reporter.stage_start("Aggregation", f"{aggregator.workers} worker(s)")
        table = aggregator.files_from_name_only_log(lines, ignore=ignore)
        reporter.stage_complete("Aggregation", {"Files": f"{len(table):,}"})
    except Exception as e:
        _fail(reporter, str(e), verbose)

    reporter.summary(
        dict({"Repository": repo_path, "Files": len(table)}, **aggregator.metrics.to_dict())
    )

    chart = build_chart(rank(table.values(), "change_count"), "change_count", "path", limit=top)
    if not chart.rows:
        click.echo("No file changes found.")
        return

    renderer.render_files(chart, top)


if __name__ == "__main__":
    cli()
