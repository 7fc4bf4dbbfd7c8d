# /folder_mirror.py
"""
Folder Mirror
- Mirrors a source folder into a replica folder, one way, on a fixed interval.
- Every cycle copies/updates the whole tree first, then prunes replica extras.
- A replica file is stale when missing, a different size, or older than its source.
- Files inside one directory are transferred concurrently (one worker per CPU);
  directories are walked one at a time.
- Transient I/O errors (sharing/lock violations, dropped network names, timeouts)
  are retried with exponential backoff plus jitter. Other errors are counted and
  logged per file / per directory and never abort the cycle.
- Source modification times are written onto replica files. Creation time is
  not: os.utime sets only access/modification times, so replica files keep
  their own creation time.
- Optional gitignore-style exclusions; excluded items are removed from the replica.
- Optional watch mode: source changes trigger an early cycle.
- Remembers last settings across restarts via ~/.folder_mirror/config.json
- Styled console output:
  - COPY green, UPDATE cyan
  - DELETE / RMDIR orange
  - MKDIR light brown, RETRY yellow
  - errors red
- Log file is always plain (no color codes).

Usage
  pip install folder-mirror
  folder-mirror --source "/src" --replica "/dst" --interval 60
  folder-mirror --source "/src" --replica "/dst" --once --exclude "*.tmp"
"""

from __future__ import annotations

import argparse
import datetime as dt
import errno
import json
import logging
import os
import random
import shutil
import sys
import threading
import time
from concurrent.futures import Executor, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional, TypeVar

from colorama import init as colorama_init
from pathspec import PathSpec
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

APP_DIR = Path.home() / ".folder_mirror"
CONFIG_PATH = APP_DIR / "config.json"

LOGGER_NAME = "folder_mirror"

DEFAULT_INTERVAL_SEC = 60.0

T = TypeVar("T")


# -------------------------
# Console styling
# -------------------------

class Ansi:
    RESET = "\x1b[0m"
    RED = "\x1b[31m"
    GREEN = "\x1b[32m"
    YELLOW = "\x1b[93m"
    CYAN = "\x1b[36m"
    ORANGE = "\x1b[38;5;208m"
    WHITE = "\x1b[97m"
    LIGHT_BROWN = "\x1b[33m"


ACTION_COLORS = {
    "COPY": Ansi.GREEN,
    "UPDATE": Ansi.CYAN,
    "DELETE": Ansi.ORANGE,
    "RMDIR": Ansi.ORANGE,
    "MKDIR": Ansi.LIGHT_BROWN,
    "RETRY": Ansi.YELLOW,
}


def _supports_color(stream) -> bool:
    try:
        return hasattr(stream, "isatty") and stream.isatty()
    except Exception:
        return False


class ColorizingFormatter(logging.Formatter):
    def __init__(self, use_color: bool, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        if not self.use_color:
            return base

        action = getattr(record, "action", None)
        is_dir = getattr(record, "is_dir", None)
        path_text = getattr(record, "path_text", None)

        if record.levelno >= logging.ERROR:
            return f"{Ansi.RED}{base}{Ansi.RESET}"

        if action:
            action_color = ACTION_COLORS.get(action, "")
            if action_color and action in base:
                base = base.replace(action, f"{action_color}{action}{Ansi.RESET}", 1)

        if path_text and path_text in base:
            pcolor = Ansi.LIGHT_BROWN if is_dir else Ansi.WHITE
            base = base.replace(path_text, f"{pcolor}{path_text}{Ansi.RESET}")

        return base


def _today_log_name(prefix: str = "mirror") -> str:
    return f"{prefix}_{dt.date.today().isoformat()}.log"


def setup_logger(log_dir: Path, level: int = logging.INFO) -> logging.Logger:
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / _today_log_name()

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    logger.propagate = False

    if logger.handlers:
        return logger

    colorama_init()

    fmt = "%(asctime)s | %(levelname)s | %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"

    fh = logging.FileHandler(log_path, encoding="utf-8")
    fh.setFormatter(logging.Formatter(fmt=fmt, datefmt=datefmt))
    fh.setLevel(level)

    ch = logging.StreamHandler(sys.stdout)
    ch.setLevel(level)
    ch.setFormatter(ColorizingFormatter(use_color=_supports_color(sys.stdout), fmt=fmt, datefmt=datefmt))

    logger.addHandler(fh)
    logger.addHandler(ch)

    logger.info("Logging to: %s", log_path)
    return logger


def log_action(
    logger: logging.Logger,
    action: str,
    message: str,
    path: Optional[Path] = None,
    is_dir: Optional[bool] = None,
    level: int = logging.INFO,
) -> None:
    extra = {"action": action}
    if path is not None:
        extra["path_text"] = str(path)
        extra["is_dir"] = bool(is_dir) if is_dir is not None else path.is_dir()
    logger.log(level, f"{action} | {message}", extra=extra)


# -------------------------
# Cancellation + error classification
# -------------------------

class SyncCancelled(BaseException):
    """
    Raised once the stop event is set.

    Derives from BaseException (like asyncio.CancelledError) so per-file
    ``except Exception`` handlers never count it as a failure.
    """


def check_cancelled(stop_event: Optional[threading.Event]) -> None:
    if stop_event is not None and stop_event.is_set():
        raise SyncCancelled()


# Windows system error codes
TRANSIENT_WINERRORS = frozenset({
    32,   # ERROR_SHARING_VIOLATION
    33,   # ERROR_LOCK_VIOLATION
    64,   # ERROR_NETNAME_DELETED
    121,  # ERROR_SEM_TIMEOUT
})

TRANSIENT_ERRNOS = frozenset(
    getattr(errno, name)
    for name in (
        # busy / sharing
        "EBUSY",
        "ETXTBSY",
        # locks
        "EAGAIN",
        "EDEADLK",
        "ENOLCK",
        # network share went away mid-operation
        "ECONNRESET",
        "ECONNABORTED",
        "ENETRESET",
        "ESTALE",
        # timeouts
        "ETIMEDOUT",
    )
    if hasattr(errno, name)
)


def is_transient_error(exc: BaseException) -> bool:
    """True for I/O failures worth retrying: lock contention, dropped shares, timeouts."""
    if not isinstance(exc, OSError):
        return False
    if isinstance(exc, (TimeoutError, ConnectionResetError, ConnectionAbortedError)):
        return True
    winerror = getattr(exc, "winerror", None)
    if winerror is not None and winerror in TRANSIENT_WINERRORS:
        return True
    return exc.errno in TRANSIENT_ERRNOS


# -------------------------
# Retry
# -------------------------

@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    base_delay_sec: float = 0.1
    multiplier: float = 2.0
    jitter_fraction: float = 0.25
    is_retryable: Callable[[BaseException], bool] = field(default=is_transient_error)

    def delay_for(self, attempt: int) -> float:
        """Sleep after failed attempt number ``attempt`` (1-based): base * multiplier**attempt plus jitter."""
        delay = self.base_delay_sec * (self.multiplier ** attempt)
        return delay + random.uniform(0.0, delay * self.jitter_fraction)


class RetryExecutor:
    """
    Runs an operation up to ``policy.max_attempts`` times.

    Only failures the policy classifies as retryable are retried; anything
    else, or the failure of the last attempt, is re-raised unchanged. The
    backoff sleep waits on the stop event, so cancellation cuts it short.
    """

    def __init__(self, policy: Optional[RetryPolicy] = None, logger: Optional[logging.Logger] = None):
        self.policy = policy or RetryPolicy()
        self.logger = logger or logging.getLogger(LOGGER_NAME)

    def execute(
        self,
        operation: Callable[[], T],
        stop_event: Optional[threading.Event] = None,
        description: str = "operation",
    ) -> T:
        attempt = 1
        while True:
            check_cancelled(stop_event)
            try:
                return operation()
            except Exception as e:
                if attempt >= self.policy.max_attempts or not self.policy.is_retryable(e):
                    raise
                delay = self.policy.delay_for(attempt)
                log_action(
                    self.logger,
                    "RETRY",
                    f"{description} attempt {attempt}/{self.policy.max_attempts} failed, "
                    f"retrying in {delay:.2f}s | {e}",
                    level=logging.WARNING,
                )
                if _sleep(stop_event, delay):
                    raise SyncCancelled() from e
                attempt += 1


def _sleep(stop_event: Optional[threading.Event], seconds: float) -> bool:
    """Returns True if the stop event fired during the sleep."""
    if stop_event is None:
        time.sleep(seconds)
        return False
    return stop_event.wait(seconds)


# -------------------------
# Result accounting
# -------------------------

class SyncResult:
    """
    Counters for one synchronization cycle. Counters only ever go up.

    The engine feeds it from a single thread per pass; the guard keeps it
    safe for any other writer.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._files_copied = 0
        self._files_updated = 0
        self._files_deleted = 0
        self._dirs_deleted = 0
        self._bytes_transferred = 0
        self._errors = 0

    @property
    def files_copied(self) -> int:
        return self._files_copied

    @property
    def files_updated(self) -> int:
        return self._files_updated

    @property
    def files_deleted(self) -> int:
        return self._files_deleted

    @property
    def dirs_deleted(self) -> int:
        return self._dirs_deleted

    @property
    def bytes_transferred(self) -> int:
        return self._bytes_transferred

    @property
    def errors(self) -> int:
        return self._errors

    def register_copy(self, nbytes: int) -> None:
        with self._guard:
            self._files_copied += 1
            self._bytes_transferred += nbytes

    def register_update(self, nbytes: int) -> None:
        with self._guard:
            self._files_updated += 1
            self._bytes_transferred += nbytes

    def register_deletion(self) -> None:
        with self._guard:
            self._files_deleted += 1

    def register_dir_deletion(self) -> None:
        with self._guard:
            self._dirs_deleted += 1

    def register_error(self) -> None:
        with self._guard:
            self._errors += 1

    def as_dict(self) -> dict[str, int]:
        with self._guard:
            return {
                "copied": self._files_copied,
                "updated": self._files_updated,
                "deleted": self._files_deleted,
                "dirs_deleted": self._dirs_deleted,
                "bytes_transferred": self._bytes_transferred,
                "errors": self._errors,
            }

    def summary(self) -> str:
        d = self.as_dict()
        return (
            f"{d['copied']} copied, {d['updated']} updated, {d['deleted']} deleted, "
            f"{d['dirs_deleted']} directories removed, "
            f"{d['bytes_transferred']} bytes transferred, {d['errors']} errors"
        )

    def __repr__(self) -> str:
        return f"SyncResult({self.as_dict()})"


# -------------------------
# Listing
# -------------------------

def _creation_ns(st: os.stat_result) -> int:
    birth_ns = getattr(st, "st_birthtime_ns", None)
    if birth_ns is not None:
        return birth_ns
    birth = getattr(st, "st_birthtime", None)
    if birth is not None:
        return int(birth * 1_000_000_000)
    return st.st_ctime_ns


@dataclass(frozen=True)
class FileEntry:
    """A file as seen by one listing. Times are nanoseconds since the epoch."""

    name: str
    path: Path
    size: int
    mtime_ns: int
    atime_ns: int
    ctime_ns: int

    @classmethod
    def from_stat(cls, path: Path, st: os.stat_result) -> "FileEntry":
        return cls(
            name=path.name,
            path=path,
            size=st.st_size,
            mtime_ns=st.st_mtime_ns,
            atime_ns=st.st_atime_ns,
            ctime_ns=_creation_ns(st),
        )

    @property
    def modified_utc(self) -> dt.datetime:
        return dt.datetime.fromtimestamp(self.mtime_ns / 1e9, tz=dt.timezone.utc)

    @property
    def created_utc(self) -> dt.datetime:
        return dt.datetime.fromtimestamp(self.ctime_ns / 1e9, tz=dt.timezone.utc)


def stat_entry(path: Path) -> Optional[FileEntry]:
    try:
        return FileEntry.from_stat(path, path.stat())
    except FileNotFoundError:
        return None


@dataclass
class DirectoryListing:
    path: Path
    files: list[FileEntry] = field(default_factory=list)
    dirs: list[str] = field(default_factory=list)
    # broken links, links to directories, devices, fifos
    other: list[str] = field(default_factory=list)
    # entries that could not be inspected (link loops, unreachable targets)
    unreadable: list[tuple[str, OSError]] = field(default_factory=list)


def scan_directory(directory: Path, ignore: Optional[IgnoreMatcher] = None) -> DirectoryListing:
    """
    List one directory level. Regular files (links followed) and real
    subdirectories (links not followed) are split out; ignored entries are
    dropped. Raises OSError only if the directory itself cannot be listed;
    a single bad entry lands in ``unreadable``.
    """
    listing = DirectoryListing(directory)
    with os.scandir(directory) as it:
        for entry in it:
            path = directory / entry.name
            try:
                if entry.is_dir(follow_symlinks=False):
                    if ignore is None or not ignore.is_ignored(path, is_dir=True):
                        listing.dirs.append(entry.name)
                    continue
                if entry.is_file():
                    if ignore is None or not ignore.is_ignored(path, is_dir=False):
                        listing.files.append(FileEntry.from_stat(path, entry.stat()))
                    continue
            except FileNotFoundError:
                # vanished while listing
                continue
            except OSError as e:
                if ignore is None or not ignore.is_ignored(path, is_dir=False):
                    listing.unreadable.append((entry.name, e))
                continue
            listing.other.append(entry.name)

    listing.files.sort(key=lambda f: f.name)
    listing.dirs.sort()
    listing.other.sort()
    listing.unreadable.sort(key=lambda item: item[0])
    return listing


def is_stale(source: FileEntry, replica: Optional[FileEntry]) -> bool:
    """Missing, different size, or strictly older than the source. A newer replica is left alone."""
    if replica is None:
        return True
    return replica.size != source.size or replica.mtime_ns < source.mtime_ns


# -------------------------
# Ignore rules
# -------------------------

class IgnoreMatcher:
    def __init__(self, source_root: Path, patterns: list[str]):
        self.source_root = Path(os.path.abspath(source_root))
        self.patterns = list(patterns)
        self.spec = PathSpec.from_lines("gitwildmatch", self.patterns)

    def is_ignored(self, path: Path, is_dir: Optional[bool] = None) -> bool:
        try:
            rel = Path(os.path.abspath(path)).relative_to(self.source_root)
        except ValueError:
            return True
        if not rel.parts:
            return False
        rel_posix = rel.as_posix()
        if is_dir is None:
            is_dir = path.is_dir()
        if is_dir and not rel_posix.endswith("/"):
            rel_posix += "/"
        return self.spec.match_file(rel_posix)


def read_exclude_file(path: Path) -> list[str]:
    patterns = []
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        patterns.append(line)
    return patterns


# -------------------------
# File transfer
# -------------------------

SMALL_FILE_THRESHOLD = 1024 * 1024
SMALL_BUFFER_SIZE = 64 * 1024
LARGE_BUFFER_SIZE = 256 * 1024

_DEST_FLAGS = os.O_WRONLY | os.O_CREAT | os.O_TRUNC | getattr(os, "O_BINARY", 0)


def buffer_size_for(size: int) -> int:
    return SMALL_BUFFER_SIZE if size < SMALL_FILE_THRESHOLD else LARGE_BUFFER_SIZE


def _advise_sequential(fd: int) -> None:
    if not hasattr(os, "posix_fadvise"):
        return
    try:
        os.posix_fadvise(fd, 0, 0, os.POSIX_FADV_SEQUENTIAL)
    except OSError:
        pass


def _preallocate(fd: int, size: int) -> None:
    if size <= 0 or not hasattr(os, "posix_fallocate"):
        return
    try:
        os.posix_fallocate(fd, 0, size)
    except OSError:
        # not supported by this filesystem; the file grows as it is written
        pass


def copy_file(
    src: Path,
    dst: Path,
    stop_event: Optional[threading.Event] = None,
    size: Optional[int] = None,
) -> int:
    """
    Stream ``src`` into ``dst``, creating or truncating it in place.

    Returns the number of bytes written. On failure or cancellation the
    destination is left partially written; the next cycle sees it as stale.
    """
    check_cancelled(stop_event)
    with open(src, "rb", buffering=0) as fsrc:
        if size is None:
            size = os.fstat(fsrc.fileno()).st_size
        _advise_sequential(fsrc.fileno())

        bufsize = buffer_size_for(size)
        fd = os.open(dst, _DEST_FLAGS, 0o666)
        with open(fd, "wb", buffering=bufsize) as fdst:
            _preallocate(fdst.fileno(), size)

            buf = bytearray(bufsize)
            view = memoryview(buf)
            written = 0
            while True:
                check_cancelled(stop_event)
                n = fsrc.readinto(buf)
                if not n:
                    break
                fdst.write(view[:n])
                written += n

            fdst.truncate(written)
    return written


def copy_timestamps(source: FileEntry, dst: Path) -> None:
    # Creation time cannot be set through os.utime; only atime/mtime travel.
    os.utime(dst, ns=(source.atime_ns, source.mtime_ns))


# -------------------------
# Copy / update pass
# -------------------------

@dataclass(frozen=True)
class Transfer:
    action: str  # "COPY" or "UPDATE"
    source: Path
    replica: Path
    nbytes: int


class TreeSynchronizer:
    """
    Top-down copy/update pass.

    Files of one directory run on the executor; the directory visit waits for
    all of them and then recurses into subdirectories one at a time.
    """

    def __init__(
        self,
        executor: Executor,
        retry: RetryExecutor,
        logger: Optional[logging.Logger] = None,
        ignore: Optional[IgnoreMatcher] = None,
    ):
        self.executor = executor
        self.retry = retry
        self.logger = logger or logging.getLogger(LOGGER_NAME)
        self.ignore = ignore

    def sync(
        self,
        source_dir: Path,
        replica_dir: Path,
        result: SyncResult,
        stop_event: Optional[threading.Event] = None,
    ) -> None:
        check_cancelled(stop_event)

        if not replica_dir.is_dir():
            try:
                replica_dir.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                log_action(self.logger, "MKDIR", f"ERROR {replica_dir} | {e}", path=replica_dir, is_dir=True, level=logging.ERROR)
                result.register_error()
                return
            log_action(self.logger, "MKDIR", f"{replica_dir}", path=replica_dir, is_dir=True)

        try:
            listing = scan_directory(source_dir, self.ignore)
        except Exception as e:
            log_action(self.logger, "LIST", f"ERROR cannot list {source_dir} | {e}", path=source_dir, is_dir=True, level=logging.WARNING)
            result.register_error()
            return

        for name, e in listing.unreadable:
            path = source_dir / name
            log_action(self.logger, "COPY", f"ERROR cannot read {path} | {e}", path=path, is_dir=False, level=logging.ERROR)
            result.register_error()

        self._sync_files(listing.files, replica_dir, result, stop_event)

        for name in listing.dirs:
            check_cancelled(stop_event)
            self.sync(source_dir / name, replica_dir / name, result, stop_event)

    def _sync_files(
        self,
        files: list[FileEntry],
        replica_dir: Path,
        result: SyncResult,
        stop_event: Optional[threading.Event],
    ) -> None:
        if not files:
            return

        futures = {
            self.executor.submit(self.sync_file, entry, replica_dir / entry.name, stop_event): entry
            for entry in files
        }
        try:
            for future in as_completed(futures):
                entry = futures[future]
                try:
                    transfer = future.result()
                except Exception as e:
                    log_action(self.logger, "COPY", f"ERROR {entry.path} | {e}", path=entry.path, is_dir=False, level=logging.ERROR)
                    result.register_error()
                    continue
                if transfer is not None:
                    self._record(transfer, result)
        except BaseException:
            # cancellation or Ctrl+C: nothing queued may start afterwards
            for future in futures:
                future.cancel()
            raise

    def sync_file(
        self,
        source: FileEntry,
        replica_path: Path,
        stop_event: Optional[threading.Event] = None,
    ) -> Optional[Transfer]:
        """Bring one replica file up to date. Returns None when it already was."""
        check_cancelled(stop_event)

        replica = stat_entry(replica_path)
        if not is_stale(source, replica):
            return None

        # decided up front; an external delete mid-copy does not turn an update into a copy
        action = "UPDATE" if replica is not None else "COPY"

        nbytes = self.retry.execute(
            lambda: copy_file(source.path, replica_path, stop_event, source.size),
            stop_event,
            f"copy {source.path}",
        )
        copy_timestamps(source, replica_path)
        return Transfer(action, source.path, replica_path, nbytes)

    def _record(self, transfer: Transfer, result: SyncResult) -> None:
        if transfer.action == "UPDATE":
            result.register_update(transfer.nbytes)
        else:
            result.register_copy(transfer.nbytes)
        log_action(
            self.logger,
            transfer.action,
            f"{transfer.source} -> {transfer.replica} ({transfer.nbytes} bytes)",
            path=transfer.replica,
            is_dir=False,
        )


# -------------------------
# Prune pass
# -------------------------

class ReplicaPruner:
    """
    Deletes replica entries with no counterpart in the source.

    Names are compared case-insensitively. A source directory that cannot be
    listed is never treated as empty: its replica is skipped for this cycle.
    """

    def __init__(
        self,
        retry: RetryExecutor,
        logger: Optional[logging.Logger] = None,
        ignore: Optional[IgnoreMatcher] = None,
    ):
        self.retry = retry
        self.logger = logger or logging.getLogger(LOGGER_NAME)
        self.ignore = ignore

    def prune(
        self,
        source_dir: Path,
        replica_dir: Path,
        result: SyncResult,
        stop_event: Optional[threading.Event] = None,
    ) -> None:
        check_cancelled(stop_event)

        if not replica_dir.is_dir():
            return

        try:
            replica = scan_directory(replica_dir)
            source = scan_directory(source_dir, self.ignore)
        except Exception as e:
            log_action(self.logger, "LIST", f"ERROR cannot compare {replica_dir} | {e}", path=replica_dir, is_dir=True, level=logging.WARNING)
            result.register_error()
            return

        # an unreadable source entry still protects its replica counterpart
        source_files = {f.name.casefold() for f in source.files}
        source_files.update(name.casefold() for name, _ in source.unreadable)
        source_dirs = {name.casefold(): name for name in source.dirs}

        orphans = [f.name for f in replica.files] + replica.other + [name for name, _ in replica.unreadable]
        for name in sorted(orphans):
            check_cancelled(stop_event)
            if name.casefold() not in source_files:
                self._delete_file(replica_dir / name, result, stop_event)

        for name in replica.dirs:
            check_cancelled(stop_event)
            source_name = source_dirs.get(name.casefold())
            if source_name is not None:
                self.prune(source_dir / source_name, replica_dir / name, result, stop_event)
            else:
                self._delete_dir(replica_dir / name, result, stop_event)

    def _delete_file(self, path: Path, result: SyncResult, stop_event: Optional[threading.Event]) -> None:
        try:
            self.retry.execute(lambda: path.unlink(missing_ok=True), stop_event, f"delete {path}")
        except Exception as e:
            log_action(self.logger, "DELETE", f"ERROR {path} | {e}", path=path, is_dir=False, level=logging.ERROR)
            result.register_error()
            return
        result.register_deletion()
        log_action(self.logger, "DELETE", f"{path}", path=path, is_dir=False)

    def _delete_dir(self, path: Path, result: SyncResult, stop_event: Optional[threading.Event]) -> None:
        try:
            self.retry.execute(lambda: shutil.rmtree(path), stop_event, f"remove directory {path}")
        except Exception as e:
            log_action(self.logger, "RMDIR", f"ERROR {path} | {e}", path=path, is_dir=True, level=logging.ERROR)
            result.register_error()
            return
        result.register_dir_deletion()
        log_action(self.logger, "RMDIR", f"{path}", path=path, is_dir=True)


# -------------------------
# Engine
# -------------------------

class SyncEngine:
    """
    One full cycle: copy/update the entire tree, then prune the entire tree.

    Per-file and per-directory failures end up in ``SyncResult.errors``.
    ``run`` raises only for cancellation (``SyncCancelled``) or when the
    source root itself is missing.
    """

    def __init__(
        self,
        retry_policy: Optional[RetryPolicy] = None,
        max_workers: Optional[int] = None,
        excludes: Optional[list[str]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.retry_policy = retry_policy or RetryPolicy()
        self.max_workers = max_workers or os.cpu_count() or 1
        self.excludes = list(excludes or [])
        self.logger = logger or logging.getLogger(LOGGER_NAME)

    def run(
        self,
        source: Path | str,
        replica: Path | str,
        stop_event: Optional[threading.Event] = None,
    ) -> SyncResult:
        source_root = Path(os.path.abspath(source))
        replica_root = Path(os.path.abspath(replica))
        if not source_root.is_dir():
            raise FileNotFoundError(f"Source directory does not exist: {source_root}")

        check_cancelled(stop_event)
        result = SyncResult()
        ignore = IgnoreMatcher(source_root, self.excludes) if self.excludes else None
        retry = RetryExecutor(self.retry_policy, self.logger)

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="mirror") as executor:
            try:
                TreeSynchronizer(executor, retry, self.logger, ignore).sync(source_root, replica_root, result, stop_event)
            except KeyboardInterrupt:
                # in-flight copies stop at their next chunk before the pool joins
                if stop_event is not None:
                    stop_event.set()
                raise

        ReplicaPruner(retry, self.logger, ignore).prune(source_root, replica_root, result, stop_event)
        return result


# -------------------------
# Service loop
# -------------------------

class SyncService(threading.Thread):
    """Runs a cycle on start and then every ``interval_sec``; cycles never overlap."""

    def __init__(
        self,
        engine: SyncEngine,
        source_dir: Path,
        replica_dir: Path,
        interval_sec: float,
        logger: logging.Logger,
        stop_event: threading.Event,
    ):
        super().__init__(daemon=True, name="folder-mirror")
        self.engine = engine
        self.source_dir = source_dir
        self.replica_dir = replica_dir
        self.interval_sec = float(interval_sec)
        self.logger = logger
        self.stop_event = stop_event
        self.last_result: Optional[SyncResult] = None
        self.cycles = 0
        self._wake = threading.Event()

    def request_sync(self) -> None:
        self._wake.set()

    def stop(self) -> None:
        self.stop_event.set()
        self._wake.set()

    def run(self) -> None:
        self.logger.info("SYNC SERVICE: started (interval=%.1fs)", self.interval_sec)
        while not self.stop_event.is_set():
            start = time.monotonic()
            self._wake.clear()
            try:
                self.run_cycle()
            except SyncCancelled:
                self.logger.info("SYNC SERVICE: cycle cancelled")
                break

            elapsed = time.monotonic() - start
            self._wake.wait(max(0.0, self.interval_sec - elapsed))
        self.logger.info("SYNC SERVICE: stopped")

    def run_cycle(self) -> Optional[SyncResult]:
        """One cycle with logging. Returns None if the cycle failed outright."""
        self.logger.info("=== Starting synchronization cycle ===")
        start = time.monotonic()
        self.cycles += 1
        try:
            result = self.engine.run(self.source_dir, self.replica_dir, self.stop_event)
        except Exception as e:
            self.logger.error("Error during synchronization cycle: %s", e, exc_info=True)
            return None

        self.logger.info("=== Synchronization completed in %.2f seconds ===", time.monotonic() - start)
        self.logger.info("Statistics: %s", result.summary())
        self.last_result = result
        return result


TRIGGER_EVENTS = frozenset({"created", "modified", "deleted", "moved"})


class SourceChangeTrigger(FileSystemEventHandler):
    """Wakes the service when something under the source changes."""

    def __init__(self, service: SyncService, ignore: Optional[IgnoreMatcher] = None):
        self.service = service
        self.ignore = ignore

    def on_any_event(self, event):
        if event.event_type not in TRIGGER_EVENTS:
            return
        if self.ignore is not None and event.event_type != "moved":
            src = Path(os.fsdecode(event.src_path))
            if self.ignore.is_ignored(src, is_dir=bool(event.is_directory)):
                return
        self.service.request_sync()


# -------------------------
# Config / CLI
# -------------------------

@dataclass(frozen=True)
class AppConfig:
    source_dir: Path
    replica_dir: Path
    log_dir: Path
    interval_sec: float
    workers: Optional[int] = None
    excludes: tuple[str, ...] = ()
    watch: bool = False


def parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Mirror a source folder into a replica folder on a fixed interval.")
    p.add_argument("--source", type=str, default=None, help="Folder to mirror (source of truth).")
    p.add_argument("--replica", type=str, default=None, help="Folder kept identical to the source.")
    p.add_argument("--interval", type=float, default=None, help="Seconds between synchronization cycles.")
    p.add_argument("--log-dir", type=str, default=None, help="Directory for log files.")
    p.add_argument("--workers", type=int, default=None, help="Parallel file transfers per directory (default: CPU count).")
    p.add_argument("--exclude", action="append", default=None, metavar="PATTERN", help="gitignore-style pattern to skip (repeatable).")
    p.add_argument("--exclude-from", type=str, default=None, metavar="FILE", help="File with one exclude pattern per line.")
    p.add_argument("--watch", action=argparse.BooleanOptionalAction, default=None, help="Also sync early when the source changes.")
    p.add_argument("--once", action="store_true", help="Run a single cycle and exit.")
    return p.parse_args(argv)


def load_config_file(path: Optional[Path] = None) -> dict:
    path = path or CONFIG_PATH
    try:
        if path.exists():
            data = json.loads(path.read_text(encoding="utf-8"))
            if isinstance(data, dict):
                return data
    except (OSError, ValueError):
        pass
    return {}


def save_config_file(cfg: AppConfig, path: Optional[Path] = None) -> Path:
    path = path or CONFIG_PATH
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = {
        "source": str(cfg.source_dir),
        "replica": str(cfg.replica_dir),
        "log_dir": str(cfg.log_dir),
        "interval_sec": cfg.interval_sec,
        "workers": cfg.workers,
        "excludes": list(cfg.excludes),
        "watch": cfg.watch,
    }
    path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
    return path


def _is_subpath(child: Path, parent: Path) -> bool:
    try:
        child.relative_to(parent)
        return True
    except ValueError:
        return False


def _same_path(a: Path, b: Path) -> bool:
    return os.path.normcase(str(a)) == os.path.normcase(str(b))


def validate_paths(source: Path, replica: Path) -> tuple[Path, Path]:
    source = source.expanduser().resolve()
    replica = replica.expanduser().resolve()

    if not source.exists() or not source.is_dir():
        raise ValueError(f"Source folder does not exist or is not a folder: {source}")
    if _same_path(source, replica):
        raise ValueError("Source and replica folders must be different.")
    if _is_subpath(replica, source):
        raise ValueError("Replica folder must NOT be inside the source folder (would cause loops).")
    if _is_subpath(source, replica):
        raise ValueError("Source folder must NOT be inside the replica folder (it would be pruned).")

    replica.mkdir(parents=True, exist_ok=True)
    return source, replica


def build_effective_config(args: argparse.Namespace, saved: Optional[dict] = None) -> AppConfig:
    """Command-line options win; anything not given falls back to the last saved settings."""
    if saved is None:
        saved = load_config_file()

    source = args.source or saved.get("source")
    replica = args.replica or saved.get("replica")
    if not source:
        raise ValueError("No source folder given (use --source).")
    if not replica:
        raise ValueError("No replica folder given (use --replica).")

    log_dir = Path(args.log_dir or saved.get("log_dir") or ".")

    interval = args.interval if args.interval is not None else float(saved.get("interval_sec", DEFAULT_INTERVAL_SEC))
    if interval <= 0:
        raise ValueError(f"Interval must be a positive number of seconds, got {interval}.")

    workers = args.workers if args.workers is not None else saved.get("workers")
    if workers is not None and workers <= 0:
        raise ValueError(f"Workers must be a positive integer, got {workers}.")

    if args.exclude is None and args.exclude_from is None:
        excludes = list(saved.get("excludes", []))
    else:
        excludes = list(args.exclude or [])
        if args.exclude_from:
            excludes.extend(read_exclude_file(Path(args.exclude_from)))

    watch = args.watch if args.watch is not None else bool(saved.get("watch", False))

    return AppConfig(
        source_dir=Path(source),
        replica_dir=Path(replica),
        log_dir=log_dir,
        interval_sec=interval,
        workers=workers,
        excludes=tuple(excludes),
        watch=watch,
    )


# -------------------------
# Main
# -------------------------

def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)

    try:
        cfg = build_effective_config(args)
    except (OSError, ValueError) as e:
        print(f"Config error: {e}", file=sys.stderr)
        return 2

    logger = setup_logger(cfg.log_dir)

    try:
        source, replica = validate_paths(cfg.source_dir, cfg.replica_dir)
        logger.info("Source : %s", source)
        logger.info("Replica: %s", replica)
        logger.info("Interval: %.1f seconds", cfg.interval_sec)
        if cfg.excludes:
            logger.info("Excludes: %s", ", ".join(cfg.excludes))
    except (OSError, ValueError) as e:
        logger.error("Config error: %s", e)
        return 2

    cfg = AppConfig(
        source_dir=source,
        replica_dir=replica,
        log_dir=cfg.log_dir.expanduser().resolve(),
        interval_sec=cfg.interval_sec,
        workers=cfg.workers,
        excludes=cfg.excludes,
        watch=cfg.watch,
    )
    try:
        logger.info("Saved config: %s", save_config_file(cfg))
    except OSError as e:
        logger.error("Could not save config: %s", e)

    engine = SyncEngine(max_workers=cfg.workers, excludes=list(cfg.excludes), logger=logger)
    stop_event = threading.Event()
    service = SyncService(engine, source, replica, cfg.interval_sec, logger, stop_event)

    if args.once:
        try:
            result = service.run_cycle()
        except (KeyboardInterrupt, SyncCancelled):
            stop_event.set()
            logger.info("Cancelled.")
            return 1
        return 0 if result is not None and result.errors == 0 else 1

    observer = None
    if cfg.watch:
        ignore = IgnoreMatcher(source, list(cfg.excludes)) if cfg.excludes else None
        observer = Observer()
        observer.schedule(SourceChangeTrigger(service, ignore), str(source), recursive=True)
        observer.start()
        logger.info("Watching source for changes")

    logger.info("Starting sync service... (Ctrl+C to stop)")
    service.start()

    try:
        while service.is_alive():
            time.sleep(0.5)
    except KeyboardInterrupt:
        logger.info("Stopping...")
    finally:
        service.stop()
        if observer is not None:
            observer.stop()
            observer.join(timeout=10)
        service.join(timeout=10)
        logger.info("Stopped.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
