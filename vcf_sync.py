# /vcf_sync.py
"""
VCF Sync (no UI)
- Mirrors *.vcf contact files from a source folder into a destination folder.
- One-way: destination-only files are left in place, the source is never written.
- Overwrites keep a backup next to the file: <name>.backup-YYYYMMDD-HHMMSS
- Every write goes through a temp file + atomic rename.
- Optional processing (-p): adds a lock marker to the N field and refreshes REV.
  Records are rewritten on a bounded thread pool.
- Optional watch mode (-w): watchdog events are debounced into one pass at a time.
- One instance per destination, enforced by a lock file in the system temp dir.
- Tunables can be remembered in ~/.vcf_sync/config.json
- Styled console output:
  - COPY green
  - BACKUP orange
  - LOCK / SWEEP light brown
  - errors red
  - file paths white
- Log file (--log-dir) is always plain (no color codes).

Usage
  pip install watchdog pathspec colorama
  python vcf_sync.py ~/contacts ~/backup
  python vcf_sync.py -w -p ~/contacts ~/backup
"""

from __future__ import annotations

import argparse
import datetime as dt
import enum
import hashlib
import json
import logging
import os
import queue
import shutil
import signal
import sys
import tempfile
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from contextlib import suppress
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Iterable, Iterator, Optional

from colorama import just_fix_windows_console
from pathspec import PathSpec

if os.name == "nt":
    import msvcrt
else:
    import fcntl

if TYPE_CHECKING:
    from watchdog.events import FileSystemEvent
    from watchdog.observers.api import BaseObserver

APP_DIR = Path.home() / ".vcf_sync"
CONFIG_PATH = APP_DIR / "config.json"

TRACKED_EXT = ".vcf"
LOCK_MARKER = " \U0001F512"
BACKUP_INFIX = ".backup-"
BACKUP_STAMP = "%Y%m%d-%H%M%S"
REV_STAMP = "%Y-%m-%dT%H:%M:%SZ"
TEMP_SUFFIX = ".tmp"
SCRATCH_PREFIX = "vcf_sync_"

DEFAULT_WORKERS = 4
DEFAULT_DEBOUNCE_SEC = 1.0

# watchdog event types that can mean "a tracked file has new content"
WATCH_EVENT_KINDS = {"created", "modified", "moved", "closed"}


# -------------------------
# Console styling
# -------------------------

class Ansi:
    RESET = "\x1b[0m"
    RED = "\x1b[31m"
    GREEN = "\x1b[32m"
    ORANGE = "\x1b[38;5;208m"
    WHITE = "\x1b[97m"
    LIGHT_BROWN = "\x1b[33m"


ACTION_COLORS = {
    "COPY": Ansi.GREEN,
    "BACKUP": Ansi.ORANGE,
    "LOCK": Ansi.LIGHT_BROWN,
    "SWEEP": Ansi.LIGHT_BROWN,
    "CHANGE": Ansi.LIGHT_BROWN,
}


def _supports_color(stream) -> bool:
    try:
        return hasattr(stream, "isatty") and stream.isatty()
    except ValueError:
        return False


class ColorizingFormatter(logging.Formatter):
    def __init__(self, use_color: bool, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        if not self.use_color:
            return base

        if record.levelno >= logging.ERROR:
            return f"{Ansi.RED}{base}{Ansi.RESET}"

        action = getattr(record, "action", None)
        path_text = getattr(record, "path_text", None)

        if action and action in base:
            action_color = ACTION_COLORS.get(action, "")
            base = base.replace(action, f"{action_color}{action}{Ansi.RESET}", 1)

        if path_text and path_text in base:
            base = base.replace(path_text, f"{Ansi.WHITE}{path_text}{Ansi.RESET}")

        return base


def _today_log_name(prefix: str = "vcf_sync") -> str:
    return f"{prefix}_{dt.date.today().isoformat()}.log"


def _below_warning(record: logging.LogRecord) -> bool:
    return record.levelno < logging.WARNING


def setup_logger(log_dir: Optional[Path] = None, verbose: bool = False) -> logging.Logger:
    """
    Console logging split by level (info to stdout, warnings and errors to
    stderr), plus a plain daily file when log_dir is given. Calling it again
    replaces the previous handlers.
    """
    logger = logging.getLogger("vcf_sync")
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    logger.propagate = False

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    just_fix_windows_console()

    fmt = "%(asctime)s | %(levelname)s | %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"

    out = logging.StreamHandler(sys.stdout)
    out.addFilter(_below_warning)
    out.setFormatter(ColorizingFormatter(use_color=_supports_color(sys.stdout), fmt=fmt, datefmt=datefmt))
    logger.addHandler(out)

    err = logging.StreamHandler(sys.stderr)
    err.setLevel(logging.WARNING)
    err.setFormatter(ColorizingFormatter(use_color=_supports_color(sys.stderr), fmt=fmt, datefmt=datefmt))
    logger.addHandler(err)

    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        log_path = log_dir / _today_log_name()
        fh = logging.FileHandler(log_path, encoding="utf-8")
        fh.setFormatter(logging.Formatter(fmt=fmt, datefmt=datefmt))
        logger.addHandler(fh)
        logger.info("Logging to: %s", log_path)

    return logger


def log_action(
    logger: logging.Logger,
    action: str,
    message: str,
    path: Optional[Path] = None,
    level: int = logging.INFO,
) -> None:
    extra = {"action": action}
    if path is not None:
        extra["path_text"] = str(path)
    logger.log(level, f"{action} | {message}", extra=extra)


# -------------------------
# Errors
# -------------------------

class VcfSyncError(Exception):
    """Base class for everything this tool raises on purpose."""


class ValidationError(VcfSyncError, ValueError):
    """Bad arguments or configuration. Nothing has been touched yet."""


class SourceNotFoundError(ValidationError):
    pass


class SourceReadError(VcfSyncError, OSError):
    """A single source file could not be read; the pass skips it."""


class DestinationWriteError(VcfSyncError, OSError):
    """Writing under the destination failed; the rest of the pass is aborted."""


class AlreadyRunningError(VcfSyncError):
    pass


class DependencyError(VcfSyncError):
    pass


# -------------------------
# Config / CLI
# -------------------------

@dataclass(frozen=True)
class AppConfig:
    source_dir: Path
    dest_dir: Path
    process: bool = False
    watch: bool = False
    workers: int = DEFAULT_WORKERS
    debounce_sec: float = DEFAULT_DEBOUNCE_SEC
    excludes: tuple[str, ...] = ()
    log_dir: Optional[Path] = None
    lock_dir: Optional[Path] = None
    exit_on_error: bool = False
    verbose: bool = False
    warnings: tuple[str, ...] = ()


class _Parser(argparse.ArgumentParser):
    def error(self, message: str) -> None:  # type: ignore[override]
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def _positive_int(raw: str) -> int:
    try:
        value = int(raw)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an integer: {raw!r}")
    if value < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1: {value}")
    return value


def _non_negative_float(raw: str) -> float:
    try:
        value = float(raw)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not a number: {raw!r}")
    if value < 0:
        raise argparse.ArgumentTypeError(f"must not be negative: {value}")
    return value


def parse_args(argv: list[str]) -> argparse.Namespace:
    p = _Parser(
        prog="vcf-sync",
        description="Sync .vcf contact files from a source folder into a destination folder.",
        epilog=(
            "examples:\n"
            "  vcf-sync ~/contacts ~/backup          sync once\n"
            "  vcf-sync -w ~/contacts ~/backup       watch and sync continuously\n"
            "  vcf-sync -w -p ~/contacts ~/backup    watch, sync and lock records"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    p.add_argument("source_dir", help="Folder holding the .vcf files (read only).")
    p.add_argument("dest_dir", help="Folder to mirror into (created if missing).")
    p.add_argument("-p", "--process", action="store_true",
                   help="Add the lock marker to N and refresh REV on every copied file.")
    p.add_argument("-w", "--watch", action="store_true", help="Keep watching the source and sync on change.")
    p.add_argument("-j", "--workers", type=_positive_int, default=None,
                   help=f"Files processed in parallel (default {DEFAULT_WORKERS}).")
    p.add_argument("--debounce", type=_non_negative_float, default=None,
                   help=f"Quiet seconds before a watch pass runs (default {DEFAULT_DEBOUNCE_SEC}).")
    p.add_argument("--exclude", action="append", default=None, metavar="PATTERN",
                   help="gitignore-style pattern to leave out, relative to the source. Repeatable.")
    p.add_argument("--log-dir", type=str, default=None, help="Also write a plain log file here.")
    p.add_argument("--lock-dir", type=str, default=None, help="Directory for the single-instance lock file.")
    p.add_argument("--exit-on-error", action="store_true",
                   help="In watch mode, stop on a failed pass instead of waiting for the next change.")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")
    return p.parse_args(argv)


def load_config_file(path: Optional[Path] = None, problems: Optional[list[str]] = None) -> dict:
    """
    Read the remembered tunables. An unreadable or malformed file counts as
    empty; the reason is appended to `problems` so it can be logged later.
    """
    path = path or CONFIG_PATH
    try:
        if path.exists():
            data = json.loads(path.read_text(encoding="utf-8"))
            if isinstance(data, dict):
                return data
            raise ValueError(f"expected a JSON object, got {type(data).__name__}")
    except (OSError, ValueError) as e:
        if problems is not None:
            problems.append(f"ignoring {path}: {e}")
    return {}


def build_effective_config(args: argparse.Namespace, saved: Optional[dict] = None) -> AppConfig:
    problems: list[str] = []
    saved = load_config_file(problems=problems) if saved is None else saved

    try:
        workers = args.workers if args.workers is not None else int(saved.get("workers", DEFAULT_WORKERS))
        debounce = (
            args.debounce if args.debounce is not None
            else float(saved.get("debounce_sec", DEFAULT_DEBOUNCE_SEC))
        )
        saved_excludes = [str(x) for x in saved.get("exclude", [])]
    except (TypeError, ValueError) as e:
        raise ValidationError(f"bad value in {CONFIG_PATH}: {e}") from e

    if workers < 1:
        raise ValidationError(f"workers must be at least 1, got {workers}")
    if debounce < 0:
        raise ValidationError(f"debounce must not be negative, got {debounce}")

    log_dir = args.log_dir or saved.get("log_dir")
    lock_dir = args.lock_dir or saved.get("lock_dir")

    return AppConfig(
        source_dir=Path(args.source_dir),
        dest_dir=Path(args.dest_dir),
        process=args.process,
        watch=args.watch,
        workers=workers,
        debounce_sec=debounce,
        excludes=tuple(saved_excludes) + tuple(args.exclude or ()),
        log_dir=Path(log_dir).expanduser() if log_dir else None,
        lock_dir=Path(lock_dir).expanduser() if lock_dir else None,
        exit_on_error=args.exit_on_error or bool(saved.get("exit_on_error", False)),
        verbose=args.verbose,
        warnings=tuple(problems),
    )


def _is_subpath(child: Path, parent: Path) -> bool:
    try:
        child.resolve().relative_to(parent.resolve())
        return True
    except ValueError:
        return False


def validate_paths(source: Path, dest: Path) -> tuple[Path, Path]:
    source = source.expanduser().resolve()
    dest = dest.expanduser().resolve()

    if not source.is_dir():
        raise SourceNotFoundError(f"Source directory '{source}' does not exist")
    if source == dest:
        raise ValidationError("Source and destination folders must be different.")
    if _is_subpath(dest, source):
        raise ValidationError("Destination folder must NOT be inside the source folder (would cause loops).")
    if _is_subpath(source, dest):
        raise ValidationError("Source folder must NOT be inside the destination folder.")
    return source, dest


# -------------------------
# Tracked files
# -------------------------

class TrackedMatcher:
    """
    Decides which files take part in a sync: names ending in .vcf (case
    sensitive) that no exclude pattern matches. Patterns are gitignore-style
    and relative to the root.
    """

    def __init__(self, root: Path, excludes: Iterable[str] = ()):
        self.root = root.resolve()
        self.excludes = list(excludes)
        self.spec = PathSpec.from_lines("gitwildmatch", self.excludes)

    def matches(self, rel_posix: str) -> bool:
        name = rel_posix.rsplit("/", 1)[-1]
        if not name.endswith(TRACKED_EXT):
            return False
        return not self.spec.match_file(rel_posix)

    def is_tracked(self, path: Path) -> bool:
        try:
            rel = path.resolve().relative_to(self.root)
        except ValueError:
            return False
        return self.matches(rel.as_posix())


def iter_tracked(root: Path, matcher: TrackedMatcher) -> Iterator[tuple[Path, str]]:
    """Yield (path, relative posix path) for every tracked regular file under root."""
    for path in sorted(root.rglob(f"*{TRACKED_EXT}")):
        rel = path.relative_to(root).as_posix()
        if path.is_file() and matcher.matches(rel):
            yield path, rel


def ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


# -------------------------
# Run context
# -------------------------

def lock_path_for(dest_root: Path, lock_dir: Optional[Path] = None) -> Path:
    digest = hashlib.sha1(str(dest_root.expanduser().resolve()).encode("utf-8")).hexdigest()[:16]
    return (lock_dir or Path(tempfile.gettempdir())) / f"vcf_sync-{digest}.lock"


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    if os.name == "nt":
        # os.kill would terminate the process on Windows
        return True
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _try_lock(fd: int) -> bool:
    try:
        if os.name == "nt":
            msvcrt.locking(fd, msvcrt.LK_NBLCK, 1)
        else:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError:
        return False
    return True


def _unlock(fd: int) -> None:
    if os.name == "nt":
        os.lseek(fd, 0, os.SEEK_SET)
        msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)
    else:
        fcntl.flock(fd, fcntl.LOCK_UN)


class InstanceLock:
    """
    OS lock (flock / msvcrt.locking) on a lock file that stays in place. The
    kernel drops the lock when its owner dies, so a lock left by a killed run
    is simply free again; the file only carries the holder's PID for messages.
    The file is never unlinked: another process may already have it open.
    """

    def __init__(self, path: Path):
        self.path = path
        self.held = False
        self._fd: Optional[int] = None

    def _owner(self) -> Optional[int]:
        try:
            return int(self.path.read_text(encoding="utf-8").strip())
        except (OSError, ValueError):
            return None

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
        if not _try_lock(fd):
            os.close(fd)
            owner = self._owner()
            if owner is None:
                raise AlreadyRunningError(f"already running (lock {self.path})")
            raise AlreadyRunningError(f"already running (pid {owner}, lock {self.path})")
        try:
            os.ftruncate(fd, 0)
            os.write(fd, str(os.getpid()).encode("ascii"))
            os.fsync(fd)
        except OSError:
            _unlock(fd)
            os.close(fd)
            raise
        self._fd = fd
        self.held = True

    def release(self) -> None:
        if not self.held or self._fd is None:
            return
        fd, self._fd = self._fd, None
        self.held = False
        try:
            with suppress(OSError):
                os.ftruncate(fd, 0)
            _unlock(fd)
        finally:
            os.close(fd)


def sweep_stale_scratch(parent: Path) -> list[Path]:
    """Remove scratch dirs (vcf_sync_<pid>_*) whose owning process is gone."""
    removed = []
    for d in parent.glob(f"{SCRATCH_PREFIX}*_*"):
        pid_text = d.name[len(SCRATCH_PREFIX):].split("_", 1)[0]
        if not pid_text.isdigit() or not d.is_dir():
            continue
        if _pid_alive(int(pid_text)):
            continue
        shutil.rmtree(d, ignore_errors=True)
        if not d.exists():
            removed.append(d)
    return removed


class RunContext:
    """
    Everything a run owns: the single-instance lock, a scratch directory for
    temp files and the temp files currently in flight. Use as a context
    manager; leaving it always cleans up. Scratch dirs are named after the
    owning PID so the next run can remove those of a killed run.
    """

    def __init__(
        self,
        source_root: Path,
        dest_root: Path,
        process: bool = False,
        workers: int = DEFAULT_WORKERS,
        matcher: Optional[TrackedMatcher] = None,
        lock_dir: Optional[Path] = None,
    ):
        self.source_root = source_root
        self.dest_root = dest_root
        self.process = process
        self.workers = workers
        self.matcher = matcher or TrackedMatcher(source_root)
        self.lock = InstanceLock(lock_path_for(dest_root, lock_dir))
        self.scratch_parent = lock_dir or Path(tempfile.gettempdir())
        self.scratch_dir: Optional[Path] = None
        self.stale_scratch: list[Path] = []
        self._temps: set[Path] = set()
        self._guard = threading.Lock()

    def __enter__(self) -> RunContext:
        self.lock.acquire()
        try:
            self.stale_scratch = sweep_stale_scratch(self.scratch_parent)
            self.scratch_dir = Path(
                tempfile.mkdtemp(prefix=f"{SCRATCH_PREFIX}{os.getpid()}_", dir=self.scratch_parent)
            )
        except BaseException:
            self.lock.release()
            raise
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        with self._guard:
            leftovers = list(self._temps)
            self._temps.clear()
        for tmp in leftovers:
            with suppress(OSError):
                tmp.unlink(missing_ok=True)
        if self.scratch_dir is not None:
            shutil.rmtree(self.scratch_dir, ignore_errors=True)
            self.scratch_dir = None
        self.lock.release()

    def temp_dir_for(self, target: Path) -> Path:
        """Scratch dir when it shares a filesystem with target (rename stays atomic), else target's folder."""
        parent = target.parent
        if self.scratch_dir is None:
            return parent
        try:
            if os.stat(self.scratch_dir).st_dev == os.stat(parent).st_dev:
                return self.scratch_dir
        except OSError:
            pass
        return parent

    def track_temp(self, tmp: Path) -> None:
        with self._guard:
            self._temps.add(tmp)

    def untrack_temp(self, tmp: Path) -> None:
        with self._guard:
            self._temps.discard(tmp)

    @property
    def in_flight(self) -> int:
        with self._guard:
            return len(self._temps)


def _new_temp(target: Path, ctx: Optional[RunContext]) -> tuple[int, Path]:
    tmp_dir = ctx.temp_dir_for(target) if ctx else target.parent
    fd, name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=TEMP_SUFFIX, dir=tmp_dir)
    tmp = Path(name)
    if ctx:
        ctx.track_temp(tmp)
    return fd, tmp


def _commit_temp(tmp: Path, target: Path, ctx: Optional[RunContext]) -> None:
    os.replace(tmp, target)
    if ctx:
        ctx.untrack_temp(tmp)


def _discard_temp(tmp: Path, ctx: Optional[RunContext]) -> None:
    if ctx:
        ctx.untrack_temp(tmp)
    with suppress(OSError):
        tmp.unlink(missing_ok=True)


# -------------------------
# Tree sync
# -------------------------

@dataclass
class SyncResult:
    copied: list[str] = field(default_factory=list)
    backups: list[Path] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    unchanged: int = 0
    in_sync: list[str] = field(default_factory=list)
    orphans: list[str] = field(default_factory=list)


def backup_path(dst: Path, when: dt.datetime) -> Path:
    return dst.with_name(f"{dst.name}{BACKUP_INFIX}{when.strftime(BACKUP_STAMP)}")


def needs_copy(src: Path, dst: Path) -> bool:
    """
    A copy is due when dst is missing or its mtime differs from src. Copies
    and rewrites both carry the source mtime over, so it doubles as the
    "synced from this version" signature.
    """
    try:
        s = src.stat()
    except OSError as e:
        raise SourceReadError(f"cannot stat {src}: {e}") from e
    try:
        d = dst.stat()
    except FileNotFoundError:
        return True
    except OSError as e:
        raise DestinationWriteError(f"cannot stat {dst}: {e}") from e
    return s.st_mtime_ns != d.st_mtime_ns


def _read_source(src: Path) -> bytes:
    return src.read_bytes()


def copy_with_backup(
    src: Path,
    dst: Path,
    ctx: Optional[RunContext] = None,
    when: Optional[dt.datetime] = None,
) -> Optional[Path]:
    """
    Copy src over dst so that readers only ever see the old or the new file.
    An existing dst is first copied to <dst>.backup-<stamp>; the backup path is
    returned (None when dst did not exist).

    Raises SourceReadError when src cannot be read and DestinationWriteError
    for anything that fails on the destination side.
    """
    try:
        data = _read_source(src)
    except OSError as e:
        raise SourceReadError(f"cannot read {src}: {e}") from e

    try:
        ensure_parent(dst)
        fd, tmp = _new_temp(dst, ctx)
    except OSError as e:
        raise DestinationWriteError(f"cannot stage {dst}: {e}") from e

    backup = None
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        shutil.copystat(src, tmp)
        if dst.exists():
            backup = backup_path(dst, when or dt.datetime.now())
            shutil.copy2(dst, backup)
        _commit_temp(tmp, dst, ctx)
    except OSError as e:
        _discard_temp(tmp, ctx)
        raise DestinationWriteError(f"cannot write {dst}: {e}") from e
    except BaseException:
        _discard_temp(tmp, ctx)
        raise
    return backup


def sweep_stale_temps(dest_root: Path, logger: logging.Logger) -> int:
    """Remove temp files an interrupted run left beside destination files."""
    removed = 0
    for tmp in dest_root.rglob(f".*{TRACKED_EXT}.*{TEMP_SUFFIX}"):
        if not tmp.is_file():
            continue
        try:
            tmp.unlink()
        except OSError as e:
            log_action(logger, "SWEEP", f"could not remove {tmp} | {e}", path=tmp, level=logging.WARNING)
            continue
        removed += 1
        log_action(logger, "SWEEP", f"stale temp {tmp}", path=tmp)
    return removed


def sync_tree(
    source_root: Path,
    dest_root: Path,
    logger: logging.Logger,
    ctx: Optional[RunContext] = None,
    matcher: Optional[TrackedMatcher] = None,
) -> SyncResult:
    if not source_root.is_dir():
        raise SourceNotFoundError(f"Source directory '{source_root}' does not exist")
    if matcher is None:
        matcher = ctx.matcher if ctx else TrackedMatcher(source_root)

    try:
        dest_root.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise DestinationWriteError(f"cannot create destination {dest_root}: {e}") from e

    logger.info("SYNC: start %s -> %s", source_root, dest_root)
    sweep_stale_temps(dest_root, logger)

    result = SyncResult()
    when = dt.datetime.now()
    seen: set[str] = set()

    for src, rel in iter_tracked(source_root, matcher):
        seen.add(rel)
        dst = dest_root / rel
        try:
            if not needs_copy(src, dst):
                result.unchanged += 1
                result.in_sync.append(rel)
                continue
            backup = copy_with_backup(src, dst, ctx, when)
        except SourceReadError as e:
            result.failed[rel] = str(e)
            log_action(logger, "COPY", f"SKIP unreadable {rel} | {e}", path=src, level=logging.ERROR)
            continue

        if backup is not None:
            result.backups.append(backup)
            log_action(logger, "BACKUP", f"{backup}", path=backup)
        result.copied.append(rel)
        log_action(logger, "COPY", f"{src} -> {dst}", path=dst)

    result.orphans = [rel for _, rel in iter_tracked(dest_root, matcher) if rel not in seen]
    if result.orphans:
        logger.info("SYNC: %d destination-only file(s) left in place", len(result.orphans))

    logger.info(
        "SYNC: done (%d copied, %d unchanged, %d failed)",
        len(result.copied), result.unchanged, len(result.failed),
    )
    return result


# -------------------------
# Record transform
# -------------------------

def utc_timestamp(now: Optional[dt.datetime] = None) -> str:
    now = now or dt.datetime.now(dt.timezone.utc)
    return now.astimezone(dt.timezone.utc).strftime(REV_STAMP)


def transform_lines(lines: Iterable[str], rev: str) -> Iterator[str]:
    """
    Lock the first N: line (marker goes right before its first ';') and stamp
    every REV: line with rev. Everything else, line endings included, is
    passed through as is.
    """
    name_seen = False
    for line in lines:
        if not name_seen and line.startswith("N:"):
            name_seen = True
            pos = line.find(";", 2)
            if pos != -1:
                line = line[:pos] + LOCK_MARKER + line[pos:]
        elif line.startswith("REV:"):
            body = line.rstrip("\r\n")
            line = f"REV:{rev}{line[len(body):]}"
        yield line


def is_locked(path: Path) -> bool:
    return LOCK_MARKER.encode("utf-8") in path.read_bytes()


def transform_file(path: Path, ctx: Optional[RunContext] = None, now: Optional[dt.datetime] = None) -> bool:
    """
    Rewrite one record in place. Returns False without writing when the lock
    marker is already there. The file keeps its mode and mtime.
    """
    if is_locked(path):
        return False

    rev = utc_timestamp(now)
    fd, tmp = _new_temp(path, ctx)
    try:
        with os.fdopen(fd, "w", encoding="utf-8", errors="surrogateescape", newline="") as out, \
                path.open("r", encoding="utf-8", errors="surrogateescape", newline="") as src:
            out.writelines(transform_lines(src, rev))
        shutil.copystat(path, tmp)
        _commit_temp(tmp, path, ctx)
    except BaseException:
        _discard_temp(tmp, ctx)
        raise
    return True


# -------------------------
# Worker pool
# -------------------------

@dataclass
class ProcessResult:
    modified: list[Path] = field(default_factory=list)
    unchanged: list[Path] = field(default_factory=list)
    failed: dict[Path, str] = field(default_factory=dict)


def process_files(
    paths: Iterable[Path],
    logger: logging.Logger,
    ctx: Optional[RunContext] = None,
    workers: int = DEFAULT_WORKERS,
    now: Optional[dt.datetime] = None,
) -> ProcessResult:
    """
    Run transform_file over paths on at most `workers` threads and wait for
    all of them. Duplicate paths are dropped first, so no file is handled by
    two workers.
    """
    if workers < 1:
        raise ValidationError(f"workers must be at least 1, got {workers}")

    unique = list(dict.fromkeys(paths))
    result = ProcessResult()
    if not unique:
        return result

    now = now or dt.datetime.now(dt.timezone.utc)
    logger.info("PROCESS: %d file(s) on %d worker(s)", len(unique), workers)

    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="vcf") as executor:
        futures = {executor.submit(transform_file, p, ctx, now): p for p in unique}

        for future in as_completed(futures):
            path = futures[future]
            try:
                changed = future.result()
            except OSError as e:
                result.failed[path] = str(e)
                log_action(logger, "LOCK", f"ERROR {path} | {e}", path=path, level=logging.ERROR)
                continue
            if changed:
                result.modified.append(path)
                log_action(logger, "LOCK", f"{path}", path=path)
            else:
                result.unchanged.append(path)
                logger.debug("LOCK | already locked %s", path)

    logger.info("PROCESS: done (%d locked, %d failed)", len(result.modified), len(result.failed))
    return result


@dataclass
class PassResult:
    synced: SyncResult
    processed: Optional[ProcessResult] = None


def _awaiting_lock(path: Path) -> bool:
    try:
        return not is_locked(path)
    except OSError:
        # unreadable now; transform_file reports it
        return True


def run_pass(ctx: RunContext, logger: logging.Logger) -> PassResult:
    """
    Sync, then (with processing on) lock every copied file plus every in-sync
    destination record still missing the marker. The second group covers
    records whose transform failed or was cut short on an earlier pass, since
    their mtime matches the source and they are not copied again.
    """
    synced = sync_tree(ctx.source_root, ctx.dest_root, logger, ctx=ctx)
    processed = None
    if ctx.process:
        targets = [ctx.dest_root / rel for rel in synced.copied]
        targets += [p for p in (ctx.dest_root / rel for rel in synced.in_sync) if _awaiting_lock(p)]
        processed = process_files(targets, logger, ctx=ctx, workers=ctx.workers)
    return PassResult(synced=synced, processed=processed)


# -------------------------
# Watch loop
# -------------------------

class LoopState(enum.Enum):
    IDLE = "idle"
    DEBOUNCING = "debouncing"
    RUNNING = "running"


@dataclass(frozen=True)
class ChangeEvent:
    path: Path
    kind: str


class SyncLoop:
    """
    Turns a stream of change events into sync passes. Events are queued by
    notify() from any thread; run() is the only consumer, so passes never
    overlap. Each event restarts the debounce window and the pass runs once
    the window passes quietly.
    """

    def __init__(
        self,
        run_pass: Callable[[], object],
        logger: logging.Logger,
        debounce_sec: float = DEFAULT_DEBOUNCE_SEC,
        exit_on_error: bool = False,
        poll_sec: float = 0.5,
    ):
        self.run_pass = run_pass
        self.logger = logger
        self.debounce_sec = max(0.0, float(debounce_sec))
        self.exit_on_error = exit_on_error
        self.poll_sec = poll_sec
        self.state = LoopState.IDLE
        self.passes = 0
        self._events: queue.Queue[Optional[ChangeEvent]] = queue.Queue()
        self._stop = threading.Event()

    def notify(self, event: ChangeEvent) -> None:
        self._events.put(event)

    def stop(self) -> None:
        self._stop.set()
        self._events.put(None)

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def _next(self, timeout: float) -> Optional[ChangeEvent]:
        try:
            return self._events.get(timeout=timeout)
        except queue.Empty:
            return None

    def run_now(self) -> None:
        """Run one pass right away, applying the error policy."""
        self.state = LoopState.RUNNING
        try:
            self.run_pass()
        except VcfSyncError as e:
            if self.exit_on_error:
                raise
            self.logger.error("PASS: failed, still watching | %s", e)
        finally:
            self.passes += 1
            self.state = LoopState.IDLE

    def run(self) -> None:
        self.logger.info("WATCH: started (debounce=%.1fs)", self.debounce_sec)
        while not self._stop.is_set():
            self.state = LoopState.IDLE
            last = self._next(self.poll_sec)
            if last is None:
                continue

            self.state = LoopState.DEBOUNCING
            count = 1
            while not self._stop.is_set():
                event = self._next(self.debounce_sec)
                if event is None:
                    break
                last = event
                count += 1
            if self._stop.is_set():
                break

            log_action(self.logger, "CHANGE", f"{count} event(s), last {last.kind} {last.path}", path=last.path)
            self.run_now()

        self.state = LoopState.IDLE
        self.logger.info("WATCH: stopped")


def load_observer() -> type[BaseObserver]:
    """watchdog is only needed for -w; a missing install is a DependencyError."""
    try:
        from watchdog.observers import Observer
    except ImportError as e:
        raise DependencyError(f"watchdog is not installed ({e}); pip install watchdog") from e
    return Observer


def make_event_handler(matcher: TrackedMatcher, loop: SyncLoop):
    """Build the watchdog handler that forwards changes to tracked files into loop."""
    try:
        from watchdog.events import FileSystemEventHandler
    except ImportError as e:
        raise DependencyError(f"watchdog is not installed ({e}); pip install watchdog") from e

    class VcfEventHandler(FileSystemEventHandler):
        def on_any_event(self, event: FileSystemEvent) -> None:
            if event.is_directory or event.event_type not in WATCH_EVENT_KINDS:
                return
            raw = event.dest_path if event.event_type == "moved" else event.src_path
            path = Path(os.fsdecode(raw))
            if matcher.is_tracked(path):
                loop.notify(ChangeEvent(path=path, kind=event.event_type))

    return VcfEventHandler()


def start_observer(handler, root: Path, observer_cls: Optional[type[BaseObserver]] = None) -> BaseObserver:
    observer = (observer_cls or load_observer())()
    try:
        observer.schedule(handler, str(root), recursive=True)
        observer.start()
    except OSError as e:
        raise DependencyError(f"cannot watch {root}: {e}") from e
    return observer


def watch_directory(
    ctx: RunContext,
    logger: logging.Logger,
    loop: SyncLoop,
    observer_cls: Optional[type[BaseObserver]] = None,
) -> None:
    """
    Start watching before the initial pass so nothing changed in between is
    missed, then serve events until loop.stop() or an interrupt.
    """
    observer = start_observer(make_event_handler(ctx.matcher, loop), ctx.source_root, observer_cls)
    try:
        logger.info("WATCH: initial sync")
        loop.run_now()
        loop.run()
    finally:
        loop.stop()
        observer.stop()
        observer.join(timeout=10)


# -------------------------
# Main
# -------------------------

def _raise_interrupt(signum, frame) -> None:
    raise KeyboardInterrupt


def main(argv: Optional[list[str]] = None) -> int:
    """
    CLI entry point; returns the exit code. SIGTERM is turned into the same
    graceful shutdown as Ctrl+C only when called on the main thread (Python
    only lets that thread install signal handlers). Embedding callers on other
    threads get no cleanup on SIGTERM and must stop the run themselves.
    """
    args = parse_args(sys.argv[1:] if argv is None else argv)

    try:
        cfg = build_effective_config(args)
    except ValidationError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return 1

    logger = setup_logger(cfg.log_dir, verbose=cfg.verbose)
    for problem in cfg.warnings:
        logger.warning("Config: %s", problem)

    try:
        source, dest = validate_paths(cfg.source_dir, cfg.dest_dir)
    except ValidationError as e:
        logger.error("Error: %s", e)
        return 1

    logger.info("Source: %s", source)
    logger.info("Dest  : %s", dest)

    ctx = RunContext(
        source_root=source,
        dest_root=dest,
        process=cfg.process,
        workers=cfg.workers,
        matcher=TrackedMatcher(source, cfg.excludes),
        lock_dir=cfg.lock_dir,
    )

    on_main_thread = threading.current_thread() is threading.main_thread()
    previous = signal.signal(signal.SIGTERM, _raise_interrupt) if on_main_thread else None
    try:
        observer_cls = load_observer() if cfg.watch else None
        with ctx:
            if ctx.stale_scratch:
                log_action(logger, "SWEEP", f"removed {len(ctx.stale_scratch)} scratch dir(s) of killed runs")
            if cfg.watch:
                loop = SyncLoop(
                    lambda: run_pass(ctx, logger),
                    logger,
                    debounce_sec=cfg.debounce_sec,
                    exit_on_error=cfg.exit_on_error,
                )
                logger.info("Starting watcher... (Ctrl+C to stop)")
                watch_directory(ctx, logger, loop, observer_cls)
            else:
                run_pass(ctx, logger)
    except AlreadyRunningError as e:
        logger.error("Error: %s", e)
        return 1
    except DependencyError as e:
        logger.error("Error: file watching is unavailable: %s", e)
        return 1
    except VcfSyncError as e:
        logger.error("Sync failed: %s", e)
        return 1
    except KeyboardInterrupt:
        logger.info("Stopped.")
    finally:
        if previous is not None:
            signal.signal(signal.SIGTERM, previous)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
