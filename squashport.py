#!/usr/bin/env python3
"""
squashport - keep a package repository tree in a squashfs image

Two roles:
- build: refresh the tree in a scratch area, squash it, publish the image
- fetch: copy a published image from a server and activate it locally

Either way the live tree is swapped by unmounting it (and everything mounted
or NFS-exported beneath it), replacing the image file with a single rename,
and mounting it back, restoring the nested mounts and exports afterwards.
"""

from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Callable, Iterator, Literal, Union
import argparse
import atexit
import fcntl
import hashlib
import importlib.util
import os
import re
import shutil
import signal
import subprocess
import sys
import tempfile


PROGNAME = "squashport"

LOCK_DIR = Path("/run/lock")
DEFAULT_PORTDIR = Path("/var/db/repos/gentoo")

SIGNALS = (signal.SIGHUP, signal.SIGINT, signal.SIGTERM)

# What running an external command can raise
COMMAND_ERRORS = (subprocess.SubprocessError, OSError)

StagingKind = Literal["tmpfs", "device", "directory"]
STAGING_KINDS = ("tmpfs", "device", "directory")
Role = Literal["build", "fetch", "status"]


# =============================================================================
# Output
# =============================================================================

QUIET, VERBOSE, DEBUG = 0, 1, 2
_verbosity = QUIET


def set_verbosity(level: int) -> None:
    """Set how chatty log output is (QUIET, VERBOSE or DEBUG)."""
    global _verbosity
    _verbosity = level


def log(message: str) -> None:
    print(message, flush=True)


def verbose(message: str) -> None:
    if _verbosity >= VERBOSE:
        print(message, flush=True)


def debug(message: str) -> None:
    if _verbosity >= DEBUG:
        print(message, flush=True)


def warn(message: str) -> None:
    print(f"{PROGNAME}: warning: {message}", file=sys.stderr, flush=True)


def error(message: str) -> None:
    """Print the single diagnostic line for a fatal error."""
    print(f"{PROGNAME}: {message}", file=sys.stderr, flush=True)


# =============================================================================
# Errors
# =============================================================================

class SwapError(Exception):
    """Base class for everything squashport reports to the user."""


class ConfigurationError(SwapError):
    """A required path is unset or unreachable."""


class ToolMissingError(SwapError):
    """A required external program cannot be found."""


class BusyError(SwapError):
    """Another squashport process holds the lock for the target path."""


class TransferError(SwapError):
    """Fetching or copying an image produced no usable bytes."""


class BuildFailure(SwapError):
    """The sync, extract or compress step failed."""


class TeardownFailure(SwapError):
    """A mount or export could not be removed before the build."""


class RestoreFailure(SwapError):
    """A single mount or export could not be put back."""


class AtomicReplaceFailure(SwapError):
    """The new image could not be renamed over the old one."""


class Interrupted(Exception):
    """Raised in place of the default action of SIGHUP, SIGINT and SIGTERM."""

    def __init__(self, signum: int):
        self.signum = signum
        super().__init__(f"interrupted by {signal.Signals(signum).name}")


def _failure(cls: type, message: str, cause: BaseException) -> SwapError:
    """Build an error of type cls chained to the exception that caused it."""
    failure = cls(message)
    failure.__cause__ = cause
    return failure


# =============================================================================
# Configuration
# =============================================================================

def _env_path(name: str, default: Path | None = None) -> Path | None:
    value = os.environ.get(name)
    return Path(value) if value else default


def _which_command(name: str) -> list[str] | None:
    path = shutil.which(name)
    return [path] if path else None


@dataclass
class Settings:
    """
    Everything a run needs to know: paths, collaborator programs and options.

    Defaults follow a stock Gentoo layout. Build up with helper methods in a
    config module, then let command line flags override.
    """

    # Live tree and the image backing it (image defaults to <target>.sqfs)
    target: Path | None = field(default_factory=lambda: _env_path("PORTDIR", DEFAULT_PORTDIR))
    image: Path | None = None

    # Where the fetch role picks the image up (may use rsync host:path syntax)
    source: str | None = field(default_factory=lambda: os.environ.get("SQUASHED_SRC"))

    # Upstream sync for the build role
    sync: bool = True
    # Build role swaps the image in under target; off only publishes the image
    mount: bool = True
    repo: str = "gentoo"
    sync_command: list[str] = field(default_factory=lambda: ["emaint", "sync", "--repo", "{repo}"])
    bootstrap_command: list[str] = field(default_factory=lambda: ["emerge-webrsync"])

    # Scratch area the build role assembles the new tree in
    staging_kind: StagingKind = "tmpfs"
    staging_source: str | None = None
    staging_options: list[str] = field(default_factory=list)
    staging_parent: Path | None = None

    mksquashfs: str = "mksquashfs"
    mksquashfs_opts: list[str] = field(default_factory=lambda: ["-comp", "gzip", "-no-progress", "-noappend"])
    unsquashfs: str = "unsquashfs"
    unsquashfs_opts: list[str] = field(default_factory=lambda: ["-f", "-n"])
    rsync: str = "rsync"
    rsync_opts: list[str] = field(default_factory=lambda: ["-a", "--exclude=/distfiles/", "--exclude=/packages/"])
    fetch_opts: list[str] = field(default_factory=lambda: ["-q"])

    # Optional collaborators: None disables them
    index_command: list[str] | None = field(default_factory=lambda: _which_command("eix-update"))
    exportfs: str | None = field(default_factory=lambda: shutil.which("exportfs"))

    image_mount_options: list[str] = field(default_factory=lambda: ["-o", "loop,ro", "-t", "squashfs"])
    digest: str = "md5"
    lock_dir: Path = LOCK_DIR
    timeout: float | None = None

    # -------------------------------------------------------------------------
    # Builder methods
    # -------------------------------------------------------------------------

    def set_target(self, target: Path | str, image: Path | str | None = None) -> "Settings":
        """Set the live tree path and, optionally, its image file."""
        self.target = Path(target)
        if image is not None:
            self.image = Path(image)
        return self

    def use_staging(self, kind: StagingKind, source: str | None = None, *options: str) -> "Settings":
        """Choose the scratch area: tmpfs, a named device, or a plain directory."""
        self.staging_kind = kind
        self.staging_source = source
        self.staging_options = list(options)
        return self

    def add_mksquashfs_opts(self, *opts: str) -> "Settings":
        self.mksquashfs_opts.extend(opts)
        return self

    def add_unsquashfs_opts(self, *opts: str) -> "Settings":
        self.unsquashfs_opts.extend(opts)
        return self

    def add_rsync_opts(self, *opts: str) -> "Settings":
        self.rsync_opts.extend(opts)
        return self

    def disable_sync(self) -> "Settings":
        self.sync = False
        return self

    def disable_index(self) -> "Settings":
        self.index_command = None
        return self

    def disable_mount(self) -> "Settings":
        """Publish the image without touching what is mounted at the target."""
        self.mount = False
        return self

    # -------------------------------------------------------------------------
    # Derived values and checks
    # -------------------------------------------------------------------------

    @property
    def image_file(self) -> Path | None:
        """The backing image path, defaulting to <target>.sqfs."""
        if self.image is not None:
            return self.image
        if self.target is None:
            return None
        return self.target.with_name(self.target.name + ".sqfs")

    def required_tools(self, role: Role) -> list[str]:
        """External programs that must exist before a role may start."""
        tools = ["findmnt", "mount", "umount"]
        if role == "build":
            tools.append(self.mksquashfs)
            # whichever way populate will start the tree
            image = self.image_file
            if image is not None and image.is_file():
                tools.append(self.unsquashfs)
            else:
                tools += [self.rsync, self.bootstrap_command[0]]
            if self.sync:
                tools.append(self.sync_command[0])
        elif role == "fetch":
            tools.append(self.rsync)
        else:
            tools = ["findmnt"]
        return tools

    def validate(self, role: Role) -> None:
        """
        Pre-flight checks; raise before anything is changed on the system.

        Also resolves target, since the mount table only lists real paths.
        """
        if self.target is None:
            raise ConfigurationError("$PORTDIR not set")
        if not self.target.is_dir():
            raise ConfigurationError(f"'{self.target}' is not a directory")
        self.target = self.target.resolve()

        image = self.image_file
        if image is None or not image.name:
            raise ConfigurationError("Destination may not be empty")
        if not image.is_absolute():
            raise ConfigurationError("Destination must be a fully-qualified path")

        if role == "fetch" and not self.source:
            raise ConfigurationError("Source file may not be empty")
        if self.staging_kind not in STAGING_KINDS:
            raise ConfigurationError(f"Unknown staging kind '{self.staging_kind}'")
        if self.staging_kind == "device" and not self.staging_source:
            raise ConfigurationError("A device staging area needs a mount source")

        for tool in self.required_tools(role):
            if shutil.which(tool) is None:
                raise ToolMissingError(f"{tool} cannot be found")


def load_config_module(config_path: Path) -> Settings:
    """Load a config module and call its configure()."""
    if not config_path.exists():
        raise ConfigurationError(f"Config file not found: {config_path}")

    spec = importlib.util.spec_from_file_location("squashport_config", config_path)
    if spec is None or spec.loader is None:
        raise ConfigurationError(f"Could not load config module: {config_path}")

    module = importlib.util.module_from_spec(spec)
    try:
        spec.loader.exec_module(module)
    except Exception as e:
        raise ConfigurationError(f"Failed to execute config module {config_path}: {e}") from e

    if not hasattr(module, "configure"):
        raise ConfigurationError(f"Config module missing configure() function: {config_path}")

    settings = module.configure()
    if not isinstance(settings, Settings):
        raise ConfigurationError(f"configure() in {config_path} must return a Settings object")
    return settings


# =============================================================================
# External commands
# =============================================================================

def run(cmd, check=True, capture_output=False, env=None, timeout=None) -> str:
    """Run a command and optionally capture output."""
    # Clean environment: parse tool output in the C locale
    full_env = {k: v for k, v in os.environ.items()
                if not k.startswith("LC_") and k not in ("LANGUAGE",)}
    full_env["LC_ALL"] = "C"
    if env:
        full_env.update(env)

    cmd = [str(c) for c in cmd]
    cmd_str = ' '.join(cmd)
    debug(f"Running: {cmd_str}")
    try:
        if capture_output:
            result = subprocess.run(cmd, check=check, capture_output=True, text=True,
                                    env=full_env, timeout=timeout)
            return result.stdout.strip()
        subprocess.run(cmd, check=check, env=full_env, timeout=timeout)
        return ""
    except subprocess.CalledProcessError as e:
        warn(f"command failed: {cmd_str} (exit code {e.returncode})")
        if e.stderr:
            print(e.stderr.strip(), file=sys.stderr)
        raise
    except subprocess.TimeoutExpired:
        warn(f"command timed out after {timeout}s: {cmd_str}")
        raise


def format_command(cmd: list[str], **values) -> list[str]:
    """Substitute {name} placeholders in every argument of cmd."""
    result = []
    for arg in cmd:
        for key, value in values.items():
            arg = arg.replace("{" + key + "}", str(value))
        result.append(arg)
    return result


def is_within(path: Path, parent: Path) -> bool:
    """True if path is parent itself or nested beneath it."""
    return path == parent or parent in path.parents


# =============================================================================
# Mount table
# =============================================================================

FINDMNT = ["findmnt", "--list", "--raw", "--noheadings",
           "--output", "TARGET,SOURCE,FSTYPE,OPTIONS,FSROOT,MAJ:MIN"]

# Per-mount flags a bind mount takes from its origin until it is remounted
BIND_FLAGS = ("ro", "nosuid", "nodev", "noexec", "noatime", "nodiratime", "relatime", "strictatime")
RESTRICTING_FLAGS = ("ro", "nosuid", "nodev", "noexec")

# findmnt appends [fsroot] to the source of a mount that isn't the filesystem root
_SOURCE_FSROOT = re.compile(r"\[[^\]]*\]$")


@dataclass(frozen=True)
class MountRecord:
    """One line of the mount table: path source fstype options."""
    path: Path
    source: str
    fstype: str
    options: str
    fsroot: str = "/"
    device: str = ""
    bind_origin: Path | None = None

    @property
    def depth(self) -> int:
        return len(self.path.parts)

    def mount_command(self) -> list[str]:
        if self.bind_origin is not None:
            return ["mount", "--bind", str(self.bind_origin), str(self.path)]
        return ["mount", "-t", self.fstype, "-o", self.options, self.source, str(self.path)]

    def remount_command(self) -> list[str] | None:
        """The remount that gives a bind mount back its own ro/nosuid/nodev/noexec."""
        if self.bind_origin is None:
            return None
        flags = [opt for opt in self.options.split(",") if opt in BIND_FLAGS]
        if not any(flag in RESTRICTING_FLAGS for flag in flags):
            return None
        return ["mount", "-o", ",".join(["remount", "bind", *flags]), str(self.path)]

    def __str__(self) -> str:
        if self.bind_origin is not None:
            return f"{self.path} {self.bind_origin} bind {self.options}"
        return f"{self.path} {self.source} {self.fstype} {self.options}"


def _unescape_raw(value: str) -> str:
    """Undo findmnt --raw escaping (\\xHH for blanks and unprintables)."""
    raw = re.sub(rb"\\x([0-9a-fA-F]{2})", lambda m: bytes([int(m.group(1), 16)]),
                 value.encode("utf-8", "surrogateescape"))
    return raw.decode("utf-8", "surrogateescape")


def parse_findmnt(output: str) -> list[MountRecord]:
    """Parse findmnt --raw TARGET,SOURCE,FSTYPE,OPTIONS,FSROOT,MAJ:MIN output, in table order."""
    records = []
    for line in output.splitlines():
        parts = line.split()
        if len(parts) != 6:
            debug(f"ignoring mount table line: {line!r}")
            continue
        path, source, fstype, options, fsroot, device = (_unescape_raw(p) for p in parts)
        source = _SOURCE_FSROOT.sub("", source)
        records.append(MountRecord(Path(path), source, fstype, options, fsroot, device))
    return records


def resolve_loop_source(record: MountRecord, sysfs: Path = Path("/sys")) -> MountRecord:
    """
    Replace a /dev/loopN source with the file behind it.

    Unmounting a loop-mounted file releases the loop device, so the device
    name alone cannot be mounted again.
    """
    if not record.source.startswith("/dev/loop"):
        return record
    backing = sysfs / "block" / Path(record.source).name / "loop" / "backing_file"
    try:
        backing_file = backing.read_text().strip()
    except OSError:
        return record
    if not backing_file or backing_file.endswith("(deleted)"):
        return record
    options = record.options.split(",")
    if "loop" not in options:
        options.insert(0, "loop")
    return replace(record, source=backing_file, options=",".join(options))


def resolve_bind_origin(record: MountRecord, table: list[MountRecord],
                        torn_down: Path | None = None) -> MountRecord:
    """
    Work out which directory a mount of a subtree was bound from.

    A record whose fsroot is not / is a bind mount or a subvolume. When the
    same device is mounted elsewhere at a root containing that fsroot, the
    record comes back with mount --bind from there, preferring origins
    outside torn_down. Otherwise (a btrfs subvolume, say) it is mounted
    again from its source and options.
    """
    if record.fsroot == "/" or not record.device:
        return record
    fsroot = PurePosixPath(record.fsroot)
    origins = []
    for other in table:
        if other.path == record.path or other.device != record.device:
            continue
        try:
            rel = fsroot.relative_to(other.fsroot)
        except ValueError:
            continue
        origins.append(other.path / rel)
    if not origins:
        return record
    if torn_down is not None:
        origins.sort(key=lambda origin: is_within(origin, torn_down))
    return replace(record, bind_origin=origins[0])


class MountStateCapture:
    """Snapshot, unmount and remount everything mounted at or under a path."""

    def __init__(self, sysfs: Path = Path("/sys")):
        self.sysfs = sysfs

    def list_mounts(self) -> list[MountRecord]:
        return parse_findmnt(run(FINDMNT, capture_output=True))

    def is_mounted(self, path: Path) -> bool:
        path = Path(path)
        return any(record.path == path for record in self.list_mounts())

    def capture(self, path: Path) -> list[MountRecord]:
        """
        Return path's own mount (if any) and every mount beneath it.

        Ordered shallow to deep. Mounts at equal depth keep mount table order,
        so filesystems stacked on one directory stay bottom-first.
        """
        path = Path(path)
        table = self.list_mounts()
        records = [resolve_bind_origin(resolve_loop_source(record, self.sysfs), table, path)
                   for record in table if is_within(record.path, path)]
        return sorted(records, key=lambda record: record.depth)

    def teardown(self, records: list[MountRecord], done: list[MountRecord] | None = None):
        """Unmount records deepest first; each unmounted record is appended to done."""
        for record in reversed(records):
            verbose(f"unmounting {record.path}")
            # a signal must not land between the unmount and its record
            with signals_blocked():
                try:
                    run(["umount", record.path])
                except COMMAND_ERRORS as e:
                    raise TeardownFailure(f"cannot unmount {record.path}") from e
                if done is not None:
                    done.append(record)

    def restore(self, records: list[MountRecord]) -> list[tuple[MountRecord, RestoreFailure]]:
        """Mount records in the given order, carrying on past failures."""
        errors = []
        for record in records:
            verbose(f"mounting {record.path}")
            try:
                run(record.mount_command())
                remount = record.remount_command()
                if remount is not None:
                    run(remount)
            except COMMAND_ERRORS as e:
                origin = record.bind_origin or record.source
                failure = _failure(RestoreFailure, f"cannot remount {record.path} from {origin}", e)
                warn(str(failure))
                errors.append((record, failure))
        return errors


# =============================================================================
# Export table
# =============================================================================

# host(options), bare host, or (options) with the host left out
_CLAUSE = re.compile(r"([^\s()]*)\(([^)]*)\)|([^\s()]+)")


@dataclass(frozen=True)
class ExportRecord:
    """One host's export of a path, with its options exactly as listed."""
    path: Path
    host: str
    options: str

    @property
    def depth(self) -> int:
        return len(self.path.parts)

    @property
    def spec(self) -> str:
        """The host:path form exportfs takes."""
        return f"{self.host}:{self.path}"

    def __str__(self) -> str:
        return f"{self.path} {format_export_clause(self.host, self.options)}"


def parse_export_clauses(text: str) -> list[tuple[str, str]]:
    """
    Split 'host1(opts1) host2(opts2) ...' into (host, options) pairs.

    A clause without parentheses has empty options; a clause without a host
    exports to everybody and gets the wildcard host '*'.
    """
    clauses = []
    for m in _CLAUSE.finditer(text):
        if m.group(3) is not None:
            clauses.append((m.group(3), ""))
        else:
            clauses.append((m.group(1) or "*", m.group(2)))
    return clauses


def format_export_clause(host: str, options: str) -> str:
    """Inverse of parse_export_clauses for a single pair."""
    return f"{host}({options})" if options else host


def _unescape_octal(value: str) -> str:
    return re.sub(r"\\([0-7]{3})", lambda m: chr(int(m.group(1), 8)), value)


def parse_exports(output: str) -> list[ExportRecord]:
    """
    Parse exportfs listing output into records, one per host.

    Long paths may be printed alone with their clauses on the following
    indented line.
    """
    records = []
    path = None
    for line in output.splitlines():
        if not line.strip() or line.lstrip().startswith("#"):
            continue
        if line[0].isspace() and path is not None:
            clauses = line
        else:
            fields = line.split(None, 1)
            path = Path(_unescape_octal(fields[0]))
            clauses = fields[1] if len(fields) > 1 else ""
        for host, options in parse_export_clauses(clauses):
            records.append(ExportRecord(path, host, options))
    return records


class ExportStateCapture:
    """Snapshot, remove and re-add NFS exports at or under a path."""

    def __init__(self, exportfs: str | None = "exportfs"):
        # None means there is no NFS server here, so nothing is ever exported
        self.exportfs = exportfs

    def list_exports(self) -> list[ExportRecord]:
        if self.exportfs is None:
            return []
        return parse_exports(run([self.exportfs, "-s"], capture_output=True))

    def capture(self, path: Path) -> list[ExportRecord]:
        """Return the exports of path and everything beneath it, shallow to deep."""
        path = Path(path)
        records = [record for record in self.list_exports() if is_within(record.path, path)]
        return sorted(records, key=lambda record: record.depth)

    def teardown(self, records: list[ExportRecord], done: list[ExportRecord] | None = None):
        """Un-export records deepest path first; each removed record is appended to done."""
        for record in reversed(records):
            verbose(f"de-exporting {record.spec}")
            with signals_blocked():
                try:
                    run([self.exportfs, "-u", record.spec])
                except COMMAND_ERRORS as e:
                    raise TeardownFailure(f"cannot un-export {record.spec}") from e
                if done is not None:
                    done.append(record)

    def restore(self, records: list[ExportRecord]) -> list[tuple[ExportRecord, RestoreFailure]]:
        """Re-export records in the given order with their original options."""
        errors = []
        for record in records:
            verbose(f"re-exporting {record.spec}")
            cmd = [self.exportfs]
            if record.options:
                cmd += ["-o", record.options]
            cmd.append(record.spec)
            try:
                run(cmd)
            except COMMAND_ERRORS as e:
                failure = _failure(RestoreFailure, f"cannot re-export {record.spec}", e)
                warn(str(failure))
                errors.append((record, failure))
        return errors


# =============================================================================
# Change detection
# =============================================================================

class Change(Enum):
    UNCHANGED = "unchanged"
    CHANGED = "changed"


class ChangeDetector:
    """Decide whether a candidate image differs from the current one by content."""

    def __init__(self, algorithm: str = "md5", chunk_size: int = 1 << 20):
        self.algorithm = algorithm
        self.chunk_size = chunk_size

    def fingerprint(self, path: Path) -> str:
        """Hex digest of a file's bytes, read in chunks."""
        digest = hashlib.new(self.algorithm, usedforsecurity=False)
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(self.chunk_size), b""):
                digest.update(chunk)
        return digest.hexdigest()

    def compare(self, current: Path, candidate: Path) -> Change:
        new = self.fingerprint(candidate)
        if not Path(current).exists():
            debug(f"no current image at {current}")
            return Change.CHANGED
        old = self.fingerprint(current)
        debug(f"old fingerprint: {old} new fingerprint: {new}")
        return Change.UNCHANGED if old == new else Change.CHANGED


# =============================================================================
# Staging
# =============================================================================

@dataclass
class StagingContext:
    """A scratch root and what has to be undone to get rid of it."""
    root: Path
    kind: StagingKind
    source: str | None = None
    options: list[str] = field(default_factory=list)
    mounted: bool = False
    scratch: list[Path] = field(default_factory=list)


class StagingArea:
    """Provides the writable root a new tree is assembled in."""

    def __init__(self, settings: Settings, mounts: MountStateCapture):
        self.settings = settings
        self.mounts = mounts
        self.context: StagingContext | None = None

    @property
    def root(self) -> Path:
        if self.context is None:
            raise RuntimeError("staging area has not been acquired")
        return self.context.root

    def acquire(self, kind: StagingKind | None = None, source: str | None = None,
                options: list[str] | None = None, parent: Path | None = None) -> Path:
        """
        Create the scratch root and mount it according to kind.

        - tmpfs: memory backed
        - device: mounted from an explicit source with fstype auto
        - directory: plain directory, nothing mounted
        """
        kind = kind or self.settings.staging_kind
        source = source or self.settings.staging_source
        options = self.settings.staging_options if options is None else options
        parent = parent or self.settings.staging_parent

        if self.context is not None:
            raise RuntimeError(f"staging area already acquired at {self.context.root}")
        if kind not in STAGING_KINDS:
            raise ConfigurationError(f"Unknown staging kind '{kind}'")
        if kind == "device" and not source:
            raise ConfigurationError("A device staging area needs a mount source")

        if parent is not None:
            parent.mkdir(parents=True, exist_ok=True)
        root = Path(tempfile.mkdtemp(prefix=f"{PROGNAME}-", dir=parent))
        self.context = StagingContext(root=root, kind=kind, source=source, options=list(options))
        if kind == "directory":
            return root

        fstype = "tmpfs" if kind == "tmpfs" else "auto"
        cmd = ["mount", "-t", fstype]
        if options:
            cmd += ["-o", ",".join(options)]
        cmd += [source or "tmpfs", root]
        verbose(f"mounting temporary location {root}")
        run(cmd)
        self.context.mounted = True
        return root

    def scratch_file(self, directory: Path) -> Path:
        """Create an empty temporary file that is deleted on release."""
        if self.context is None:
            raise RuntimeError("staging area has not been acquired")
        directory.mkdir(parents=True, exist_ok=True)
        fd, name = tempfile.mkstemp(prefix=f".{PROGNAME}-", dir=directory)
        os.close(fd)
        path = Path(name)
        self.context.scratch.append(path)
        return path

    def populate(self, image: Path, target: Path) -> str:
        """
        Fill the root with a starting point for the build. Returns the method used.

        1. extract: unpack the existing image
        2. copy: rsync whatever sits in the target directory
        3. bootstrap: fetch the whole tree from the network
        """
        root = self.root
        s = self.settings
        if image.is_file():
            verbose(f"extracting {image} to temporary location")
            run([s.unsquashfs, "-d", root, *s.unsquashfs_opts, image], timeout=s.timeout)
            return "extract"
        if target.is_dir() and any(target.iterdir()):
            verbose(f"copying {target} to temporary location")
            run([s.rsync, *s.rsync_opts, f"{target}/", f"{root}/"], timeout=s.timeout)
            return "copy"
        verbose("nothing to start from, bootstrapping")
        run(format_command(s.bootstrap_command, root=root, repo=s.repo),
            env={"PORTDIR": str(root)}, timeout=s.timeout)
        return "bootstrap"

    def release(self) -> None:
        """Unmount and delete the scratch root. Safe to call more than once."""
        ctx, self.context = self.context, None
        if ctx is None:
            return

        for path in ctx.scratch:
            path.unlink(missing_ok=True)

        if ctx.mounted:
            verbose(f"unmounting temporary location {ctx.root}")
            try:
                run(["umount", ctx.root])
            except COMMAND_ERRORS:
                warn(f"normal unmount of {ctx.root} failed, trying lazy unmount")
                run(["umount", "-l", ctx.root])

        if ctx.root.exists():
            debug(f"rm -Rf {ctx.root}")
            shutil.rmtree(ctx.root)


# =============================================================================
# Swap
# =============================================================================

AnyRecord = Union[MountRecord, ExportRecord]


@dataclass
class SwapOutcome:
    """What a swap did, and what went wrong along the way."""
    image_replaced: bool = False
    restoration_errors: list[tuple[AnyRecord, RestoreFailure]] = field(default_factory=list)
    error: SwapError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class SwapContext:
    """
    State of one swap, shared by the pipeline and its cleanup.

    unmounted/unexported hold records in teardown order (deepest first);
    cleanup pops them off the end, so they come back shallowest first.
    """
    target: Path
    image: Path
    mounts: list[MountRecord] = field(default_factory=list)
    exports: list[ExportRecord] = field(default_factory=list)
    unmounted: list[MountRecord] = field(default_factory=list)
    unexported: list[ExportRecord] = field(default_factory=list)
    staging: StagingArea | None = None
    outcome: SwapOutcome = field(default_factory=SwapOutcome)

    @property
    def primary(self) -> MountRecord | None:
        """The mount at the target itself, which is replaced by the image mount."""
        if self.mounts and self.mounts[0].path == self.target:
            return self.mounts[0]
        return None


def same_filesystem(path: Path, directory: Path) -> bool:
    """True if path can be renamed into directory without crossing a filesystem."""
    return os.stat(path).st_dev == os.stat(directory).st_dev


def replace_image(candidate: Path, destination: Path) -> None:
    """
    Put candidate at destination with a single rename.

    A candidate on another filesystem is first copied next to the destination,
    so the rename never crosses a filesystem.
    """
    destination.parent.mkdir(parents=True, exist_ok=True)
    copied = None
    try:
        if same_filesystem(candidate, destination.parent):
            staged = candidate
            fd = os.open(staged, os.O_RDONLY)
            try:
                os.fsync(fd)
            finally:
                os.close(fd)
        else:
            fd, name = tempfile.mkstemp(prefix=f".{destination.name}.", dir=destination.parent)
            copied = staged = Path(name)
            with os.fdopen(fd, "wb") as out, open(candidate, "rb") as src:
                shutil.copyfileobj(src, out, 1 << 20)
                out.flush()
                os.fsync(out.fileno())

        os.chmod(staged, 0o644)
        debug(f"mv {staged} {destination}")
        os.replace(staged, destination)

        dir_fd = os.open(destination.parent, os.O_DIRECTORY)
        try:
            os.fsync(dir_fd)
        finally:
            os.close(dir_fd)
    except OSError as e:
        if copied is not None:
            copied.unlink(missing_ok=True)
        raise AtomicReplaceFailure(f"cannot replace {destination}: {e}") from e


class CleanupHandler:
    """
    Puts the system back after a swap, however the swap ended.

    Runs at most once: a second call, or a signal arriving while it runs,
    does nothing. The signals are held back until it is done.
    """

    def __init__(self, context: SwapContext, mounts: MountStateCapture,
                 exports: ExportStateCapture, settings: Settings):
        self.context = context
        self.mounts = mounts
        self.exports = exports
        self.settings = settings
        self.started = False

    def register(self) -> None:
        """Run at interpreter exit too, in case the normal path never gets here."""
        atexit.register(self.run)

    def unregister(self) -> None:
        atexit.unregister(self.run)

    def run(self) -> None:
        if self.started:
            return

        blocked = None
        try:
            blocked = signal.pthread_sigmask(signal.SIG_BLOCK, SIGNALS)
            self.started = True
            verbose("=== Restoring mounts and exports ===")
            self._ensure_mounted()
            self._restore_mounts()
            self._restore_exports()
            self._release_staging()
            self._refresh_index()
        finally:
            if blocked is not None:
                signal.pthread_sigmask(signal.SIG_SETMASK, blocked)

    def _ensure_mounted(self) -> None:
        # make sure something is mounted at the target, even if it's the old image
        ctx = self.context
        try:
            if self.mounts.is_mounted(ctx.target):
                return
        except COMMAND_ERRORS as e:
            warn(f"cannot read the mount table: {e}")
        if not ctx.image.is_file():
            warn(f"no image at {ctx.image}, leaving {ctx.target} unmounted")
            return

        verbose(f"mounting {ctx.image} at {ctx.target}")
        try:
            run(["mount", *self.settings.image_mount_options, ctx.image, ctx.target])
        except COMMAND_ERRORS as e:
            record = ctx.primary or MountRecord(ctx.target, str(ctx.image), "squashfs", "loop,ro")
            failure = _failure(RestoreFailure, f"cannot mount {ctx.image} at {ctx.target}", e)
            warn(str(failure))
            ctx.outcome.restoration_errors.append((record, failure))

    def _restore_mounts(self) -> None:
        ctx = self.context
        pending = []
        while ctx.unmounted:
            record = ctx.unmounted.pop()
            if record is not ctx.primary:
                pending.append(record)
        ctx.outcome.restoration_errors.extend(self.mounts.restore(pending))

    def _restore_exports(self) -> None:
        ctx = self.context
        pending = []
        while ctx.unexported:
            pending.append(ctx.unexported.pop())
        ctx.outcome.restoration_errors.extend(self.exports.restore(pending))

    def _release_staging(self) -> None:
        if self.context.staging is None:
            return
        try:
            self.context.staging.release()
        except COMMAND_ERRORS as e:
            warn(f"cannot clean up temporary location: {e}")

    def _refresh_index(self) -> None:
        command = self.settings.index_command
        if not command or not self.context.outcome.image_replaced:
            return
        verbose("refreshing search index")
        try:
            run(command, timeout=self.settings.timeout)
        except COMMAND_ERRORS as e:
            warn(f"index refresh failed: {e}")


BuildStep = Callable[[Path], Path]


class SwapOrchestrator:
    """Runs the whole unmount, build, replace and remount sequence for one target."""

    def __init__(self, settings: Settings, mounts: MountStateCapture | None = None,
                 exports: ExportStateCapture | None = None,
                 detector: ChangeDetector | None = None):
        self.settings = settings
        self.mounts = mounts or MountStateCapture()
        self.exports = exports or ExportStateCapture(settings.exportfs)
        self.detector = detector or ChangeDetector(settings.digest)
        self.staging = StagingArea(settings, self.mounts)

    def _context(self, target: Path) -> SwapContext:
        image = self.settings.image_file
        if image is None:
            raise ConfigurationError("Destination may not be empty")
        return SwapContext(target=Path(target), image=image)

    def perform(self, target: Path, build_step: BuildStep, populate: bool = True) -> SwapOutcome:
        """
        Swap the image behind target for the one build_step produces.

        build_step gets the staging root and returns the candidate image path.
        Failures after teardown are recorded in the outcome rather than raised;
        only errors before any change (capture, locking) and interruptions
        propagate.
        """
        ctx = self._context(target)

        with lockfile(self.settings.lock_dir, ctx.target):
            verbose("=== Capturing exports and mounts ===")
            ctx.exports = self.exports.capture(ctx.target)
            ctx.mounts = self.mounts.capture(ctx.target)
            for record in ctx.exports:
                debug(f"  export: {record}")
            for record in ctx.mounts:
                debug(f"  mount: {record}")

            cleanup = CleanupHandler(ctx, self.mounts, self.exports, self.settings)
            cleanup.register()
            try:
                self._swap(ctx, build_step, populate)
            finally:
                # left registered with atexit if cleanup never got going
                cleanup.run()
                cleanup.unregister()

        return ctx.outcome

    def publish(self, target: Path, build_step: BuildStep, populate: bool = True) -> SwapOutcome:
        """
        Build and replace the image only; whatever is mounted or exported at
        target is left alone.
        """
        ctx = self._context(target)

        with lockfile(self.settings.lock_dir, ctx.target):
            try:
                self._build(ctx, build_step, populate)
            finally:
                try:
                    self.staging.release()
                except COMMAND_ERRORS as e:
                    warn(f"cannot clean up temporary location: {e}")

        return ctx.outcome

    def _swap(self, ctx: SwapContext, build_step: BuildStep, populate: bool) -> None:
        verbose("=== Tearing down exports and mounts ===")
        try:
            self.exports.teardown(ctx.exports, done=ctx.unexported)
            self.mounts.teardown(ctx.mounts, done=ctx.unmounted)
        except TeardownFailure as e:
            self._fail(ctx, e)
            return
        ctx.staging = self.staging
        self._build(ctx, build_step, populate)

    def _build(self, ctx: SwapContext, build_step: BuildStep, populate: bool) -> None:
        try:
            verbose("=== Preparing temporary location ===")
            root = self.staging.acquire()
            if populate:
                self.staging.populate(ctx.image, ctx.target)

            verbose("=== Building candidate image ===")
            candidate = build_step(root)
        except SwapError as e:
            self._fail(ctx, e)
            return
        except COMMAND_ERRORS as e:
            self._fail(ctx, _failure(BuildFailure, f"build failed: {e}", e))
            return

        verbose("=== Checking whether the image changed ===")
        try:
            change = self.detector.compare(ctx.image, candidate)
        except OSError as e:
            self._fail(ctx, _failure(BuildFailure, f"cannot read candidate image {candidate}", e))
            return
        if change is Change.UNCHANGED:
            log("old and new images match, no changes made")
            return

        verbose(f"=== Replacing {ctx.image} ===")
        try:
            replace_image(candidate, ctx.image)
        except AtomicReplaceFailure as e:
            self._fail(ctx, e)
            return
        ctx.outcome.image_replaced = True
        log(f"Updated {ctx.image}")

    def _fail(self, ctx: SwapContext, failure: SwapError) -> None:
        verbose(f"giving up: {failure}")
        ctx.outcome.error = failure


# =============================================================================
# Context managers
# =============================================================================

def lock_path(lock_dir: Path, target: Path) -> Path:
    name = str(target).strip("/").replace("/", "-") or "root"
    return lock_dir / f"{PROGNAME}-{name}.lock"


@contextmanager
def lockfile(lock_dir: Path, target: Path) -> Iterator[Path]:
    """Hold an exclusive lock on target so only one swap touches it at a time."""
    path = lock_path(lock_dir, target)
    lock_dir.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding='utf-8') as f:
        try:
            fcntl.flock(f, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            raise BusyError(f"another {PROGNAME} process is working on {target} "
                            f"(lockfile: {path})") from None
        try:
            yield path
        finally:
            fcntl.flock(f, fcntl.LOCK_UN)


@contextmanager
def signals_blocked(signals=SIGNALS) -> Iterator[None]:
    """Hold back termination signals; any that arrived are delivered on exit."""
    previous = signal.pthread_sigmask(signal.SIG_BLOCK, signals)
    try:
        yield
    finally:
        signal.pthread_sigmask(signal.SIG_SETMASK, previous)


@contextmanager
def signals_as_exceptions(signals=SIGNALS) -> Iterator[None]:
    """Turn termination signals into Interrupted so finally blocks get to run."""
    def handler(signum, frame):
        raise Interrupted(signum)

    previous = {signum: signal.signal(signum, handler) for signum in signals}
    try:
        yield
    finally:
        for signum, old in previous.items():
            signal.signal(signum, old)


# =============================================================================
# Roles
# =============================================================================

def make_build_step(settings: Settings, staging: StagingArea) -> BuildStep:
    """Sync the staged tree (if enabled) and squash it next to the destination."""
    def build_step(root: Path) -> Path:
        if settings.sync:
            verbose("syncing temporary location")
            try:
                run(format_command(settings.sync_command, root=root, repo=settings.repo),
                    env={"PORTDIR": str(root)}, timeout=settings.timeout)
            except COMMAND_ERRORS as e:
                raise BuildFailure("bad sync") from e

        verbose("squashing temporary location")
        candidate = staging.scratch_file(settings.image_file.parent)
        try:
            run([settings.mksquashfs, root, candidate, *settings.mksquashfs_opts],
                timeout=settings.timeout)
        except COMMAND_ERRORS as e:
            raise BuildFailure(f"{settings.mksquashfs} failed") from e
        return candidate

    return build_step


def make_fetch_step(settings: Settings, staging: StagingArea) -> BuildStep:
    """Copy the published image from settings.source into the staging root."""
    def fetch_step(root: Path) -> Path:
        verbose(f"copying file from {settings.source}")
        candidate = staging.scratch_file(root)
        try:
            run([settings.rsync, *settings.fetch_opts, settings.source, candidate],
                timeout=settings.timeout)
        except COMMAND_ERRORS as e:
            raise TransferError(f"'{settings.source}' cannot be accessed") from e
        if candidate.stat().st_size == 0:
            raise TransferError(f"No bytes copied from {settings.source}")
        return candidate

    return fetch_step


def build_repository(settings: Settings) -> SwapOutcome:
    """Builder role: refresh the tree, squash it and swap it in (or only publish it)."""
    settings.validate("build")
    orchestrator = SwapOrchestrator(settings)
    build_step = make_build_step(settings, orchestrator.staging)
    if not settings.mount:
        return orchestrator.publish(settings.target, build_step)
    return orchestrator.perform(settings.target, build_step)


def fetch_repository(settings: Settings) -> SwapOutcome:
    """Fetcher role: copy a published image and swap it in."""
    settings.validate("fetch")
    # Stage beside the destination so the final rename stays on one filesystem
    settings = replace(settings, staging_kind="directory", staging_source=None,
                       staging_parent=settings.image_file.parent)
    orchestrator = SwapOrchestrator(settings)
    return orchestrator.perform(settings.target, make_fetch_step(settings, orchestrator.staging),
                                populate=False)


def show_status(settings: Settings) -> int:
    """Print what a swap would capture, without changing anything."""
    settings.validate("status")
    target = settings.target
    image = settings.image_file
    mounts = MountStateCapture().capture(target)
    exports = ExportStateCapture(settings.exportfs).capture(target)

    print(f"Target: {target}")
    if image.is_file():
        print(f"Image: {image} ({settings.digest} {ChangeDetector(settings.digest).fingerprint(image)})")
    else:
        print(f"Image: {image} (missing)")

    print(f"\nMounts ({len(mounts)}):")
    for record in mounts:
        print(f"  {record}")
    print(f"\nExports ({len(exports)}):")
    for record in exports:
        print(f"  {record}")
    return 0


def report(outcome: SwapOutcome) -> int:
    """Turn a swap outcome into an exit status."""
    if outcome.restoration_errors:
        warn(f"{len(outcome.restoration_errors)} mount(s)/export(s) could not be restored")
    if outcome.error is not None:
        error(str(outcome.error))
        return 1
    return 0


# =============================================================================
# Command line
# =============================================================================

def apply_arguments(settings: Settings, args: argparse.Namespace) -> Settings:
    """Let command line flags override what the config module set."""
    if args.portdir is not None:
        settings.target = args.portdir
    if args.destination is not None:
        settings.image = args.destination
    if args.timeout is not None:
        settings.timeout = args.timeout
    if args.no_index:
        settings.disable_index()
    elif args.index is not None:
        settings.index_command = args.index.split()

    if getattr(args, "sync", None) is not None:
        settings.sync = args.sync
    if getattr(args, "mount", None) is not None:
        settings.mount = args.mount
    if getattr(args, "repo", None) is not None:
        settings.repo = args.repo
    if getattr(args, "tmp_location", None) is not None:
        if args.tmp_location == "tmpfs":
            settings.use_staging("tmpfs", None, *settings.staging_options)
        else:
            settings.use_staging("device", args.tmp_location, *settings.staging_options)
    if getattr(args, "tmp_location_opt", None):
        settings.staging_options.extend(args.tmp_location_opt)
    if getattr(args, "mksquashfs", None) is not None:
        settings.mksquashfs = args.mksquashfs
    if getattr(args, "mksquashfs_opt", None):
        settings.add_mksquashfs_opts(*args.mksquashfs_opt)
    if getattr(args, "unsquashfs", None) is not None:
        settings.unsquashfs = args.unsquashfs
    if getattr(args, "unsquashfs_opt", None):
        settings.add_unsquashfs_opts(*args.unsquashfs_opt)
    if getattr(args, "rsync", None) is not None:
        settings.rsync = args.rsync
    if getattr(args, "rsync_opt", None):
        if args.command == "fetch":
            settings.fetch_opts.extend(args.rsync_opt)
        else:
            settings.add_rsync_opts(*args.rsync_opt)
    if getattr(args, "source", None) is not None:
        settings.source = args.source
    return settings


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", help="Path to a config module with configure()", type=Path)
    common.add_argument("--portdir", help="Live tree to swap (default: $PORTDIR)", type=Path)
    common.add_argument("--destination", "-d", help="Image file (default: <portdir>.sqfs)", type=Path)
    common.add_argument("--timeout", type=float, help="Seconds before an external tool is given up on")
    common.add_argument("--index", help="Index refresh command (default: eix-update if installed)")
    common.add_argument("--no-index", action="store_true", help="Do not refresh the search index")
    common.add_argument("--verbose", "-v", action="store_true", help="Show work being done")
    common.add_argument("--debug", action="store_true", help="Show every command that is run")

    parser = argparse.ArgumentParser(
        description="squashport - keep a package repository in a squashfs image",
    )
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    p_build = subparsers.add_parser("build", parents=[common],
                                    help="Sync, squash and swap in a new image (server)")
    p_build.add_argument("--sync", dest="sync", action="store_true", default=None, help="Sync with upstream")
    p_build.add_argument("--no-sync", dest="sync", action="store_false", default=None, help="Build without syncing")
    p_build.add_argument("--mount", dest="mount", action="store_true", default=None,
                         help="Swap the new image in under the portdir (default)")
    p_build.add_argument("--no-mount", dest="mount", action="store_false", default=None,
                         help="Only publish the image, leave the portdir mounted as it is")
    p_build.add_argument("--repo", help="Repository to sync (default: gentoo)")
    p_build.add_argument("--tmp-location", help="'tmpfs' or a device to build on (default: tmpfs)")
    p_build.add_argument("--tmp-location-opt", action="append", help="Mount option for the build location")
    p_build.add_argument("--mksquashfs", help="mksquashfs executable")
    p_build.add_argument("--mksquashfs-opt", action="append", help="Extra mksquashfs option")
    p_build.add_argument("--unsquashfs", help="unsquashfs executable")
    p_build.add_argument("--unsquashfs-opt", action="append", help="Extra unsquashfs option")
    p_build.add_argument("--rsync", help="rsync executable")
    p_build.add_argument("--rsync-opt", action="append", help="Extra rsync option")

    p_fetch = subparsers.add_parser("fetch", parents=[common],
                                    help="Copy a published image and swap it in (client)")
    p_fetch.add_argument("--source", "-s", help="Image to copy, may be host:path (default: $SQUASHED_SRC)")
    p_fetch.add_argument("--rsync", help="rsync executable")
    p_fetch.add_argument("--rsync-opt", action="append", help="Extra rsync option")

    subparsers.add_parser("status", parents=[common], help="Show mounts and exports that a swap would touch")
    return parser


def main(argv: list[str] | None = None) -> int:
    """squashport entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 1

    set_verbosity(DEBUG if args.debug else VERBOSE if args.verbose else QUIET)

    try:
        settings = load_config_module(args.config) if args.config else Settings()
        apply_arguments(settings, args)

        if args.command == "status":
            return show_status(settings)

        # Commands below require root
        if os.geteuid() != 0:
            error("This command must be run as root")
            return 1

        with signals_as_exceptions():
            if args.command == "build":
                return report(build_repository(settings))
            return report(fetch_repository(settings))
    except Interrupted as e:
        error(str(e))
        return 128 + e.signum
    except SwapError as e:
        error(str(e))
        return 1
    except COMMAND_ERRORS as e:
        error(str(e))
        return 1


def cli() -> None:
    sys.exit(main())


if __name__ == "__main__":
    cli()
