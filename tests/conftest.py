"""
Shared fixtures: a fake system standing in for the mount table, the export
table and every external tool squashport runs.
"""

import json
import os
import posixpath
import shutil
import subprocess
from pathlib import Path

import pytest

import squashport


def write_image(path: Path, files: dict) -> None:
    """Write a fake squashfs image: a JSON map of relative path -> content."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(files, sort_keys=True))


def read_image(path: Path) -> dict:
    return json.loads(path.read_text())


def _escape(value: str) -> str:
    # findmnt --raw escaping
    return value.replace("\\", "\\x5c").replace(" ", "\\x20")


class FakeSystem:
    """Simulates the commands squashport runs, on real temporary files."""

    def __init__(self):
        self.mounts: list[list[str]] = []  # [target, source, fstype, options(, fsroot)]
        self.exports: list[tuple[str, str, str]] = []  # (path, host, options)
        self.upstream = {"metadata/timestamp": "1"}
        self.calls: list[list[str]] = []
        self.failures = []
        self.hooks = []
        self.devices: dict[str, str] = {}

    def fail_when(self, predicate) -> None:
        """Make every command matching predicate exit non-zero."""
        self.failures.append(predicate)

    def commands(self, name: str) -> list[list[str]]:
        return [cmd for cmd in self.calls if Path(cmd[0]).name == name]

    def run(self, cmd, check=True, capture_output=False, env=None, timeout=None) -> str:
        cmd = [str(c) for c in cmd]
        self.calls.append(cmd)
        for hook in self.hooks:
            hook(cmd)
        if any(predicate(cmd) for predicate in self.failures):
            raise subprocess.CalledProcessError(1, cmd)
        handler = getattr(self, "_" + Path(cmd[0]).name.replace("-", "_"))
        return handler(cmd[1:], env or {}) or ""

    # -------------------------------------------------------------------------
    # Mount table
    # -------------------------------------------------------------------------

    def _fsroot(self, entry) -> str:
        return entry[4] if len(entry) > 4 else "/"

    def _device(self, source: str) -> str:
        return self.devices.setdefault(source, f"0:{len(self.devices) + 30}")

    def _findmnt(self, args, env):
        lines = []
        for entry in self.mounts:
            target, source, fstype, options = entry[:4]
            fsroot = self._fsroot(entry)
            if fsroot != "/":
                source = f"{source}[{fsroot}]"
            fields = [target, source, fstype, options, fsroot, self._device(entry[1])]
            lines.append(" ".join(_escape(f) for f in fields))
        return "\n".join(lines)

    def _mount(self, args, env):
        fstype, options, bind, rest = "auto", "rw", False, []
        it = iter(args)
        for arg in it:
            if arg == "-t":
                fstype = next(it)
            elif arg == "-o":
                options = next(it)
            elif arg == "--bind":
                bind = True
            else:
                rest.append(arg)

        if options.startswith("remount,bind,"):
            target, = rest
            entries = [entry for entry in self.mounts if entry[0] == target]
            if not entries:
                raise subprocess.CalledProcessError(32, ["mount", *args])
            entries[-1][3] = options[len("remount,bind,"):]
            return

        source, target = rest
        if not Path(target).is_dir():
            raise subprocess.CalledProcessError(32, ["mount", *args])
        if bind:
            # the deepest mount holding the origin directory
            holders = [entry for entry in self.mounts
                       if Path(source) == Path(entry[0]) or Path(entry[0]) in Path(source).parents]
            if not holders or not Path(source).is_dir():
                raise subprocess.CalledProcessError(32, ["mount", *args])
            holder = max(holders, key=lambda entry: len(Path(entry[0]).parts))
            rel = os.path.relpath(source, holder[0])
            fsroot = posixpath.normpath(posixpath.join(self._fsroot(holder), rel))
            self.mounts.append([target, holder[1], holder[2], holder[3], fsroot])
            return
        if fstype == "squashfs" and not Path(source).is_file():
            raise subprocess.CalledProcessError(32, ["mount", *args])
        self.mounts.append([target, source, fstype, options])

    def _umount(self, args, env):
        target = args[-1]
        matches = [i for i, entry in enumerate(self.mounts) if entry[0] == target]
        if not matches:
            raise subprocess.CalledProcessError(32, ["umount", *args])
        busy = any(Path(target) in Path(entry[0]).parents for entry in self.mounts)
        if busy and "-l" not in args:
            raise subprocess.CalledProcessError(32, ["umount", *args])
        del self.mounts[matches[-1]]

    # -------------------------------------------------------------------------
    # Export table
    # -------------------------------------------------------------------------

    def _exportfs(self, args, env):
        if args == ["-s"]:
            grouped: dict[str, list[str]] = {}
            for path, host, options in self.exports:
                grouped.setdefault(path, []).append(f"{host}({options})" if options else host)
            return "\n".join(f"{path}  {' '.join(clauses)}" for path, clauses in grouped.items())
        if args[0] == "-u":
            host, path = args[1].split(":", 1)
            for entry in self.exports:
                if entry[0] == path and entry[1] == host:
                    self.exports.remove(entry)
                    return ""
            raise subprocess.CalledProcessError(1, ["exportfs", *args])
        options = ""
        if args[0] == "-o":
            options, args = args[1], args[2:]
        host, path = args[0].split(":", 1)
        self.exports.append((path, host, options))

    # -------------------------------------------------------------------------
    # Collaborators
    # -------------------------------------------------------------------------

    def _unsquashfs(self, args, env):
        root = Path(args[args.index("-d") + 1])
        for name, content in read_image(Path(args[-1])).items():
            path = root / name
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content)

    def _mksquashfs(self, args, env):
        src, dest = Path(args[0]), Path(args[1])
        files = {str(p.relative_to(src)): p.read_text() for p in sorted(src.rglob("*")) if p.is_file()}
        write_image(dest, files)

    def _rsync(self, args, env):
        src, dst = [arg for arg in args if not arg.startswith("-")]
        if src.endswith("/"):
            shutil.copytree(src, dst, dirs_exist_ok=True)
        elif Path(src).is_file():
            shutil.copyfile(src, dst)
        else:
            raise subprocess.CalledProcessError(23, ["rsync", *args])

    def _write_upstream(self, env):
        root = Path(env["PORTDIR"])
        for name, content in self.upstream.items():
            path = root / name
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content)

    def _emaint(self, args, env):
        self._write_upstream(env)

    def _emerge_webrsync(self, args, env):
        self._write_upstream(env)

    def _eix_update(self, args, env):
        pass


@pytest.fixture
def fake(monkeypatch):
    system = FakeSystem()
    monkeypatch.setattr(squashport, "run", system.run)
    return system


@pytest.fixture
def settings(tmp_path):
    target = tmp_path / "repos" / "gentoo"
    target.mkdir(parents=True)
    return squashport.Settings(
        target=target,
        image=tmp_path / "repos" / "gentoo.sqfs",
        source=str(tmp_path / "server" / "gentoo.sqfs"),
        staging_parent=tmp_path / "tmp",
        lock_dir=tmp_path / "lock",
        index_command=["eix-update"],
        exportfs="exportfs",
    )


@pytest.fixture
def live(fake, settings):
    """A tree mounted from its image, with a nested mount and NFS exports."""
    target, image = settings.target, settings.image
    write_image(image, {"metadata/timestamp": "1"})
    (target / "distfiles").mkdir()
    fake.mounts += [
        [str(target), str(image), "squashfs", "loop,ro"],
        [str(target / "distfiles"), "/dev/sdb1", "ext4", "rw,relatime"],
    ]
    fake.exports += [
        (str(target), "192.168.1.0/24", "ro,sync"),
        (str(target), "backup", "ro"),
        (str(target / "distfiles"), "192.168.1.0/24", "rw,no_subtree_check"),
    ]
    return fake
