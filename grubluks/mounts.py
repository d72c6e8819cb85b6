"""Mount discovery and run-scoped resource cleanup."""
from __future__ import annotations

import atexit
import contextlib
import os
import shutil
import signal
import tempfile
from typing import Callable, Iterator, Sequence

from .errors import ToolInvocationError, UnmountedFilesystemError
from .executil import log, run, trace

ESP_CANDIDATES = ("/boot/efi", "/efi", "/boot")


class Cleanup:
    """Mounts and temporary files owned by this run.

    ``release`` undoes them newest first: unmounts what we mounted and
    removes temporary files that were not preserved for diagnostics.
    """

    def __init__(self):
        self._entries: list[tuple[str, str]] = []
        self._preserved: set[str] = set()
        self._installed = False

    def track_mount(self, mountpoint: str) -> None:
        self._entries.append(("mount", mountpoint))

    def track_temp(self, path: str) -> None:
        self._entries.append(("temp", path))

    def preserve(self, path: str) -> None:
        self._preserved.add(path)

    def is_preserved(self, path: str) -> bool:
        return path in self._preserved

    def release(self) -> None:
        while self._entries:
            kind, path = self._entries.pop()
            if path in self._preserved:
                continue
            # Keep going on failure so later entries are still released.
            try:
                if kind == "mount":
                    res = run(["umount", path], check=False)
                    if res.rc != 0:
                        reason = (res.err or "").strip() or "rc=%s" % res.rc
                        print(f"[WARN] failed to unmount {path}: {reason}")
                    trace("mounts.cleanup.umount", path=path, rc=res.rc)
                else:
                    with contextlib.suppress(FileNotFoundError):
                        os.unlink(path)
                    trace("mounts.cleanup.unlink", path=path)
            except OSError as exc:
                print(f"[WARN] cleanup of {path} failed: {exc}")
                log("WARN", "mounts.cleanup.failed", kind=kind, path=path, error=str(exc))

    def install(self) -> None:
        if self._installed:
            return
        atexit.register(self.release)
        for signum in (signal.SIGINT, signal.SIGTERM, signal.SIGHUP):
            signal.signal(signum, _exit_on_signal)
        self._installed = True


def _exit_on_signal(signum, frame):  # noqa: ARG001 - signal handler signature
    trace("mounts.signal", signum=signum)
    raise SystemExit(1)


def make_temp(cleanup: Cleanup, suffix: str = "", directory: str | None = None) -> str:
    """Create a temporary file that lives until ``cleanup.release``."""

    fd, path = tempfile.mkstemp(prefix="grubluks-", suffix=suffix, dir=directory)
    os.close(fd)
    cleanup.track_temp(path)
    return path


@contextlib.contextmanager
def temp_file(cleanup: Cleanup, suffix: str = "", directory: str | None = None) -> Iterator[str]:
    """Yield a fresh temporary file path, removed when the block exits."""

    path = make_temp(cleanup, suffix, directory)
    try:
        yield path
    finally:
        if not cleanup.is_preserved(path):
            with contextlib.suppress(FileNotFoundError):
                os.unlink(path)


def preserve_log(cleanup: Cleanup, tmp_path: str, destination: str) -> str:
    """Move a temporary log to ``destination`` and make it world-readable."""

    cleanup.preserve(tmp_path)
    shutil.move(tmp_path, destination)
    os.chmod(destination, 0o644)
    trace("mounts.preserve_log", src=tmp_path, dst=destination)
    return destination


def _tool(cmd: list[str]):
    try:
        return run(cmd, check=False)
    except OSError as exc:
        raise ToolInvocationError(f"unable to run {cmd[0]}: {exc}", state={"cmd": cmd}) from exc


def _findmnt(args: Sequence[str]) -> str:
    r = _tool(["findmnt", "-n", *args])
    if r.rc != 0:
        return ""
    text = (getattr(r, "out", "") or "").strip()
    return text.splitlines()[0].strip() if text else ""


def mount_source(path: str) -> str:
    """Block device backing the filesystem that contains ``path``."""

    source = _findmnt(["-o", "SOURCE", "--target", path])
    # btrfs subvolumes are reported as /dev/sda2[/@]
    if "[" in source:
        source = source.split("[", 1)[0]
    return source


def mount_target(path: str) -> str:
    return _findmnt(["-o", "TARGET", "--target", path])


def is_mounted(mountpoint: str) -> bool:
    return bool(_findmnt(["-o", "TARGET", "--mountpoint", mountpoint]))


def in_fstab(mountpoint: str) -> bool:
    return bool(_findmnt(["--fstab", "-o", "TARGET", mountpoint]))


def shares_root_filesystem(path: str) -> bool:
    return mount_target(path) == mount_target("/")


def ensure_mounted(cleanup: Cleanup, mountpoint: str, confirm: Callable[[str], bool]) -> bool:
    """Mount ``mountpoint`` from fstab when it should be mounted but is not.

    Returns True when this run mounted it.
    """

    if is_mounted(mountpoint) or not in_fstab(mountpoint):
        return False
    if not confirm(f"{mountpoint} is listed in /etc/fstab but not mounted. Mount it now?"):
        raise UnmountedFilesystemError(f"{mountpoint} must be mounted to continue")
    res = _tool(["mount", mountpoint])
    if res.rc != 0:
        err = (res.err or "").strip()
        raise UnmountedFilesystemError(
            f"mount {mountpoint} failed: {err or 'rc=%s' % res.rc}",
            state={"mountpoint": mountpoint, "rc": res.rc, "err": err},
        )
    cleanup.track_mount(mountpoint)
    trace("mounts.mounted", mountpoint=mountpoint)
    return True


def find_esp(candidates: Sequence[str] = ESP_CANDIDATES) -> str:
    for candidate in candidates:
        fstype = _findmnt(["-o", "FSTYPE", "--mountpoint", candidate])
        if fstype == "vfat":
            trace("mounts.esp", path=candidate)
            return candidate
    raise UnmountedFilesystemError(
        "no mounted EFI system partition found (looked in: %s)" % ", ".join(candidates)
    )


def locate_esp(cleanup: Cleanup, confirm: Callable[[str], bool], override: str | None = None) -> str:
    candidates = (override,) if override else ESP_CANDIDATES
    for candidate in candidates:
        if in_fstab(candidate):
            ensure_mounted(cleanup, candidate, confirm)
    return find_esp(candidates)


def is_whole_disk(path: str) -> bool:
    r = _tool(["lsblk", "-ndo", "TYPE", path])
    return r.rc == 0 and (r.out or "").strip() == "disk"


def mountpoints_below(path: str) -> list[str]:
    r = _tool(["lsblk", "-nro", "MOUNTPOINT", path])
    if r.rc != 0:
        return []
    return [line.strip() for line in (r.out or "").splitlines() if line.strip()]
