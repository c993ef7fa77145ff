"""Environment and scratch-directory handling for running the go command."""

from __future__ import annotations

import os
import shutil
import stat
import sys
from collections.abc import Iterable
from typing import BinaryIO

from modproxy.errors import e

__all__ = ["ZipReadCloser", "prepare_env", "clear_files"]

_PASSED_KEYS = (
    "PATH",
    "HOME",
    "GIT_SSH",
    "GIT_SSH_COMMAND",
    "HTTP_PROXY",
    "HTTPS_PROXY",
    "NO_PROXY",
    "http_proxy",
    "https_proxy",
    "no_proxy",
)

_WINDOWS_KEYS = (
    "USERPROFILE",
    "SystemRoot",
    "ALLUSERSPROFILE",
    "HOMEDRIVE",
    "HOMEPATH",
)


def prepare_env(gopath: str, env_vars: Iterable[str]) -> list[str]:
    """Return the ``KEY=value`` environment a go command needs to run.

    The go paths and module settings come first, then the variables of the
    current process the go command depends on, then ``env_vars``, and last
    ``SSH_AUTH_SOCK`` if it names an existing unix socket.
    """
    env = [
        f"GOPATH={gopath}",
        f"GOCACHE={os.path.join(gopath, 'cache')}",
        "CGO_ENABLED=0",
        "GO111MODULE=on",
    ]
    keys = _PASSED_KEYS + (_WINDOWS_KEYS if sys.platform == "win32" else ())
    env.extend(f"{key}={os.environ[key]}" for key in keys if key in os.environ)
    env.extend(env_vars)

    sock = os.environ.get("SSH_AUTH_SOCK")
    if sock is not None:
        try:
            mode = os.stat(sock).st_mode
        except OSError:
            mode = 0
        if stat.S_ISSOCK(mode):
            env.append(f"SSH_AUTH_SOCK={sock}")
    return env


def _make_writable(directory: str) -> None:
    """Make ``directory`` and everything below it writable, depth first."""
    os.chmod(directory, 0o770)
    with os.scandir(directory) as entries:
        for entry in entries:
            if entry.is_symlink():
                continue
            if entry.is_dir(follow_symlinks=False):
                _make_writable(entry.path)
            else:
                os.chmod(entry.path, 0o770)


def clear_files(root: str) -> None:
    """Delete the directory tree at ``root``.

    Everything is made writable first, since the go command leaves its
    module cache read-only.
    """
    op = "module.ClearFiles"
    try:
        _make_writable(root)
    except OSError as err:
        raise e(op, err) from err
    try:
        shutil.rmtree(root)
    except OSError as err:
        raise e(op, err) from err


class ZipReadCloser:
    """Reads a downloaded module zip; closing it removes its GOPATH."""

    def __init__(self, zip_file: BinaryIO, go_path: str) -> None:
        self._zip = zip_file
        self.go_path = go_path
        self.closed = False

    def read(self, size: int = -1) -> bytes:
        """Read up to ``size`` bytes, or everything when ``size`` is negative."""
        return self._zip.read(size)

    def close(self) -> None:
        """Close the zip and delete the whole GOPATH it was downloaded to."""
        if self.closed:
            return
        self.closed = True
        try:
            self._zip.close()
        except OSError:
            pass
        clear_files(self.go_path)

    def __enter__(self) -> ZipReadCloser:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()