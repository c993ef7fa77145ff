"""Fetching module sources with the go command."""

from __future__ import annotations

import json
import os
import shutil
import signal
import subprocess
import sys
import tempfile
from abc import ABC, abstractmethod
from collections.abc import Iterable
from contextlib import suppress
from dataclasses import dataclass

from modproxy.errors import AthensError, Kind, e
from modproxy.goenv import ZipReadCloser, clear_files, prepare_env

__all__ = [
    "FetchedVersion",
    "Fetcher",
    "GoGetFetcher",
    "new_go_get_fetcher",
    "get_repo_dir_name",
    "is_limit_hit",
]


@dataclass
class FetchedVersion:
    """The .info, .mod and .zip of a module version.

    The caller must close ``zip`` to free the disk space behind it.
    """

    semver: str
    info: bytes
    mod: bytes
    zip: ZipReadCloser


class Fetcher(ABC):
    """Downloads module versions from an upstream source."""

    @abstractmethod
    def fetch(self, mod: str, ver: str) -> FetchedVersion:
        """Download ``mod@ver`` and return its files."""


@dataclass
class _GoModule:
    path: str = ""
    version: str = ""
    error: str = ""
    info: str = ""
    go_mod: str = ""
    zip: str = ""
    dir: str = ""
    sum: str = ""
    go_mod_sum: str = ""


def _decode_go_module(text: str) -> _GoModule:
    value, _ = json.JSONDecoder().raw_decode(text.lstrip())
    if not isinstance(value, dict):
        raise ValueError("go command output is not a JSON object")
    fields = {str(key).lower(): val for key, val in value.items()}

    def get(name: str) -> str:
        found = fields.get(name)
        return "" if found is None else str(found)

    return _GoModule(
        path=get("path"),
        version=get("version"),
        error=get("error"),
        info=get("info"),
        go_mod=get("gomod"),
        zip=get("zip"),
        dir=get("dir"),
        sum=get("sum"),
        go_mod_sum=get("gomodsum"),
    )


def _exit_description(returncode: int) -> str:
    if returncode < 0:
        with suppress(ValueError):
            return f"signal: {signal.Signals(-returncode).name}"
        return f"signal: {-returncode}"
    return f"exit status {returncode}"


def _env_mapping(entries: Iterable[str]) -> dict[str, str]:
    return {key: value for key, _, value in (entry.partition("=") for entry in entries)}


class GoGetFetcher(Fetcher):
    """Fetches modules by running ``go mod download`` in a scratch GOPATH."""

    def __init__(
        self,
        go_binary_name: str,
        goget_dir: str = "",
        env_vars: Iterable[str] = (),
    ) -> None:
        self.go_binary_name = go_binary_name
        self.goget_dir = goget_dir
        self.env_vars = list(env_vars)

    def fetch(self, mod: str, ver: str) -> FetchedVersion:
        op = "goGetFetcher.Fetch"
        try:
            go_path_root = tempfile.mkdtemp(prefix="athens", dir=self.goget_dir or None)
        except OSError as err:
            raise e(op, err) from err
        try:
            mod_path = os.path.join(go_path_root, "src", get_repo_dir_name(mod, ver))
            os.makedirs(mod_path, exist_ok=True)
            module = _download_module(
                self.go_binary_name, self.env_vars, go_path_root, mod_path, mod, ver
            )
            with open(module.info, "rb") as fh:
                info = fh.read()
            with open(module.go_mod, "rb") as fh:
                go_mod = fh.read()
            zip_file = open(module.zip, "rb")
        except (OSError, AthensError) as err:
            with suppress(AthensError):
                clear_files(go_path_root)
            raise e(op, err) from err
        return FetchedVersion(
            semver=module.version,
            info=info,
            mod=go_mod,
            zip=ZipReadCloser(zip_file, go_path_root),
        )


def _download_module(
    go_binary_name: str,
    env_vars: list[str],
    gopath: str,
    repo_root: str,
    module: str,
    version: str,
) -> _GoModule:
    """Run ``go mod download -json module@version`` with GOPATH set to ``gopath``."""
    op = "module.downloadModule"
    uri = module.removesuffix("/")
    try:
        proc = subprocess.run(
            [go_binary_name, "mod", "download", "-json", f"{uri}@{version}"],
            cwd=repo_root,
            env=_env_mapping(prepare_env(gopath, env_vars)),
            stdin=subprocess.DEVNULL,
            capture_output=True,
            encoding="utf-8",
            errors="replace",
            check=False,
        )
    except OSError as err:
        raise e(op, err) from err

    if proc.returncode != 0:
        failure = Exception(f"{_exit_description(proc.returncode)}: {proc.stderr}")
        try:
            result = _decode_go_module(proc.stdout)
        except ValueError:
            raise e(op, failure) from None
        if is_limit_hit(result.error):
            raise e(op, result.error, Kind.RATE_LIMIT)
        raise e(op, result.error, Kind.NOT_FOUND)

    try:
        result = _decode_go_module(proc.stdout)
    except ValueError as err:
        raise e(op, err) from err
    if result.error:
        raise e(op, result.error)
    return result


def is_limit_hit(output: str) -> bool:
    """Report whether the go command hit the GitHub API quota."""
    return "403 response from api.github.com" in output


def get_repo_dir_name(repo_uri: str, version: str) -> str:
    """Return a directory name for the contents of ``repo_uri`` at ``version``."""
    return f"{repo_uri.replace('/', '-')}-{version}"


def _valid_go_binary(name: str) -> None:
    op = "module.validGoBinary"
    path = shutil.which(name)
    if path is None:
        variable = "%PATH%" if sys.platform == "win32" else "$PATH"
        raise e(op, Exception(f'exec: "{name}": executable file not found in {variable}'))
    try:
        subprocess.run(
            [path],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            check=False,
        )
    except OSError as err:
        raise e(op, err) from err


def new_go_get_fetcher(
    go_binary_name: str, goget_dir: str, env_vars: Iterable[str]
) -> GoGetFetcher:
    """Return a fetcher using ``go_binary_name``, which must be runnable."""
    op = "module.NewGoGetFetcher"
    try:
        _valid_go_binary(go_binary_name)
    except AthensError as err:
        raise e(op, err) from err
    return GoGetFetcher(go_binary_name, goget_dir, env_vars)