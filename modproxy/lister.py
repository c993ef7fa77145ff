"""Listing the versions of a module available upstream."""

from __future__ import annotations

import json
import re
import shutil
import signal
import subprocess
import tempfile
from abc import ABC, abstractmethod
from collections.abc import Iterable
from contextlib import suppress
from dataclasses import dataclass
from datetime import datetime

from modproxy.errors import AthensError, Kind, e
from modproxy.goenv import clear_files, prepare_env
from modproxy.index import ZERO_TIME

__all__ = ["RevInfo", "UpstreamLister", "VCSLister"]

_RFC3339 = re.compile(
    r"(\d{4}-\d\d-\d\dT\d\d:\d\d:\d\d)(?:\.(\d+))?(Z|[+-]\d\d:\d\d)", re.IGNORECASE
)


@dataclass
class RevInfo:
    """A resolved version and the time it was committed."""

    version: str
    time: datetime


class UpstreamLister(ABC):
    """Retrieves the available versions of a module from upstream."""

    @abstractmethod
    def list(self, module: str) -> tuple[RevInfo, list[str]]:
        """Return the latest revision of ``module`` and all its versions."""


def _parse_time(text: str) -> datetime:
    match = _RFC3339.fullmatch(text)
    if match is None:
        raise ValueError(f"invalid time {text!r}")
    base, digits, zone = match.groups()
    fraction = f".{digits[:6].ljust(6, '0')}" if digits else ""
    offset = "+00:00" if zone.upper() == "Z" else zone
    return datetime.fromisoformat(base + fraction + offset)


def _exit_description(returncode: int) -> str:
    if returncode < 0:
        with suppress(ValueError):
            return f"signal: {signal.Signals(-returncode).name}"
        return f"signal: {-returncode}"
    return f"exit status {returncode}"


class VCSLister(UpstreamLister):
    """Lists versions with ``go list -m -versions`` against version control."""

    def __init__(self, go_bin_path: str, env: Iterable[str] = ()) -> None:
        self.go_bin_path = go_bin_path
        self.env = list(env)

    def list(self, module: str) -> tuple[RevInfo, list[str]]:
        op = "vcsLister.List"
        try:
            work_dir = tempfile.mkdtemp(prefix="go-list")
        except OSError as err:
            raise e(op, err) from err
        try:
            try:
                gopath = tempfile.mkdtemp(prefix="athens")
            except OSError as err:
                raise e(op, err) from err
            try:
                return self._run(op, module, work_dir, gopath)
            finally:
                with suppress(AthensError):
                    clear_files(gopath)
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)

    def _run(
        self, op: str, module: str, work_dir: str, gopath: str
    ) -> tuple[RevInfo, list[str]]:
        env = {
            key: value
            for key, _, value in (entry.partition("=") for entry in prepare_env(gopath, self.env))
        }
        try:
            proc = subprocess.run(
                [self.go_bin_path, "list", "-m", "-versions", "-json", f"{module}@latest"],
                cwd=work_dir,
                env=env,
                stdin=subprocess.DEVNULL,
                capture_output=True,
                encoding="utf-8",
                errors="replace",
                check=False,
            )
        except OSError as err:
            raise e(op, err, Kind.NOT_FOUND) from err
        if proc.returncode != 0:
            # A failed listing cannot be told apart from a missing module,
            # so it is reported as not found.
            failure = Exception(f"{_exit_description(proc.returncode)}: {proc.stderr}")
            raise e(op, failure, Kind.NOT_FOUND)

        try:
            value, _ = json.JSONDecoder().raw_decode(proc.stdout.lstrip())
            if not isinstance(value, dict):
                raise ValueError("go list output is not a JSON object")
            fields = {str(key).lower(): val for key, val in value.items()}
            raw_time = fields.get("time")
            when = _parse_time(str(raw_time)) if raw_time else ZERO_TIME
            versions = [str(v) for v in fields.get("versions") or []]
        except ValueError as err:
            raise e(op, err) from err
        version = fields.get("version")
        rev = RevInfo(version="" if version is None else str(version), time=when)
        return rev, versions