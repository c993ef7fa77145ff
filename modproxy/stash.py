"""Saving modules fetched from upstream into storage and the index.

A stasher returns the semantic version of what it saved, which matters
when the request named a branch or a commit. Wrappers add behaviour such
as de-duplicating concurrent requests or limiting parallelism.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import closing
from typing import BinaryIO

from modproxy.errors import Kind, e, is_kind
from modproxy.fetcher import FetchedVersion, Fetcher
from modproxy.index import Indexer
from modproxy.log import Entry, no_op_logger

__all__ = [
    "Stasher",
    "StorageBackend",
    "Wrapper",
    "BaseStasher",
    "GCSLockStasher",
    "PoolStasher",
    "SingleflightStasher",
    "new_stasher",
    "with_gcs_lock",
    "with_pool",
    "with_singleflight",
]


class Stasher(ABC):
    """Takes a module from upstream and saves it."""

    @abstractmethod
    def stash(self, mod: str, ver: str) -> str:
        """Save ``mod@ver`` and return the semantic version that was saved."""


class StorageBackend(ABC):
    """The parts of a storage backend a stasher needs."""

    @abstractmethod
    def exists(self, mod: str, ver: str) -> bool:
        """Report whether ``mod@ver`` is already stored."""

    @abstractmethod
    def save(
        self, mod: str, ver: str, mod_file: bytes, zip_file: BinaryIO, info: bytes
    ) -> None:
        """Store the .mod, .zip and .info of ``mod@ver``."""


Wrapper = Callable[[Stasher], Stasher]


def _mod_ver(mod: str, ver: str) -> str:
    return f"{mod}@{ver}"


class BaseStasher(Stasher):
    """Fetches a module and saves it to storage and the index."""

    def __init__(
        self,
        fetcher: Fetcher,
        storage: StorageBackend,
        indexer: Indexer,
        entry: Entry | None = None,
    ) -> None:
        self.fetcher = fetcher
        self.storage = storage
        self.indexer = indexer
        self.entry = entry if entry is not None else no_op_logger()

    def stash(self, mod: str, ver: str) -> str:
        op = "stasher.Stash"
        self.entry.debug("saving %s@%s to storage...", mod, ver)
        try:
            version = self._fetch_module(mod, ver)
        except Exception as err:
            raise e(op, err) from err
        with closing(version.zip):
            if version.semver != ver:
                try:
                    exists = self.storage.exists(mod, version.semver)
                except Exception as err:
                    raise e(op, err) from err
                if exists:
                    return version.semver
            try:
                self.storage.save(mod, version.semver, version.mod, version.zip, version.info)
            except Exception as err:
                raise e(op, err) from err
            try:
                self.indexer.index(mod, version.semver)
            except Exception as err:
                if not is_kind(err, Kind.ALREADY_EXISTS):
                    raise e(op, err) from err
        return version.semver

    def _fetch_module(self, mod: str, ver: str) -> FetchedVersion:
        op = "stasher.fetchModule"
        try:
            return self.fetcher.fetch(mod, ver)
        except Exception as err:
            raise e(op, err) from err


def new_stasher(
    fetcher: Fetcher, storage: StorageBackend, indexer: Indexer, *args: Wrapper
) -> Stasher:
    """Return a stasher wrapped by each of ``args`` in turn."""
    stasher: Stasher = BaseStasher(fetcher, storage, indexer)
    for wrapper in args:
        stasher = wrapper(stasher)
    return stasher


class GCSLockStasher(Stasher):
    """Treats a module that another writer already saved as a success."""

    def __init__(self, stasher: Stasher) -> None:
        self.stasher = stasher

    def stash(self, mod: str, ver: str) -> str:
        op = "gcslock.Stash"
        try:
            return self.stasher.stash(mod, ver)
        except Exception as err:
            if is_kind(err, Kind.ALREADY_EXISTS):
                return ver
            raise e(op, err) from err


def with_gcs_lock(stasher: Stasher) -> Stasher:
    """Wrap ``stasher`` for storage that rejects duplicate writes."""
    return GCSLockStasher(stasher)


class PoolStasher(Stasher):
    """Runs at most ``num_workers`` stash operations at a time."""

    def __init__(self, stasher: Stasher, num_workers: int) -> None:
        if num_workers < 1:
            raise ValueError("num_workers must be at least 1")
        self.stasher = stasher
        self._executor = ThreadPoolExecutor(
            max_workers=num_workers, thread_name_prefix="stash-pool"
        )

    def stash(self, mod: str, ver: str) -> str:
        op = "stash.Pool"
        future = self._executor.submit(self.stasher.stash, mod, ver)
        try:
            return future.result()
        except Exception as err:
            raise e(op, err) from err


def with_pool(num_workers: int) -> Wrapper:
    """Return a wrapper that limits stashing to ``num_workers`` at a time."""

    def wrap(stasher: Stasher) -> Stasher:
        return PoolStasher(stasher, num_workers)

    return wrap


class SingleflightStasher(Stasher):
    """Shares one stash of a module@version among all concurrent callers."""

    def __init__(self, stasher: Stasher) -> None:
        self.stasher = stasher
        self._lock = threading.Lock()
        self._in_flight: dict[str, Future[str]] = {}

    def stash(self, mod: str, ver: str) -> str:
        key = _mod_ver(mod, ver)
        with self._lock:
            future = self._in_flight.get(key)
            leader = future is None
            if future is None:
                future = Future()
                self._in_flight[key] = future
        if leader:
            try:
                result = self.stasher.stash(mod, ver)
            except Exception as err:
                with self._lock:
                    del self._in_flight[key]
                    future.set_exception(err)
            else:
                with self._lock:
                    del self._in_flight[key]
                    future.set_result(result)
        return future.result()


def with_singleflight(stasher: Stasher) -> Stasher:
    """Wrap ``stasher`` so concurrent requests for one version stash it once."""
    return SingleflightStasher(stasher)