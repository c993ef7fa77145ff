import io
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from modproxy.errors import AthensError, Kind, e, kind, ops
from modproxy.fetcher import FetchedVersion, Fetcher
from modproxy.index import Indexer, MemIndexer, NopIndexer
from modproxy.stash import (
    BaseStasher,
    Stasher,
    StorageBackend,
    new_stasher,
    with_gcs_lock,
    with_pool,
    with_singleflight,
)


class MockStorage(StorageBackend):
    def __init__(self, exists_response=False):
        self.exists_response = exists_response
        self.exists_called = False
        self.save_called = False
        self.given_version = ""
        self.given_zip = b""

    def exists(self, mod, ver):
        self.exists_called = True
        return self.exists_response

    def save(self, mod, ver, mod_file, zip_file, info):
        self.save_called = True
        self.given_version = ver
        self.given_zip = zip_file.read()


class MockFetcher(Fetcher):
    def __init__(self, ver):
        self.ver = ver
        self.zips = []

    def fetch(self, mod, ver):
        zip_file = io.BytesIO(b"zipfile")
        self.zips.append(zip_file)
        return FetchedVersion(semver=self.ver, info=b"info", mod=b"gomod", zip=zip_file)


class FailingFetcher(Fetcher):
    def fetch(self, mod, ver):
        raise e("upstream.Fetch", "no such module", Kind.NOT_FOUND)


class FailingIndexer(Indexer):
    def index(self, mod, ver):
        raise e("bad.Index", "index down")

    def lines(self, since, limit):
        return []


@pytest.mark.parametrize(
    "ver, mod_ver, should_call_exists, exists_response, should_call_save",
    [
        ("master", "v1.2.3", True, False, True),
        ("master", "v1.2.3", True, True, False),
        ("v2.0.0", "v2.0.0", False, False, True),
    ],
    ids=["non semver", "no storage override", "equal semver"],
)
def test_stash(ver, mod_ver, should_call_exists, exists_response, should_call_save):
    storage = MockStorage(exists_response)
    fetcher = MockFetcher(mod_ver)
    stasher = new_stasher(fetcher, storage, NopIndexer())
    assert stasher.stash("module", ver) == mod_ver
    assert storage.exists_called == should_call_exists
    if should_call_save:
        assert storage.given_version == mod_ver
        assert storage.given_zip == b"zipfile"
    else:
        assert storage.save_called is False
    assert fetcher.zips[0].closed is True


def test_stash_tolerates_already_indexed():
    indexer = MemIndexer()
    indexer.index("module", "v1.0.0")
    stasher = BaseStasher(MockFetcher("v1.0.0"), MockStorage(), indexer)
    assert stasher.stash("module", "v1.0.0") == "v1.0.0"


def test_stash_index_failure():
    stasher = BaseStasher(MockFetcher("v1.0.0"), MockStorage(), FailingIndexer())
    with pytest.raises(AthensError) as info:
        stasher.stash("module", "v1.0.0")
    assert str(info.value) == "index down"
    assert ops(info.value) == ["stasher.Stash", "bad.Index"]


def test_stash_fetch_failure():
    stasher = BaseStasher(FailingFetcher(), MockStorage(), NopIndexer())
    with pytest.raises(AthensError) as info:
        stasher.stash("module", "v1.0.0")
    assert ops(info.value) == ["stasher.Stash", "stasher.fetchModule", "upstream.Fetch"]
    assert kind(info.value) == Kind.NOT_FOUND


def test_new_stasher_applies_wrappers_in_order():
    order = []

    class Tagging(Stasher):
        def __init__(self, inner, tag):
            self.inner = inner
            self.tag = tag

        def stash(self, mod, ver):
            order.append(self.tag)
            return self.inner.stash(mod, ver)

    stasher = new_stasher(
        MockFetcher("v1.0.0"),
        MockStorage(),
        NopIndexer(),
        lambda s: Tagging(s, "first"),
        lambda s: Tagging(s, "second"),
    )
    assert stasher.stash("m", "v1.0.0") == "v1.0.0"
    assert order == ["second", "first"]


class FuncStasher(Stasher):
    def __init__(self, func):
        self.func = func

    def stash(self, mod, ver):
        return self.func(mod, ver)


def test_gcs_lock_already_exists_returns_requested_version():
    def dup(mod, ver):
        raise e("gcp.Save", "exists", Kind.ALREADY_EXISTS)

    assert with_gcs_lock(FuncStasher(dup)).stash("mod", "v1.0.0") == "v1.0.0"


def test_gcs_lock_passes_result_and_wraps_errors():
    assert with_gcs_lock(FuncStasher(lambda m, v: "v9.9.9")).stash("m", "master") == "v9.9.9"

    def broken(mod, ver):
        raise e("gcp.Save", "boom")

    with pytest.raises(AthensError) as info:
        with_gcs_lock(FuncStasher(broken)).stash("m", "v1")
    assert ops(info.value) == ["gcslock.Stash", "gcp.Save"]


def test_pool_wrapper():
    def failing(mod, ver):
        assert (mod, ver) == ("mod", "ver")
        raise RuntimeError("wrapped err")

    stasher = with_pool(2)(FuncStasher(failing))
    with pytest.raises(AthensError) as info:
        stasher.stash("mod", "ver")
    assert str(info.value) == "wrapped err"


def test_pool_limits_concurrency():
    lock = threading.Lock()
    state = {"active": 0, "peak": 0}

    def slow(mod, ver):
        with lock:
            state["active"] += 1
            state["peak"] = max(state["peak"], state["active"])
        time.sleep(0.05)
        with lock:
            state["active"] -= 1
        return "ok"

    stasher = with_pool(2)(FuncStasher(slow))
    with ThreadPoolExecutor(6) as pool:
        results = list(pool.map(lambda i: stasher.stash("mod", f"v{i}"), range(6)))
    assert results == ["ok"] * 6
    assert 1 <= state["peak"] <= 2


def test_pool_rejects_zero_workers():
    with pytest.raises(ValueError):
        with_pool(0)(FuncStasher(lambda m, v: v))


class MockSFStasher(Stasher):
    def __init__(self):
        self.lock = threading.Lock()
        self.num = 0

    def stash(self, mod, ver):
        time.sleep(0.1)
        with self.lock:
            if self.num == 0:
                self.num += 1
                return ""
        raise RuntimeError("second time error")


def _run_five(stasher):
    def attempt(_):
        try:
            stasher.stash("mod", "ver")
        except RuntimeError as err:
            return err
        return None

    with ThreadPoolExecutor(5) as pool:
        return list(pool.map(attempt, range(5)))


def test_single_flight():
    mock = MockSFStasher()
    stasher = with_singleflight(mock)
    assert _run_five(stasher) == [None] * 5
    assert mock.num == 1

    second = _run_five(stasher)
    failures = [err for err in second if err is not None]
    assert failures
    assert all(str(err) == "second time error" for err in failures)


def test_single_flight_keys_are_independent():
    calls = []
    lock = threading.Lock()

    def record(mod, ver):
        with lock:
            calls.append(f"{mod}@{ver}")
        return ver

    stasher = with_singleflight(FuncStasher(record))
    assert stasher.stash("a", "v1") == "v1"
    assert stasher.stash("b", "v2") == "v2"
    assert calls == ["a@v1", "b@v2"]