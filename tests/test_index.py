import time
from datetime import datetime, timezone

import pytest

from modproxy.errors import AthensError, Kind, is_kind
from modproxy.index import ZERO_TIME, Line, MemIndexer, NopIndexer


def test_empty_index():
    assert MemIndexer().lines(ZERO_TIME, 2000) == []


def test_lines_in_order():
    idx = MemIndexer()
    for i in range(10):
        idx.index(f"mod{i}", f"{i}.0.0")
    expected = [Line(f"mod{i}", f"{i}.0.0") for i in range(10)]
    assert idx.lines(ZERO_TIME, 2000) == expected


def test_respects_limit():
    idx = MemIndexer()
    for i in range(10):
        idx.index(f"mod{i}", f"{i}.0.0")
    assert idx.lines(ZERO_TIME, 5) == [Line(f"mod{i}", f"{i}.0.0") for i in range(5)]
    assert idx.lines(ZERO_TIME, 0) == []


def test_respects_since():
    idx = MemIndexer()
    idx.index("tobeignored", "v1.2.3")
    time.sleep(0.05)
    since = datetime.now(timezone.utc)
    idx.index("kept", "v1.0.0")
    assert idx.lines(since, 2000) == [Line("kept", "v1.0.0")]


def test_since_after_everything():
    idx = MemIndexer()
    idx.index("a", "v1.0.0")
    time.sleep(0.05)
    assert idx.lines(datetime.now(timezone.utc), 2000) == []


def test_timestamp_is_set():
    idx = MemIndexer()
    before = datetime.now(timezone.utc)
    idx.index("a", "v1.0.0")
    (line,) = idx.lines(ZERO_TIME, 10)
    assert line.timestamp >= before


def test_duplicate_raises_already_exists():
    idx = MemIndexer()
    idx.index("gomods.io/tobeduplicated", "v0.1.0")
    with pytest.raises(AthensError) as info:
        idx.index("gomods.io/tobeduplicated", "v0.1.0")
    assert is_kind(info.value, Kind.ALREADY_EXISTS)
    assert str(info.value) == "gomods.io/tobeduplicated@v0.1.0 already indexed"
    assert idx.lines(ZERO_TIME, 10) == [Line("gomods.io/tobeduplicated", "v0.1.0")]


def test_clear():
    idx = MemIndexer()
    idx.index("a", "v1.0.0")
    idx.clear()
    assert idx.lines(ZERO_TIME, 10) == []
    idx.index("a", "v1.0.0")
    assert len(idx.lines(ZERO_TIME, 10)) == 1


def test_nop_indexer():
    idx = NopIndexer()
    idx.index("a", "v1.0.0")
    idx.index("a", "v1.0.0")
    assert idx.lines(ZERO_TIME, 10) == []