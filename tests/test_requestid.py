from modproxy.requestid import from_context, set_in_context


def test_round_trip():
    ctx = set_in_context({}, "req-42")
    assert from_context(ctx) == "req-42"


def test_missing_id_gives_empty_string():
    assert from_context({}) == ""


def test_original_context_is_not_modified():
    original = {"other": 1}
    ctx = set_in_context(original, "req-1")
    assert original == {"other": 1}
    assert ctx["other"] == 1
    assert from_context(ctx) == "req-1"


def test_later_value_overrides_earlier():
    ctx = set_in_context(set_in_context({}, "first"), "second")
    assert from_context(ctx) == "second"