"""
Tests for the in-memory record/replay store.
"""

from rollout_dev.sdk.rollout.cache_store import (
    CacheStore,
    build_cache_entries,
    cache_key,
)


def _span(path: str, output: str, name: str = "llm") -> dict:
    return {
        "name": name,
        "input": '{"prompt": "hi"}',
        "output": output,
        "attributes": {"lmnr.span.path": path},
        "path": path,
    }


def test_cache_key_puts_index_first():
    assert cache_key("root.llm", 0) == "0:root.llm"
    assert cache_key("a:b", 3) == "3:a:b"


def test_build_cache_entries_keeps_first_n_per_path():
    """Spans are grouped by path in order and truncated to the requested count."""
    spans = [
        _span("root.llm", "first"),
        _span("root.tool", "tool-1"),
        _span("root.llm", "second"),
        _span("root.llm", "third"),
    ]

    entries = build_cache_entries(spans, {"root.llm": 2, "root.tool": 1})

    assert set(entries) == {"0:root.llm", "1:root.llm", "0:root.tool"}
    assert entries["0:root.llm"]["output"] == "first"
    assert entries["1:root.llm"]["output"] == "second"
    assert entries["0:root.tool"]["output"] == "tool-1"
    assert "path" not in entries["0:root.llm"]


def test_build_cache_entries_ignores_unrequested_paths_and_missing_spans():
    spans = [_span("root.other", "x")]

    entries = build_cache_entries(spans, {"root.llm": 2})

    assert entries == {}


def test_build_cache_entries_defaults_missing_fields():
    entries = build_cache_entries([{"path": "p"}], {"p": 1})
    assert entries == {"0:p": {"name": "", "input": "", "output": "", "attributes": {}}}


def test_store_get_and_set_all():
    store = CacheStore()
    store.set_all({"0:root.llm": {"name": "llm", "input": {}, "output": "a", "attributes": {}}})

    assert len(store) == 1
    assert store.get("root.llm", 0)["output"] == "a"
    assert store.get("root.llm", 1) is None


def test_store_set_all_replaces_entries():
    store = CacheStore()
    store.set_all({"0:a": {"name": "a", "input": None, "output": "1", "attributes": {}}})
    store.set_all({"0:b": {"name": "b", "input": None, "output": "2", "attributes": {}}})

    assert store.get("a", 0) is None
    assert store.get("b", 0) is not None


def test_store_update_swaps_in_a_new_dict():
    """Readers holding the old snapshot never see the update."""
    store = CacheStore()
    store.set_all({"0:a": {"name": "a", "input": None, "output": "1", "attributes": {}}})
    snapshot = store.entries()

    store.update({"0:b": {"name": "b", "input": None, "output": "2", "attributes": {}}})

    assert set(snapshot) == {"0:a"}
    assert set(store.entries()) == {"0:a", "0:b"}


def test_store_clear_resets_entries_and_metadata():
    store = CacheStore()
    store.set_all({"0:a": {"name": "a", "input": None, "output": "1", "attributes": {}}})
    store.set_metadata({"a": 1}, {"a": {"system": "s"}})

    store.clear()

    assert len(store) == 0
    assert store.metadata == {"pathToCount": {}, "overrides": None}


def test_metadata_halves_are_replaced_independently():
    store = CacheStore()
    store.set_metadata({"a": 1}, {"a": {"system": "s"}})

    store.set_path_to_count({"b": 2})
    assert store.metadata == {"pathToCount": {"b": 2}, "overrides": {"a": {"system": "s"}}}

    store.set_overrides(None)
    assert store.metadata == {"pathToCount": {"b": 2}, "overrides": None}


def test_metadata_is_copied_on_set():
    path_to_count = {"a": 1}
    store = CacheStore()
    store.set_metadata(path_to_count)

    path_to_count["a"] = 5

    assert store.metadata["pathToCount"] == {"a": 1}


def test_build_cache_entries_decodes_string_encoded_rows():
    """SQL rows carry input and attributes as JSON text."""
    row = {
        "name": "llm",
        "input": '[{"role": "user", "content": "hi"}]',
        "output": '{"content": "hello"}',
        "attributes": '{"lmnr.span.path": ["root", "llm"], "gen_ai.system": "openai"}',
        "path": "root.llm",
    }

    entry = build_cache_entries([row], {"root.llm": 1})["0:root.llm"]

    assert entry["input"] == [{"role": "user", "content": "hi"}]
    assert entry["attributes"] == {
        "lmnr.span.path": ["root", "llm"],
        "gen_ai.system": "openai",
    }
    # replay decodes the output, so it stays JSON text here
    assert entry["output"] == '{"content": "hello"}'


def test_build_cache_entries_encodes_structured_output_and_drops_bad_attributes():
    row = {
        "name": "llm",
        "input": "plain prompt",
        "output": {"content": "hello"},
        "attributes": "not json",
        "path": "root.llm",
    }

    entry = build_cache_entries([row], {"root.llm": 1})["0:root.llm"]

    assert entry["input"] == "plain prompt"
    assert entry["output"] == '{"content":"hello"}'
    assert entry["attributes"] == {}
