import pytest

from timebox.errors import PersistenceWriteFailure
from timebox.local_cache import SELECTED_DATE_KEY, ZOOM_STATE_KEY, LocalCache


def test_set_then_get(local_cache):
    local_cache.set(ZOOM_STATE_KEY, True)
    local_cache.set(SELECTED_DATE_KEY, "2024-05-10")
    assert local_cache.get(ZOOM_STATE_KEY) is True
    assert local_cache.get(SELECTED_DATE_KEY) == "2024-05-10"
    assert local_cache.keys() == [SELECTED_DATE_KEY, ZOOM_STATE_KEY]


def test_missing_key_returns_default(local_cache):
    assert local_cache.get("habits", []) == []


def test_malformed_json_falls_back_to_default(local_cache):
    local_cache.set("habits", [{"name": "Read"}])
    (local_cache.root / "habits.json").write_text("{not json", encoding="utf-8")
    assert local_cache.get("habits", []) == []


def test_delete_is_idempotent(local_cache):
    local_cache.set("user-tags", [{"name": "work"}])
    local_cache.delete("user-tags")
    local_cache.delete("user-tags")
    assert local_cache.get("user-tags") is None


def test_unwritable_root_raises_write_failure(tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("x", encoding="utf-8")
    cache = LocalCache(blocker / "nested")
    with pytest.raises(PersistenceWriteFailure):
        cache.set("habits", [])
