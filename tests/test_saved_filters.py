from __future__ import annotations

import logging

import pytest

from linear_sync.cache_store import MemoryStorage
from linear_sync.filters import FilterCriteria
from linear_sync.saved_filters import SAVED_FILTERS_NAMESPACE, SavedFilterStore


class BrokenStorage:
    def load(self, namespace):
        raise OSError("unreadable")

    def save(self, namespace, value):
        raise OSError("read-only")


def test_default_filter_starts_as_open_issues():
    store = SavedFilterStore(MemoryStorage())

    assert store.get_default_filter() == FilterCriteria()
    assert store.get_saved_filters() == []


def test_saved_filters_survive_reload():
    storage = MemoryStorage()
    store = SavedFilterStore(storage)
    store.save_filter("My bugs", FilterCriteria(label_ids={"l-bug"}, assigned_to_me=True))
    store.set_default_filter(FilterCriteria(include_completed=True))

    reloaded = SavedFilterStore(storage)

    assert reloaded.get_filter("My bugs") == FilterCriteria(label_ids={"l-bug"}, assigned_to_me=True)
    assert reloaded.get_default_filter() == FilterCriteria(include_completed=True)
    assert storage.load(SAVED_FILTERS_NAMESPACE)["savedFilters"][0]["name"] == "My bugs"


def test_save_filter_replaces_same_name():
    store = SavedFilterStore(MemoryStorage())
    store.save_filter("Urgent", FilterCriteria(priorities={1}))
    store.save_filter("Backlog", FilterCriteria(status_ids={"s-backlog"}))
    store.save_filter("Urgent", FilterCriteria(priorities={1, 2}))

    names = [name for name, _ in store.get_saved_filters()]
    assert names == ["Urgent", "Backlog"]
    assert store.get_filter("Urgent") == FilterCriteria(priorities={1, 2})


def test_save_filter_requires_name():
    store = SavedFilterStore(MemoryStorage())

    with pytest.raises(ValueError):
        store.save_filter("  ", FilterCriteria())


def test_delete_filter():
    store = SavedFilterStore(MemoryStorage())
    store.save_filter("Urgent", FilterCriteria(priorities={1}))

    assert store.delete_filter("Urgent") is True
    assert store.delete_filter("Urgent") is False
    assert store.get_filter("Urgent") is None


def test_invalid_stored_entries_are_skipped():
    storage = MemoryStorage()
    storage.save(
        SAVED_FILTERS_NAMESPACE,
        {
            "defaultFilter": {"colour": "red"},
            "savedFilters": [
                {"name": "Good", "criteria": {"priorities": [1]}},
                {"name": "Bad", "criteria": {"nope": True}},
                {"criteria": {}},
            ],
        },
    )
    store = SavedFilterStore(storage)

    assert store.get_default_filter() == FilterCriteria()
    assert [name for name, _ in store.get_saved_filters()] == ["Good"]


def test_storage_failures_are_logged(caplog: pytest.LogCaptureFixture):
    with caplog.at_level(logging.WARNING, logger="linear_sync.saved_filters"):
        store = SavedFilterStore(BrokenStorage())
        store.save_filter("Urgent", FilterCriteria(priorities={1}))

    assert store.get_filter("Urgent") == FilterCriteria(priorities={1})
    assert "Failed to load saved filters" in caplog.text
    assert "Failed to save filters" in caplog.text
