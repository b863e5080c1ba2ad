"""
Named filter presets and the default filter, kept in durable storage.
"""

from __future__ import annotations

import logging
from typing import Any

from .cache_store import DurableStorage
from .filters import FilterCriteria

logger = logging.getLogger(__name__)

SAVED_FILTERS_NAMESPACE = "linearSavedFilters"


class SavedFilterStore:
    """
    Stores `{"defaultFilter": {...}, "savedFilters": [{"name", "criteria"}]}`
    under one namespace. Write failures are logged; the in-memory copy still
    reflects the change for this process.
    """

    def __init__(self, storage: DurableStorage, namespace: str = SAVED_FILTERS_NAMESPACE):
        self._storage = storage
        self._namespace = namespace
        self._state = self._load()

    def _load(self) -> dict[str, Any]:
        try:
            raw = self._storage.load(self._namespace)
        except Exception as exc:
            logger.warning("Failed to load saved filters: %s", exc)
            raw = None
        if not isinstance(raw, dict):
            return {"defaultFilter": None, "savedFilters": []}
        saved = [
            item
            for item in raw.get("savedFilters") or []
            if isinstance(item, dict) and item.get("name")
        ]
        return {"defaultFilter": raw.get("defaultFilter"), "savedFilters": saved}

    def _save(self) -> None:
        try:
            self._storage.save(self._namespace, self._state)
        except Exception as exc:
            logger.warning("Failed to save filters: %s", exc)

    def get_default_filter(self) -> FilterCriteria:
        raw = self._state["defaultFilter"]
        if not raw:
            return FilterCriteria()
        try:
            return FilterCriteria.from_dict(raw)
        except ValueError as exc:
            logger.warning("Ignoring invalid default filter: %s", exc)
            return FilterCriteria()

    def set_default_filter(self, criteria: FilterCriteria) -> None:
        self._state["defaultFilter"] = criteria.to_dict()
        self._save()

    def get_saved_filters(self) -> list[tuple[str, FilterCriteria]]:
        filters: list[tuple[str, FilterCriteria]] = []
        for item in self._state["savedFilters"]:
            try:
                filters.append((item["name"], FilterCriteria.from_dict(item.get("criteria"))))
            except ValueError as exc:
                logger.warning("Skipping invalid saved filter %r: %s", item["name"], exc)
        return filters

    def get_filter(self, name: str) -> FilterCriteria | None:
        for saved_name, criteria in self.get_saved_filters():
            if saved_name == name:
                return criteria
        return None

    def save_filter(self, name: str, criteria: FilterCriteria) -> None:
        if not name or not name.strip():
            raise ValueError("Filter name must not be empty")
        entry = {"name": name, "criteria": criteria.to_dict()}
        saved = self._state["savedFilters"]
        for i, item in enumerate(saved):
            if item["name"] == name:
                saved[i] = entry
                break
        else:
            saved.append(entry)
        self._save()

    def delete_filter(self, name: str) -> bool:
        saved = self._state["savedFilters"]
        remaining = [item for item in saved if item["name"] != name]
        if len(remaining) == len(saved):
            return False
        self._state["savedFilters"] = remaining
        self._save()
        return True
