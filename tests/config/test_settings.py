"""Tests for environment-driven settings."""

import pytest
from pydantic import ValidationError

from coachplan.config.settings import Settings, settings
from coachplan.store.base import IndexConfig
from coachplan.store.factory import build_store, get_store
from coachplan.store.memory import InMemoryDocumentStore


class TestSettings:
    def test_log_level_is_normalized(self, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "debug")
        assert Settings().log_level == "DEBUG"

    def test_invalid_log_level_falls_back_to_info(self, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "verbose")
        assert Settings().log_level == "INFO"

    def test_store_backend_is_validated(self, monkeypatch):
        monkeypatch.setenv("STORE_BACKEND", " Memory ")
        assert Settings().store_backend == "memory"

        monkeypatch.setenv("STORE_BACKEND", "redis")
        with pytest.raises(ValidationError):
            Settings()

    def test_indexed_field_map(self, monkeypatch):
        monkeypatch.setenv("INDEXED_FIELDS", "client_sessions:client_id, client_plan_content/*:provenance.source_id,bogus,")
        assert Settings().indexed_field_map() == {
            "client_sessions": {"client_id"},
            "client_plan_content/*": {"provenance.source_id"},
        }

    def test_default_indexes_cover_provenance_lookups(self):
        config = IndexConfig(Settings().indexed_field_map())
        for collection in ("client_session_content", "client_plan_content", "client_nutrition_plan_content"):
            assert config.is_indexed(collection, "provenance.source_id")
        assert not config.is_indexed("client_plan_content", "title")


def test_build_memory_store():
    assert isinstance(build_store("memory"), InMemoryDocumentStore)


def test_get_store_is_a_lazy_singleton(monkeypatch):
    monkeypatch.setattr(settings, "store_backend", "memory")
    monkeypatch.setattr("coachplan.store.factory._store", None)

    store = get_store()
    assert isinstance(store, InMemoryDocumentStore)
    assert get_store() is store
