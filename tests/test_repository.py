from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import allure
import pytest
from sqlalchemy import text

from book_distiller.storage.alembic_runner import current_revision
from book_distiller.storage.repository import SettingsRepository

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Settings Store"),
]


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[SettingsRepository]:
    repo = SettingsRepository(tmp_path / "settings.db", prompt_history_limit=3)
    repo.init_schema()
    yield repo
    repo.close()


def test_alembic_schema_is_initialized_to_head(repository: SettingsRepository) -> None:
    with repository.engine.connect() as connection:
        tables = connection.execute(
            text(
                "SELECT name FROM sqlite_master WHERE type = 'table' "
                "AND name IN ('settings', 'prompt_history') ORDER BY name",
            ),
        ).scalars()
        names = list(tables)

    assert current_revision(repository.db_path) == "20261019_0001"
    assert names == ["prompt_history", "settings"]


def test_unmigrated_database_has_no_revision(tmp_path: Path) -> None:
    assert current_revision(tmp_path / "nested" / "fresh.db") is None


def test_init_schema_is_idempotent(repository: SettingsRepository) -> None:
    repository.set("model", "gemini-2.5-pro")

    repository.init_schema()

    assert repository.get("model") == "gemini-2.5-pro"


def test_settings_roundtrip_and_overwrite(repository: SettingsRepository) -> None:
    assert repository.get("api_key") is None

    repository.set("api_key", "first")
    repository.set("api_key", "second")
    repository.set("temperature", "0.3")

    assert repository.get("api_key") == "second"
    assert repository.items() == {"api_key": "second", "temperature": "0.3"}


def test_settings_survive_reopen(tmp_path: Path) -> None:
    db_path = tmp_path / "persisted.db"
    first = SettingsRepository(db_path)
    first.init_schema()
    first.set("seed_prompt", "Outline every chapter.")
    first.close()

    second = SettingsRepository(db_path)
    second.init_schema()
    try:
        assert second.get("seed_prompt") == "Outline every chapter."
    finally:
        second.close()


def test_delete_reports_whether_a_value_existed(repository: SettingsRepository) -> None:
    repository.set("model", "gemini-2.5-pro")

    assert repository.delete("model") is True
    assert repository.delete("model") is False
    assert repository.get("model") is None


def test_unknown_key_is_rejected(repository: SettingsRepository) -> None:
    with pytest.raises(ValueError, match="Unknown setting 'colour'"):
        repository.set("colour", "blue")
    with pytest.raises(ValueError, match="Unknown setting"):
        repository.get("colour")


def test_prompt_history_is_recent_first_deduplicated_and_bounded(
    repository: SettingsRepository,
) -> None:
    repository.record_prompt("first")
    repository.record_prompt("second")
    repository.record_prompt("third")
    repository.record_prompt("  first  ")

    assert repository.list_prompts() == ["first", "third", "second"]

    returned = repository.record_prompt("fourth")

    assert returned == ["fourth", "first", "third"]
    assert repository.list_prompts() == ["fourth", "first", "third"]


def test_blank_prompt_is_not_recorded(repository: SettingsRepository) -> None:
    repository.record_prompt("kept")

    assert repository.record_prompt("   ") == ["kept"]
    assert repository.list_prompts() == ["kept"]
