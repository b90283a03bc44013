"""Persistent key/value settings and prompt history backed by SQLModel + SQLite."""

from __future__ import annotations

from pathlib import Path

from sqlmodel import Session, col, select

from book_distiller.distiller.prompts import PROMPT_HISTORY_LIMIT, remember_prompt
from book_distiller.storage.alembic_runner import upgrade_head
from book_distiller.storage.common import build_sqlite_engine, utc_now
from book_distiller.storage.sqlmodel_models import PromptHistoryEntry, StoredSetting

SETTING_KEYS = ("api_key", "model", "temperature", "seed_prompt")


class SettingsRepository:
    """Process-wide settings persisted between runs."""

    def __init__(
        self,
        db_path: Path,
        *,
        prompt_history_limit: int = PROMPT_HISTORY_LIMIT,
        sqlite_busy_timeout_ms: int = 5_000,
    ) -> None:
        self.db_path = db_path
        self.prompt_history_limit = prompt_history_limit
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def get(self, key: str) -> str | None:
        _require_known_key(key)
        with Session(self.engine) as session:
            row = session.get(StoredSetting, key)
            return row.value if row is not None else None

    def set(self, key: str, value: str) -> None:
        _require_known_key(key)
        with Session(self.engine) as session:
            row = session.get(StoredSetting, key)
            if row is None:
                row = StoredSetting(key=key, value=value, updated_at=utc_now())
            else:
                row.value = value
                row.updated_at = utc_now()
            session.add(row)
            session.commit()

    def delete(self, key: str) -> bool:
        _require_known_key(key)
        with Session(self.engine) as session:
            row = session.get(StoredSetting, key)
            if row is None:
                return False
            session.delete(row)
            session.commit()
            return True

    def items(self) -> dict[str, str]:
        with Session(self.engine) as session:
            rows = session.exec(select(StoredSetting).order_by(col(StoredSetting.key))).all()
            return {row.key: row.value for row in rows}

    def list_prompts(self) -> list[str]:
        """Prompt history, most recent first."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(PromptHistoryEntry).order_by(
                    col(PromptHistoryEntry.used_at).desc(),
                    col(PromptHistoryEntry.entry_id).desc(),
                ),
            ).all()
            return [row.prompt for row in rows]

    def record_prompt(self, prompt: str) -> list[str]:
        """Move ``prompt`` to the front of the history and trim to capacity."""

        updated = remember_prompt(
            self.list_prompts(),
            prompt,
            limit=self.prompt_history_limit,
        )
        normalized = prompt.strip()
        with Session(self.engine) as session:
            rows = session.exec(select(PromptHistoryEntry)).all()
            keep = set(updated)
            for row in rows:
                if row.prompt not in keep:
                    session.delete(row)
                elif row.prompt == normalized:
                    row.used_at = utc_now()
                    session.add(row)
            if normalized and all(row.prompt != normalized for row in rows):
                session.add(PromptHistoryEntry(prompt=normalized, used_at=utc_now()))
            session.commit()
        return updated


def _require_known_key(key: str) -> None:
    if key not in SETTING_KEYS:
        raise ValueError(
            f"Unknown setting {key!r}. Expected one of: {', '.join(SETTING_KEYS)}.",
        )
