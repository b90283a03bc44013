"""Append-only audit trail of user, assistant and system events."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import datetime

from book_distiller.distiller.models import TraceEntry, TraceRole
from book_distiller.storage.common import utc_now

logger = logging.getLogger(__name__)

TraceListener = Callable[[TraceEntry], None]

_LOG_PREVIEW_CHARS = 200


class TraceRecorder:
    """Timestamped, strictly ordered trace for one job."""

    def __init__(
        self,
        *,
        job_id: str,
        clock: Callable[[], datetime] = utc_now,
        listener: TraceListener | None = None,
    ) -> None:
        self.job_id = job_id
        self._clock = clock
        self._listener = listener
        self._entries: list[TraceEntry] = []

    @property
    def entries(self) -> tuple[TraceEntry, ...]:
        return tuple(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def user(self, content: str) -> TraceEntry:
        return self.append(TraceRole.USER, content)

    def assistant(self, content: str) -> TraceEntry:
        return self.append(TraceRole.ASSISTANT, content)

    def system(self, content: str) -> TraceEntry:
        return self.append(TraceRole.SYSTEM, content)

    def append(self, role: TraceRole, content: str) -> TraceEntry:
        entry = TraceEntry(timestamp=self._clock(), role=role, content=content)
        self._entries.append(entry)
        logger.info(
            "job=%s trace role=%s %s",
            self.job_id,
            role.value,
            _preview(content),
        )
        if self._listener is not None:
            self._listener(entry)
        return entry

    def to_jsonl(self) -> str:
        """Serialize entries as JSON lines for the trace export."""

        return "".join(
            json.dumps(entry.to_dict(), ensure_ascii=False) + "\n" for entry in self._entries
        )


def render_metadata(metadata: dict[str, object]) -> str:
    """Trace rendering of a turn's response metadata."""

    return "[METADATA]\n" + json.dumps(metadata, indent=2, ensure_ascii=False, default=str)


def _preview(content: str) -> str:
    compact = " ".join(content.split())
    if len(compact) <= _LOG_PREVIEW_CHARS:
        return compact
    return compact[:_LOG_PREVIEW_CHARS] + "..."
