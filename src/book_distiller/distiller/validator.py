"""Finalized turn text validation and termination marker handling."""

from __future__ import annotations

from book_distiller.distiller.models import FailureClass
from book_distiller.distiller.prompts import END_OF_BOOK_MARKER, REASONING_LEAKAGE_MARKER

EMPTY_RESPONSE_MESSAGE = "Invalid response: Response was empty."
LEAKAGE_MESSAGE = "Invalid response: Detected thought process leakage."


class ContentValidationError(Exception):
    """A completed turn whose text must not be stored."""

    def __init__(self, message: str, *, failure_class: FailureClass) -> None:
        super().__init__(message)
        self.failure_class = failure_class


def validate_turn_text(text: str) -> str:
    """Return ``text`` unchanged or raise :class:`ContentValidationError`."""

    if not text.strip():
        raise ContentValidationError(
            EMPTY_RESPONSE_MESSAGE,
            failure_class=FailureClass.EMPTY_RESPONSE,
        )
    if REASONING_LEAKAGE_MARKER in text:
        raise ContentValidationError(
            LEAKAGE_MESSAGE,
            failure_class=FailureClass.REASONING_LEAKAGE,
        )
    return text


def contains_termination_marker(text: str, marker: str = END_OF_BOOK_MARKER) -> bool:
    return marker in text


def strip_termination_marker(text: str, marker: str = END_OF_BOOK_MARKER) -> str:
    """Remove every occurrence of ``marker`` and trim the remainder."""

    return text.replace(marker, "").strip()
