from __future__ import annotations

import allure
import pytest

from book_distiller.distiller.models import FailureClass
from book_distiller.distiller.validator import (
    ContentValidationError,
    contains_termination_marker,
    strip_termination_marker,
    validate_turn_text,
)

pytestmark = [
    allure.epic("Distillation Runtime"),
    allure.feature("Turn Validation"),
]


@pytest.mark.parametrize(
    "text",
    [
        "<end_of_book>Closing thoughts",
        "Closing thoughts<end_of_book>",
        "Closing <end_of_book> thoughts",
        "  <end_of_book>  ",
        "A<end_of_book>B<end_of_book>",
    ],
)
def test_strip_termination_marker_matches_replace_then_trim(text: str) -> None:
    assert contains_termination_marker(text)
    assert strip_termination_marker(text) == text.replace("<end_of_book>", "").strip()


def test_marker_absent_is_not_detected() -> None:
    assert not contains_termination_marker("end of book")
    assert strip_termination_marker("  plain  ") == "plain"


@pytest.mark.parametrize("text", ["", "   ", "\n\t "])
def test_blank_text_is_an_empty_response(text: str) -> None:
    with pytest.raises(ContentValidationError, match="Response was empty") as error:
        validate_turn_text(text)

    assert error.value.failure_class is FailureClass.EMPTY_RESPONSE


def test_leakage_marker_is_rejected() -> None:
    with pytest.raises(ContentValidationError, match="thought process leakage") as error:
        validate_turn_text("Section <ctrl94> internal monologue")

    assert error.value.failure_class is FailureClass.REASONING_LEAKAGE


def test_valid_text_passes_through_unchanged() -> None:
    assert validate_turn_text(" Chapter one \n") == " Chapter one \n"
