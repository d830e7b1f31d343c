import pytest

from showfinder.services.feedback import FEEDBACK_TAGS, parse_feedback_tags


def test_parses_tags_before_dash_separator() -> None:
    notes = "CITY_MISSING, VENUE_MISSING - please fix and resubmit"

    assert parse_feedback_tags(notes) == ["CITY_MISSING", "VENUE_MISSING"]


def test_accepts_en_dash_and_lowercase_tokens() -> None:
    assert parse_feedback_tags("duplicate spam – posted twice") == ["DUPLICATE", "SPAM"]


def test_drops_unknown_and_repeated_tokens() -> None:
    assert parse_feedback_tags("EXTRA_HTML, BOGUS, EXTRA_HTML - cleanup") == ["EXTRA_HTML"]


@pytest.mark.parametrize("notes", [None, "", "Looks wrong to me"])
def test_notes_without_known_tags_parse_to_nothing(notes: str | None) -> None:
    assert parse_feedback_tags(notes) == []


def test_vocabulary_is_closed() -> None:
    assert set(FEEDBACK_TAGS) == {
        "DATE_FORMAT",
        "VENUE_MISSING",
        "ADDRESS_POOR",
        "DUPLICATE",
        "MULTI_EVENT_COLLAPSE",
        "EXTRA_HTML",
        "SPAM",
        "STATE_FULL",
        "CITY_MISSING",
    }
