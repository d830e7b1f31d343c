import re

FEEDBACK_TAGS = (
    "DATE_FORMAT",
    "VENUE_MISSING",
    "ADDRESS_POOR",
    "DUPLICATE",
    "MULTI_EVENT_COLLAPSE",
    "EXTRA_HTML",
    "SPAM",
    "STATE_FULL",
    "CITY_MISSING",
)

_TAG_SECTION_SEPARATOR_RE = re.compile(r"[-–]")
_TAG_TOKEN_SPLIT_RE = re.compile(r"[,\s]+")


def parse_feedback_tags(notes: str | None) -> list[str]:
    """Return the recognized tags from the prefix of an admin note.

    ``"CITY_MISSING, VENUE_MISSING - please fix"`` yields both tags. Unknown
    tokens are dropped; the note itself is never modified.
    """
    if not notes:
        return []
    tag_section = _TAG_SECTION_SEPARATOR_RE.split(notes, maxsplit=1)[0]
    tags: list[str] = []
    for token in _TAG_TOKEN_SPLIT_RE.split(tag_section.strip()):
        tag = token.strip().upper()
        if tag in FEEDBACK_TAGS and tag not in tags:
            tags.append(tag)
    return tags
