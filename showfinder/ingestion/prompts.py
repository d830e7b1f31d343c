from __future__ import annotations

from showfinder.ingestion.chunker import Chunk

SHOW_FIELDS = (
    "name",
    "startDate",
    "endDate",
    "venueName",
    "address",
    "city",
    "state",
    "entryFee",
    "description",
    "url",
    "contactInfo",
)

STATE_DIRECTORY_HOSTS = ("sportscollectorsdigest",)

_LISTING_SCHEMA = """{
  "name": "Full event name/title",
  "startDate": "Start date in any format you find (will be normalized later)",
  "endDate": "End date if multi-day event, otherwise same as start date",
  "venueName": "Name of venue/location",
  "address": "Full address if available",
  "city": "City name",
  "state": "State abbreviation (2 letters) or full name",
  "entryFee": "Entry fee as number or text",
  "description": "Event description if available",
  "url": "Direct link to event details if available, otherwise use source URL",
  "contactInfo": "Promoter/contact information if available"
}"""

_DIRECTORY_SCHEMA = """{
  "name": "Show name, or \\"Trading Card Show\\" when the listing has none",
  "startDate": "Start date in any format you find",
  "endDate": "End date if multi-day event, otherwise same as start date",
  "venueName": "Name of venue/location",
  "address": "Full address if available",
  "city": "City name",
  "state": "State abbreviation (2 letters) taken from the section heading",
  "entryFee": "Entry fee as number or text",
  "description": "Event description if available",
  "url": "Direct link to event details if available",
  "contactInfo": "Promoter/contact information if available"
}"""


def is_state_directory(source_url: str) -> bool:
    lowered = source_url.lower()
    return any(host in lowered for host in STATE_DIRECTORY_HOSTS)


def build_prompt(chunk: Chunk, source_url: str) -> str:
    if chunk.states or is_state_directory(source_url):
        return build_state_directory_prompt(chunk.text, states=chunk.states)
    return build_listing_prompt(chunk.text, source_url)


def build_listing_prompt(html: str, source_url: str) -> str:
    return f"""
You are a specialized card show event extractor. Analyze the HTML content from {source_url} and extract every trading card show event into a valid JSON array.

Each event object MUST have these keys (use null if information is missing, never omit a key):
{_LISTING_SCHEMA}

RULES:
1. Only extract actual card show events. Ignore unrelated content.
2. For tables or lists of events, extract each event separately.
3. Date ranges like "January 5-6, 2025" are one event with start and end dates.
4. Repeated shows at one venue on different dates are separate entries.
5. Normalize state names to 2-letter codes when possible.
6. Partial information is better than nothing.
7. Output only the JSON array. No explanations or markdown.

HTML CONTENT:
{html}
"""


def build_state_directory_prompt(html: str, *, states: list[str] | None = None) -> str:
    context_note = ""
    if states:
        context_note = (
            f"NOTE: This HTML chunk contains listings for these states: {', '.join(states)}. "
            "Focus on extracting shows from these states."
        )
    return f"""
You are a specialized card show event extractor. Analyze the HTML content from a show directory and extract every trading card show event into a valid JSON array.

CONTEXT: The page groups shows by STATE under uppercase headings (like "ALABAMA", "ARIZONA"). Each listing under a heading is a separate card show. {context_note}

Each event object MUST have these keys (use null if information is missing, never omit a key):
{_DIRECTORY_SCHEMA}

EXTRACTION PATTERN:
1. Find the state names in ALL CAPS.
2. Extract every listing under a state until the next state heading.
3. Listings often look like: "January 5-6, 2025 - Venue Name (City, State)".

RULES:
1. One event object per show, even within the same state section.
2. Use the section heading for the state value.
3. Date ranges like "January 5-6, 2025" are one event with start and end dates.
4. Put phone numbers and emails in contactInfo and admission prices in entryFee.
5. Output only the JSON array. No explanations or markdown.

HTML CONTENT:
{html}
"""
