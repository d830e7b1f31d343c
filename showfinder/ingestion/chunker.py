from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

DEFAULT_MAX_CHUNK_BYTES = 100_000
DEFAULT_MAX_CHUNKS = 3

STRATEGY_STATE_HEADINGS = "state_headings"
STRATEGY_DATE_WINDOWS = "date_windows"
STRATEGY_POSITIONAL = "positional"

_STATE_HEADING_RE = re.compile(r"([A-Z]{4,})\s*</(?:h\d|strong|b|p)>")
_LINE_BREAK_RE = re.compile(r"<br\s*/?>", re.IGNORECASE)
_DATE_RANGE_RE = re.compile(
    r"(?:January|February|March|April|May|June|July|August|September|October|November|December)"
    r"\s+\d{1,2}(?:-|–|\s+to\s+)\d{1,2},?\s+\d{4}"
)

MIN_SECTION_LINE_BREAKS = 3
HEADING_CONTEXT_CHARS = 200
MERGE_FLUSH_RATIO = 0.8
MIN_DATE_MATCHES = 5
MIN_WINDOW_DATES = 3
DATE_WINDOW_LEAD_CHARS = 1000
DATE_WINDOW_CHARS = 2000
DATE_WINDOW_PROXIMITY_CHARS = 5000

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Chunk:
    text: str
    strategy: str
    label: str
    states: list[str] = field(default_factory=list)

    @property
    def size(self) -> int:
        return len(self.text)


@dataclass(slots=True)
class ChunkPlan:
    chunks: list[Chunk]
    strategy: str
    total_candidates: int

    @property
    def dropped(self) -> int:
        return max(0, self.total_candidates - len(self.chunks))


def chunk_html(
    html: str,
    *,
    max_chunk_bytes: int = DEFAULT_MAX_CHUNK_BYTES,
    max_chunks: int = DEFAULT_MAX_CHUNKS,
) -> ChunkPlan:
    """Split a page into model-sized chunks, trying content-aware strategies first."""
    if max_chunk_bytes <= 0:
        raise ValueError("max_chunk_bytes must be positive")
    if max_chunks <= 0:
        raise ValueError("max_chunks must be positive")

    chunks = chunk_by_state_headings(html, max_chunk_bytes=max_chunk_bytes)
    strategy = STRATEGY_STATE_HEADINGS
    if not chunks:
        chunks = chunk_by_date_windows(html, max_chunk_bytes=max_chunk_bytes)
        strategy = STRATEGY_DATE_WINDOWS
    if not chunks:
        chunks = chunk_by_position(html, max_chunk_bytes=max_chunk_bytes)
        strategy = STRATEGY_POSITIONAL

    total = len(chunks)
    if total > max_chunks:
        logger.info("limiting chunks from %s to %s strategy=%s", total, max_chunks, strategy)
        chunks = chunks[:max_chunks]
    return ChunkPlan(chunks=chunks, strategy=strategy, total_candidates=total)


def chunk_by_state_headings(html: str, *, max_chunk_bytes: int) -> list[Chunk]:
    headings = list(_STATE_HEADING_RE.finditer(html))
    if not headings:
        return []

    sections: dict[str, str] = {}
    for index, match in enumerate(headings):
        start = match.start()
        end = headings[index + 1].start() if index + 1 < len(headings) else len(html)
        section = html[start:end]
        line_breaks = len(_LINE_BREAK_RE.findall(section))
        if line_breaks <= MIN_SECTION_LINE_BREAKS:
            continue
        context_start = max(0, start - HEADING_CONTEXT_CHARS)
        context_size = min(max_chunk_bytes, (end - start) + HEADING_CONTEXT_CHARS)
        sections[match.group(1)] = html[context_start : context_start + context_size]

    chunks: list[Chunk] = []
    current = ""
    current_states: list[str] = []

    def flush() -> None:
        nonlocal current, current_states
        if current:
            chunks.append(
                Chunk(
                    text=current,
                    strategy=STRATEGY_STATE_HEADINGS,
                    label=", ".join(current_states),
                    states=list(current_states),
                )
            )
        current = ""
        current_states = []

    for state, section in sections.items():
        if current and len(current) + len(section) > max_chunk_bytes:
            flush()
        current = section if not current else f"{current}\n\n{section}"
        current_states.append(state)
        if len(current) >= max_chunk_bytes * MERGE_FLUSH_RATIO:
            flush()
    flush()
    return chunks


def chunk_by_date_windows(html: str, *, max_chunk_bytes: int) -> list[Chunk]:
    matches = list(_DATE_RANGE_RE.finditer(html))
    if len(matches) <= MIN_DATE_MATCHES:
        return []

    chunks: list[Chunk] = []
    window_start = 0
    window_size = 0
    date_count = 0

    def emit() -> None:
        if date_count > MIN_WINDOW_DATES and window_size > 0:
            chunks.append(
                Chunk(
                    text=html[window_start : window_start + window_size],
                    strategy=STRATEGY_DATE_WINDOWS,
                    label=f"Date section {len(chunks) + 1}",
                )
            )

    for match in matches:
        position = match.start()
        if window_size == 0 or position > window_start + window_size + DATE_WINDOW_PROXIMITY_CHARS:
            emit()
            window_start = max(0, position - DATE_WINDOW_LEAD_CHARS)
            window_size = min(max_chunk_bytes, DATE_WINDOW_CHARS)
            date_count = 1
        else:
            window_size = min(max_chunk_bytes, position + DATE_WINDOW_LEAD_CHARS - window_start)
            date_count += 1
    emit()
    return chunks


def chunk_by_position(html: str, *, max_chunk_bytes: int) -> list[Chunk]:
    chunks = [Chunk(text=html[:max_chunk_bytes], strategy=STRATEGY_POSITIONAL, label="Document start")]
    if len(html) > max_chunk_bytes * 2:
        middle_start = len(html) // 2 - max_chunk_bytes // 2
        chunks.append(
            Chunk(
                text=html[middle_start : middle_start + max_chunk_bytes],
                strategy=STRATEGY_POSITIONAL,
                label="Document middle",
            )
        )
    if len(html) > max_chunk_bytes * 3:
        chunks.append(
            Chunk(
                text=html[max(0, len(html) - max_chunk_bytes) :],
                strategy=STRATEGY_POSITIONAL,
                label="Document end",
            )
        )
    return chunks
