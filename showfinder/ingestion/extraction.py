from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

import httpx
from google import genai
from google.genai import errors, types
from opentelemetry import trace

from showfinder.core.config import Settings
from showfinder.core.telemetry import traced
from showfinder.ingestion.chunker import Chunk
from showfinder.ingestion.prompts import SHOW_FIELDS, build_prompt
from showfinder.ingestion.retry import Sleep, with_retries

DEFAULT_MODEL_TIMEOUT_SECONDS = 30.0
RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}

_FENCE_OPEN_RE = re.compile(r"^```(?:json|JSON)?\s*")
_FENCE_CLOSE_RE = re.compile(r"\s*```\s*$")
_ARRAY_OF_OBJECTS_RE = re.compile(r"\[\s*\{[\s\S]*?\}\s*\]")

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class ModelCallError(Exception):
    """Raised when the model call fails, times out or returns nothing."""

    def __init__(self, message: str, *, retryable: bool = False, status_code: int | None = None) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code


class ParseError(Exception):
    """Raised when model output cannot be recovered as a JSON array."""


class ModelClient(Protocol):
    async def generate(self, prompt: str) -> str: ...


class GeminiModelClient:
    def __init__(
        self,
        *,
        api_key: str,
        model: str,
        temperature: float = 0.2,
        top_p: float = 0.8,
        top_k: int = 40,
        max_output_tokens: int = 8192,
        client: genai.Client | None = None,
    ) -> None:
        self.model = model
        self._client = client or genai.Client(api_key=api_key)
        self._config = types.GenerateContentConfig(
            temperature=temperature,
            top_p=top_p,
            top_k=top_k,
            max_output_tokens=max_output_tokens,
        )

    async def generate(self, prompt: str) -> str:
        try:
            response = await self._client.aio.models.generate_content(
                model=self.model,
                contents=prompt,
                config=self._config,
            )
        except errors.APIError as exc:
            code = getattr(exc, "code", None)
            raise ModelCallError(
                f"model call failed: {exc}",
                retryable=code in RETRYABLE_STATUS_CODES,
                status_code=code,
            ) from exc
        except httpx.HTTPError as exc:
            raise ModelCallError(f"model transport failed: {exc.__class__.__name__}", retryable=True) from exc

        text = response.text
        if not text:
            raise ModelCallError("model returned no text")
        return text


@dataclass(slots=True)
class ChunkDiagnostic:
    index: int
    strategy: str
    label: str
    size: int
    ok: bool
    candidate_count: int = 0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "strategy": self.strategy,
            "label": self.label,
            "size": self.size,
            "ok": self.ok,
            "candidate_count": self.candidate_count,
            "error": self.error,
        }


@dataclass(slots=True)
class ExtractionResult:
    source_url: str
    candidates: list[dict[str, Any]] = field(default_factory=list)
    diagnostics: list[ChunkDiagnostic] = field(default_factory=list)

    @property
    def succeeded_chunks(self) -> int:
        return sum(1 for diagnostic in self.diagnostics if diagnostic.ok)

    @property
    def failed_chunks(self) -> int:
        return sum(1 for diagnostic in self.diagnostics if not diagnostic.ok)


def strip_code_fences(text: str) -> str:
    cleaned = text.strip()
    cleaned = _FENCE_OPEN_RE.sub("", cleaned)
    cleaned = _FENCE_CLOSE_RE.sub("", cleaned)
    return cleaned.strip()


def parse_model_response(text: str) -> list[dict[str, Any]]:
    cleaned = strip_code_fences(text)
    attempts = [cleaned]
    if not (cleaned.startswith("[") and cleaned.endswith("]")):
        first = cleaned.find("[")
        last = cleaned.rfind("]")
        if first != -1 and last > first:
            attempts.append(cleaned[first : last + 1])
        match = _ARRAY_OF_OBJECTS_RE.search(cleaned)
        if match:
            attempts.append(match.group(0))

    for attempt in attempts:
        try:
            decoded = json.loads(attempt)
        except json.JSONDecodeError:
            continue
        if isinstance(decoded, list):
            return [item for item in decoded if isinstance(item, dict)]
    raise ParseError(f"model response is not a JSON array (first 80 chars: {cleaned[:80]!r})")


def complete_candidate(raw: dict[str, Any], *, source_url: str, extracted_at: datetime) -> dict[str, Any]:
    candidate: dict[str, Any] = {name: _coerce_field(raw.get(name)) for name in SHOW_FIELDS}
    if not candidate["url"]:
        candidate["url"] = source_url
    if not candidate["endDate"]:
        candidate["endDate"] = candidate["startDate"]
    candidate["extractedAt"] = extracted_at.isoformat()
    return candidate


class ExtractionEngine:
    def __init__(
        self,
        model: ModelClient,
        *,
        timeout_seconds: float = DEFAULT_MODEL_TIMEOUT_SECONDS,
        max_retries: int = 0,
        retry_delay: float = 2.0,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.sleep = sleep

    async def call_model(self, prompt: str) -> str:
        try:
            return await asyncio.wait_for(self.model.generate(prompt), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise ModelCallError(f"model call timed out after {self.timeout_seconds:.0f}s") from exc

    async def extract_chunk(self, chunk: Chunk, source_url: str) -> list[dict[str, Any]]:
        prompt = build_prompt(chunk, source_url)
        text = await with_retries(
            lambda: self.call_model(prompt),
            max_retries=self.max_retries,
            retry_delay=self.retry_delay,
            sleep=self.sleep,
            describe=f"model call for {chunk.label}",
        )
        if text is None:
            raise ModelCallError("model returned no text")
        return parse_model_response(text)

    async def extract(self, source_url: str, chunks: list[Chunk]) -> ExtractionResult:
        result = ExtractionResult(source_url=source_url)
        for index, chunk in enumerate(chunks):
            diagnostic = ChunkDiagnostic(
                index=index,
                strategy=chunk.strategy,
                label=chunk.label,
                size=chunk.size,
                ok=False,
            )
            with traced(tracer, "ingest.extract_chunk", {"chunk.index": index, "chunk.size": chunk.size}):
                try:
                    raw_candidates = await self.extract_chunk(chunk, source_url)
                except (ModelCallError, ParseError) as exc:
                    diagnostic.error = str(exc)
                    logger.warning(
                        "chunk extraction failed url=%s chunk=%s/%s error=%s",
                        source_url,
                        index + 1,
                        len(chunks),
                        exc,
                    )
                    result.diagnostics.append(diagnostic)
                    continue

            extracted_at = datetime.now(timezone.utc)
            completed = [
                complete_candidate(raw, source_url=source_url, extracted_at=extracted_at) for raw in raw_candidates
            ]
            diagnostic.ok = True
            diagnostic.candidate_count = len(completed)
            result.candidates.extend(completed)
            result.diagnostics.append(diagnostic)
            logger.info(
                "chunk extracted url=%s chunk=%s/%s candidates=%s",
                source_url,
                index + 1,
                len(chunks),
                len(completed),
            )
        return result


def _coerce_field(value: Any) -> str | int | float | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped or stripped.lower() == "null":
            return None
        return stripped
    return json.dumps(value)


def build_engine(settings: Settings) -> ExtractionEngine | None:
    if not settings.gemini_api_key:
        return None
    model = GeminiModelClient(
        api_key=settings.gemini_api_key,
        model=settings.gemini_model,
        temperature=settings.gemini_temperature,
        top_p=settings.gemini_top_p,
        top_k=settings.gemini_top_k,
        max_output_tokens=settings.gemini_max_output_tokens,
    )
    return ExtractionEngine(
        model,
        timeout_seconds=settings.gemini_timeout_seconds,
        max_retries=settings.ingest_max_retries,
        retry_delay=settings.ingest_retry_delay_seconds,
    )
