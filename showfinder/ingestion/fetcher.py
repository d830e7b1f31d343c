from __future__ import annotations

import logging

import httpx
from opentelemetry import trace

from showfinder.core.telemetry import traced

DEFAULT_FETCH_TIMEOUT_SECONDS = 15.0
DEFAULT_USER_AGENT = "Mozilla/5.0 (compatible; CardShowFinderBot/1.0)"

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class FetchError(Exception):
    """Raised when a page cannot be retrieved: timeout, transport error or non-2xx."""

    def __init__(self, url: str, message: str, *, status_code: int | None = None) -> None:
        super().__init__(f"{message} url={url}")
        self.url = url
        self.status_code = status_code


async def fetch_html(
    url: str,
    *,
    client: httpx.AsyncClient | None = None,
    timeout_seconds: float = DEFAULT_FETCH_TIMEOUT_SECONDS,
    user_agent: str = DEFAULT_USER_AGENT,
) -> str:
    headers = {
        "User-Agent": user_agent,
        "Accept": "text/html,application/xhtml+xml",
    }
    owns_client = client is None
    http_client = client or httpx.AsyncClient(timeout=timeout_seconds, follow_redirects=True)

    with traced(tracer, "ingest.fetch_html", {"http.url": url}) as span:
        try:
            response = await http_client.get(url, headers=headers, timeout=timeout_seconds)
        except httpx.TimeoutException as exc:
            raise FetchError(url, f"timed out after {timeout_seconds:.0f}s") from exc
        except httpx.HTTPError as exc:
            raise FetchError(url, f"request failed: {exc.__class__.__name__}") from exc
        finally:
            if owns_client:
                await http_client.aclose()

        span.set_attribute("http.status_code", response.status_code)
        if not response.is_success:
            raise FetchError(url, f"HTTP {response.status_code}", status_code=response.status_code)

        html = response.text
        logger.info("fetched page url=%s bytes=%s", url, len(html))
        return html
