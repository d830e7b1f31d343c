from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import asdict, dataclass
from typing import Any, Protocol

import httpx
from opentelemetry import trace

from showfinder.core.config import Settings
from showfinder.core.telemetry import traced
from showfinder.services.repository import StoreError

GOOGLE_GEOCODE_URL = "https://maps.googleapis.com/maps/api/geocode/json"
DEFAULT_GEOCODE_TIMEOUT_SECONDS = 10.0

_WHITESPACE_RE = re.compile(r"\s+")

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass(slots=True)
class GeocodeResult:
    latitude: float
    longitude: float
    formatted_address: str | None = None
    place_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> GeocodeResult | None:
        try:
            return cls(
                latitude=float(payload["latitude"]),
                longitude=float(payload["longitude"]),
                formatted_address=payload.get("formatted_address"),
                place_id=payload.get("place_id"),
            )
        except (KeyError, TypeError, ValueError):
            return None


class Geocoder(Protocol):
    async def geocode(self, address: str) -> GeocodeResult | None: ...


def normalize_address(address: str) -> str:
    return _WHITESPACE_RE.sub(" ", address.strip().lower())


def address_hash(address: str) -> str:
    return hashlib.sha256(normalize_address(address).encode("utf-8")).hexdigest()


class GoogleGeocoder:
    """Address lookup against the Google Geocoding API.

    Returns ``None`` when the address cannot be resolved; callers own retries.
    """

    def __init__(
        self,
        *,
        api_key: str | None,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = DEFAULT_GEOCODE_TIMEOUT_SECONDS,
        cache: Any | None = None,
    ) -> None:
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self.cache = cache
        self._client = client

    async def geocode(self, address: str) -> GeocodeResult | None:
        if not address or not address.strip():
            return None
        if not self.api_key:
            logger.warning("geocoding skipped: no API key configured")
            return None

        key = address_hash(address)
        cached = await self._read_cache(key)
        if cached is not None:
            return cached

        with traced(tracer, "ingest.geocode", {"geocode.address_hash": key}):
            result = await self._lookup(address)
        if result is not None:
            await self._write_cache(key, address, result)
        return result

    async def _lookup(self, address: str) -> GeocodeResult | None:
        params = {"address": address, "key": self.api_key}
        try:
            if self._client is not None:
                response = await self._client.get(GOOGLE_GEOCODE_URL, params=params, timeout=self.timeout_seconds)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    response = await client.get(GOOGLE_GEOCODE_URL, params=params)
        except httpx.HTTPError as exc:
            logger.warning("geocode request failed address=%s error=%s", address, exc.__class__.__name__)
            return None

        if response.status_code != 200:
            logger.warning("geocode request failed address=%s status=%s", address, response.status_code)
            return None

        try:
            payload = response.json()
        except ValueError:
            logger.warning("geocode response is not JSON address=%s", address)
            return None
        if not isinstance(payload, dict):
            logger.warning("geocode response is not an object address=%s", address)
            return None
        status = payload.get("status")
        results = payload.get("results") or []
        if status != "OK" or not results:
            logger.warning("geocode unresolved address=%s status=%s", address, status)
            return None

        first = results[0]
        location = (first.get("geometry") or {}).get("location") or {}
        try:
            return GeocodeResult(
                latitude=float(location["lat"]),
                longitude=float(location["lng"]),
                formatted_address=first.get("formatted_address"),
                place_id=first.get("place_id"),
            )
        except (KeyError, TypeError, ValueError):
            logger.warning("geocode response missing location address=%s", address)
            return None

    async def _read_cache(self, key: str) -> GeocodeResult | None:
        if self.cache is None:
            return None
        try:
            cached = await self.cache.get_cached_geocode(key)
        except StoreError as exc:
            logger.warning("geocode cache read failed error=%s", exc)
            return None
        return GeocodeResult.from_dict(cached) if cached else None

    async def _write_cache(self, key: str, address: str, result: GeocodeResult) -> None:
        if self.cache is None:
            return
        try:
            await self.cache.put_cached_geocode(address_hash=key, address=address, result=result.to_dict())
        except StoreError as exc:
            logger.warning("geocode cache write failed error=%s", exc)


def build_geocoder(settings: Settings, *, cache: Any | None = None) -> GoogleGeocoder | None:
    if not settings.google_maps_api_key:
        return None
    return GoogleGeocoder(
        api_key=settings.google_maps_api_key,
        timeout_seconds=settings.geocode_timeout_seconds,
        cache=cache,
    )
