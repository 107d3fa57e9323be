from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo

from harvester.core.config import Settings
from harvester.providers.base import RawOutput, ScrapeProvider, job_workdir
from harvester.providers.places_client import PlacesApiError, PlacesClient
from harvester.schemas.jobs import FieldsLevel, JobConfig, ProviderType
from harvester.schemas.settings import GlobalSettings, PlacesSettings
from harvester.services.records import utcnow
from harvester.services.repository import Repository

logger = logging.getLogger(__name__)

PAGE_HARD_CAP = 3

_BASIC_FIELDS = (
    "places.id",
    "places.displayName",
    "places.formattedAddress",
    "places.location",
    "places.photos",
    "places.types",
    "places.primaryTypeDisplayName",
)
_CONTACT_FIELDS = (
    "places.nationalPhoneNumber",
    "places.internationalPhoneNumber",
    "places.websiteUri",
    "places.priceLevel",
    "places.businessStatus",
)
_ATMOSPHERE_FIELDS = (
    "places.rating",
    "places.userRatingCount",
    "places.regularOpeningHours",
)


class QuotaExhaustedError(Exception):
    """Raised when the metered provider has no daily budget left."""


class StructuredSearchError(Exception):
    """Raised when the metered provider could not produce any page of results."""


@dataclass(slots=True)
class QuotaDecision:
    allowed: bool
    reason: str


def field_mask(level: FieldsLevel) -> str:
    fields = list(_BASIC_FIELDS)
    if level in ("contact", "atmosphere"):
        fields.extend(_CONTACT_FIELDS)
    if level == "atmosphere":
        fields.extend(_ATMOSPHERE_FIELDS)
    fields.append("nextPageToken")
    return ",".join(fields)


def _category(place: dict[str, Any]) -> str | None:
    display = place.get("primaryTypeDisplayName")
    if isinstance(display, dict) and display.get("text"):
        return display["text"]
    types = place.get("types") or []
    if types:
        return str(types[0]).replace("_", " ").title()
    return None


def transform_place(place: dict[str, Any], fetched_at: datetime) -> dict[str, Any]:
    display_name = place.get("displayName") if isinstance(place.get("displayName"), dict) else {}
    location = place.get("location") if isinstance(place.get("location"), dict) else {}
    hours = place.get("regularOpeningHours") if isinstance(place.get("regularOpeningHours"), dict) else None
    photos = place.get("photos") or []
    return {
        "place_id": place.get("id"),
        "name": display_name.get("text"),
        "address": place.get("formattedAddress"),
        "phone": place.get("nationalPhoneNumber"),
        "phone_international": place.get("internationalPhoneNumber"),
        "website": place.get("websiteUri"),
        "latitude": location.get("latitude"),
        "longitude": location.get("longitude"),
        "category": _category(place),
        "types": place.get("types"),
        "rating": place.get("rating"),
        "reviews_count": place.get("userRatingCount"),
        "price_level": place.get("priceLevel"),
        "business_status": place.get("businessStatus"),
        "opening_hours": hours,
        "open_state": ("Open" if hours.get("openNow") else "Closed") if hours else None,
        "main_photo_ref": photos[0].get("name") if photos and isinstance(photos[0], dict) else None,
        "source": "google_places_api",
        "fetched_at": fetched_at.isoformat(),
    }


def _append_ndjson(path: Path, items: list[dict[str, Any]]) -> int:
    with path.open("a", encoding="utf-8") as handle:
        for item in items:
            handle.write(json.dumps(item, default=str))
            handle.write("\n")
    return len(items)


class StructuredSearchProvider(ScrapeProvider):
    """Google Places Text Search, metered by a daily call budget.

    Every page request costs one unit of quota and is checked against the
    budget on its own, so a query can stop halfway through its pages. The
    counter lives in the global settings record. Each unit is reserved from
    the stored count under the provider's lock before its request goes out,
    so concurrent jobs in one process share a single budget.
    """

    provider_type = ProviderType.GOOGLE_PLACES

    def __init__(
        self,
        repository: Repository,
        settings: Settings,
        client: PlacesClient | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repository = repository
        self.settings = settings
        self.client = client or PlacesClient(
            settings.places_base_url,
            timeout_seconds=settings.places_timeout_seconds,
            page_size=settings.places_page_size,
        )
        self.clock = clock
        self._quota_lock = asyncio.Lock()

    def _today(self) -> date:
        return self.clock().astimezone(ZoneInfo(self.settings.quota_timezone)).date()

    async def _load_quota(self) -> tuple[GlobalSettings, bool]:
        global_settings = await self.repository.get_global_settings()
        places = global_settings.google_places
        today = self._today()
        if places.last_reset_date == today:
            return global_settings, False

        logger.info("resetting Places quota counter for %s (was %s)", today, places.calls_today)
        places.calls_today = 0
        places.last_reset_date = today
        await self.repository.save_quota_counter(calls_today=0, last_reset_date=today)
        return global_settings, True

    async def check_limit(self) -> QuotaDecision:
        global_settings, rolled_over = await self._load_quota()
        places = global_settings.google_places
        if not places.api_key:
            return QuotaDecision(allowed=False, reason="No API Key")
        if places.calls_today >= places.daily_limit:
            return QuotaDecision(allowed=False, reason="Daily Limit Reached")
        return QuotaDecision(allowed=True, reason="New Day" if rolled_over else "Within Limit")

    async def _reserve_call(self) -> PlacesSettings | None:
        """Take one unit from the stored budget, or return None when it is spent."""
        async with self._quota_lock:
            global_settings, _ = await self._load_quota()
            places = global_settings.google_places
            if places.calls_today >= places.daily_limit:
                return None
            places.calls_today += 1
            await self.repository.save_quota_counter(
                calls_today=places.calls_today,
                last_reset_date=places.last_reset_date or self._today(),
            )
            return places

    async def execute_scrape(self, queries: list[str], job_id: str, config: JobConfig) -> RawOutput:
        global_settings, _ = await self._load_quota()
        places = global_settings.google_places
        if not places.api_key:
            raise StructuredSearchError("Google Places API is not configured (missing API key)")
        if places.calls_today >= places.daily_limit:
            raise QuotaExhaustedError(f"Daily limit of {places.daily_limit} Google Places calls reached")

        workdir = job_workdir(self.settings.data_dir, job_id)
        workdir.mkdir(parents=True, exist_ok=True)
        output_path = workdir / "output.json"
        output_path.write_text("", encoding="utf-8")

        level: FieldsLevel = config.fields_level or places.fields_level or "contact"
        mask = field_mask(level)
        max_pages = min(config.max_pages or places.default_max_pages or 1, PAGE_HARD_CAP)

        written = 0
        succeeded = 0
        failed = 0
        exhausted = False
        logger.info("places job %s: %s queries, up to %s pages each", job_id, len(queries), max_pages)

        for query in queries:
            if not query.strip():
                continue
            page_token: str | None = None
            pages = 0
            while True:
                usage = await self._reserve_call()
                if usage is None:
                    logger.warning("places daily limit reached (query=%r page=%s); stopping", query, pages + 1)
                    exhausted = True
                    break

                try:
                    page = await self.client.search_text(
                        query,
                        api_key=places.api_key,
                        field_mask=mask,
                        page_token=page_token,
                        language_code=config.lang,
                    )
                except PlacesApiError as exc:
                    failed += 1
                    logger.error("places search failed for %r: %s", query, exc)
                    break

                succeeded += 1
                pages += 1
                found = page.get("places") or []
                if not found:
                    logger.info("query %r page %s returned no places; stopping pagination", query, pages)
                    break

                fetched_at = utcnow()
                items = [transform_place(place, fetched_at) for place in found if isinstance(place, dict)]
                written += await asyncio.to_thread(_append_ndjson, output_path, items)
                logger.info(
                    "query %r page %s: %s places (usage %s/%s)",
                    query,
                    pages,
                    len(found),
                    usage.calls_today,
                    usage.daily_limit,
                )

                page_token = page.get("nextPageToken")
                if not page_token or pages >= max_pages:
                    break
            if exhausted:
                break

        if succeeded == 0:
            if exhausted:
                raise QuotaExhaustedError(f"Daily limit of {places.daily_limit} Google Places calls reached")
            if failed:
                raise StructuredSearchError(f"all {failed} Google Places requests failed")

        if written == 0:
            output_path.write_text("[]", encoding="utf-8")
        logger.info("places job %s collected %s places", job_id, written)
        return RawOutput(path=output_path, provider=self.provider_type)
