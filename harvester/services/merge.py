from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Literal
from uuid import uuid4

from opentelemetry import trace

from harvester.schemas.jobs import ProviderType
from harvester.services.records import DEFAULT_BUSINESS_STATUS, BusinessRecord, RawRecord, utcnow
from harvester.services.repository import Repository, RepositoryConflictError

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

MergeOutcome = Literal["new", "updated", "skipped"]

# Scalars adopted from an incoming record only while the stored value is empty.
FILL_GAP_FIELDS = (
    "name",
    "address",
    "city",
    "state",
    "zip",
    "country",
    "phone",
    "international_phone",
    "website",
    "category",
    "rating",
    "review_count",
    "latitude",
    "longitude",
    "price_level",
    "business_status",
    "open_state",
    "working_hours",
)
UNION_FIELDS = ("emails", "images", "additional_categories")


class OutputParseError(Exception):
    """Raised when a provider output artifact is empty or cannot be decoded."""


@dataclass(slots=True)
class MergeStats:
    total: int = 0
    new: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    processed_ids: list[str] = field(default_factory=list)

    def counters(self) -> dict[str, int]:
        return {
            "total": self.total,
            "new": self.new,
            "updated": self.updated,
            "skipped": self.skipped,
            "errors": self.errors,
        }


def read_output_file(path: str | Path) -> list[Any]:
    """Decode a provider artifact holding a JSON array, a single object, or NDJSON.

    The whole file is tried as one JSON document first; only when that fails is
    it read line by line. Any undecodable line fails the whole artifact.
    """
    text = Path(path).read_text(encoding="utf-8")
    if not text.strip():
        raise OutputParseError(f"output file {path} is empty")

    try:
        document = json.loads(text)
    except json.JSONDecodeError:
        document = None
    else:
        if isinstance(document, list):
            return document
        if isinstance(document, dict):
            return [document]
        raise OutputParseError(f"output file {path} holds a JSON {type(document).__name__}, expected objects")

    items: list[Any] = []
    for line_no, line in enumerate(text.splitlines(), start=1):
        if not line.strip():
            continue
        try:
            items.append(json.loads(line))
        except json.JSONDecodeError as exc:
            raise OutputParseError(f"output file {path} line {line_no} is not valid JSON") from exc
    return items


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, dict, set)):
        return len(value) == 0
    return False


def _first(*values: Any) -> Any:
    for value in values:
        if not _is_empty(value):
            return value
    return None


def _dig(payload: Any, *path: str) -> Any:
    for key in path:
        if not isinstance(payload, dict):
            return None
        payload = payload.get(key)
    return payload


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def _as_float(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _as_list(value: Any) -> list[Any]:
    if _is_empty(value):
        return []
    if isinstance(value, list):
        return [item for item in value if not _is_empty(item)]
    return [value]


def _images(payload: dict[str, Any]) -> list[Any]:
    photos = payload.get("photos")
    if isinstance(photos, list) and photos:
        refs = []
        for photo in photos:
            if isinstance(photo, dict):
                refs.append(_first(photo.get("photo_reference"), photo.get("name")))
            else:
                refs.append(photo)
        return [ref for ref in refs if not _is_empty(ref)]
    images = _as_list(payload.get("images"))
    if images:
        return images
    return _as_list(payload.get("main_photo_ref"))


def normalize_business(raw: dict[str, Any], provider: ProviderType) -> dict[str, Any]:
    """Map a provider record onto canonical business fields.

    The result is sparse: keys whose value resolves to None, an empty string or
    an empty collection are left out so they can never blank a stored value.
    """
    if not isinstance(raw, dict):
        raise ValueError(f"expected a JSON object, got {type(raw).__name__}")

    payload = raw
    if provider is ProviderType.SCRAPER and isinstance(raw.get("data"), dict):
        payload = raw["data"]

    types = payload.get("types") if isinstance(payload.get("types"), list) else []
    identifier = _first(payload.get("place_id"), payload.get("cid"))
    open_now = _dig(payload, "current_opening_hours", "open_now")

    mapped: dict[str, Any] = {
        "place_id": str(identifier) if identifier is not None else None,
        "name": _first(payload.get("name"), payload.get("title")),
        "address": _first(
            payload.get("formatted_address"),
            payload.get("address"),
            _dig(payload, "complete_address", "street"),
        ),
        "city": _dig(payload, "complete_address", "city"),
        "state": _dig(payload, "complete_address", "state"),
        "zip": _dig(payload, "complete_address", "postal_code"),
        "country": _dig(payload, "complete_address", "country"),
        "phone": _first(
            payload.get("formatted_phone_number"),
            payload.get("phone"),
            payload.get("phone_number"),
        ),
        "international_phone": _first(
            payload.get("international_phone_number"),
            payload.get("phone_international"),
        ),
        "website": _first(payload.get("website"), payload.get("web_site"), payload.get("url")),
        "emails": [str(email).strip() for email in _as_list(payload.get("emails")) if str(email).strip()],
        "latitude": _as_float(_first(_dig(payload, "geometry", "location", "lat"), payload.get("latitude"))),
        "longitude": _as_float(
            _first(
                _dig(payload, "geometry", "location", "lng"),
                payload.get("longtitude"),
                payload.get("longitude"),
            )
        ),
        "rating": _as_float(_first(payload.get("rating"), payload.get("review_rating"))),
        "review_count": _as_int(
            _first(
                payload.get("user_ratings_total"),
                payload.get("reviews_count"),
                payload.get("review_count"),
                payload.get("reviews"),
            )
        ),
        "price_level": payload.get("price_level"),
        "business_status": payload.get("business_status"),
        "open_state": "Open" if open_now else payload.get("open_state"),
        "working_hours": _first(payload.get("opening_hours"), payload.get("working_hours")),
        # An explicit category (the display name of the primary type) wins over raw types.
        "category": _first(payload.get("category"), types[0] if types else None),
        "additional_categories": _as_list(_first(payload.get("categories"), types)),
        "images": _images(payload),
    }
    return {key: value for key, value in mapped.items() if not _is_empty(value)}


def has_contact(normalized: dict[str, Any]) -> bool:
    return any(not _is_empty(normalized.get(key)) for key in ("phone", "website", "emails"))


def _union_key(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str)


def _union(existing: list[Any], incoming: list[Any]) -> list[Any]:
    merged = list(existing)
    seen = {_union_key(item) for item in merged}
    for item in incoming:
        key = _union_key(item)
        if key not in seen:
            seen.add(key)
            merged.append(item)
    return merged


def merge_into(
    existing: BusinessRecord,
    normalized: dict[str, Any],
    provider: ProviderType,
) -> bool:
    """Fold ``normalized`` into ``existing`` in place; return True if any field changed."""
    changed = False
    for name in FILL_GAP_FIELDS:
        incoming = normalized.get(name)
        if _is_empty(getattr(existing, name)) and not _is_empty(incoming):
            setattr(existing, name, incoming)
            changed = True

    for name in UNION_FIELDS:
        current = list(getattr(existing, name) or [])
        merged = _union(current, normalized.get(name) or [])
        if len(merged) != len(current):
            setattr(existing, name, merged)
            changed = True

    if _is_empty(existing.status):
        existing.status = DEFAULT_BUSINESS_STATUS
        changed = True

    if provider.value not in existing.sources:
        existing.sources.append(provider.value)
        changed = True
    return changed


def build_business(
    normalized: dict[str, Any],
    provider: ProviderType,
    *,
    raw_reference: dict[str, str] | None,
    owner_id: str | None,
    now: datetime,
) -> BusinessRecord:
    business = BusinessRecord(**normalized)
    if _is_empty(business.status):
        business.status = DEFAULT_BUSINESS_STATUS
    business.sources = [provider.value]
    business.raw_references = [raw_reference] if raw_reference else []
    business.first_seen = now
    business.last_updated = now
    business.owner_id = owner_id
    return business


class MergeEngine:
    def __init__(self, repository: Repository) -> None:
        self.repository = repository

    async def process_output(
        self,
        path: str | Path,
        *,
        source_query: str,
        provider: ProviderType,
        job_id: str | None,
        owner_id: str | None = None,
    ) -> MergeStats:
        items = await asyncio.to_thread(read_output_file, path)
        return await self.process_batch(
            items,
            source_query=source_query,
            provider=provider,
            job_id=job_id,
            owner_id=owner_id,
        )

    async def process_batch(
        self,
        items: list[Any],
        *,
        source_query: str,
        provider: ProviderType,
        job_id: str | None,
        owner_id: str | None = None,
    ) -> MergeStats:
        stats = MergeStats(total=len(items))
        logger.info("merging %s %s records job_id=%s", len(items), provider.value, job_id)

        with tracer.start_as_current_span("merge.process_batch") as span:
            span.set_attribute("merge.provider", provider.value)
            span.set_attribute("merge.items", len(items))
            for item in items:
                try:
                    outcome, place_id = await self.upsert(
                        item,
                        source_query=source_query,
                        provider=provider,
                        job_id=job_id,
                        owner_id=owner_id,
                    )
                except Exception:
                    logger.exception("failed to merge record job_id=%s", job_id)
                    stats.errors += 1
                    continue

                if outcome == "new":
                    stats.new += 1
                elif outcome == "updated":
                    stats.updated += 1
                else:
                    stats.skipped += 1
                if place_id is not None:
                    stats.processed_ids.append(place_id)

        logger.info("merge complete job_id=%s stats=%s", job_id, stats.counters())
        return stats

    async def upsert(
        self,
        raw: Any,
        *,
        source_query: str,
        provider: ProviderType,
        job_id: str | None,
        owner_id: str | None = None,
    ) -> tuple[MergeOutcome, str | None]:
        normalized = normalize_business(raw, provider)
        place_id = normalized.get("place_id")
        if not place_id:
            return "skipped", None
        if not has_contact(normalized):
            logger.info("skipping %s (%s): no phone, website or email", place_id, normalized.get("name"))
            return "skipped", None

        raw_id = await self._record_raw(raw, provider, place_id, job_id, source_query)
        raw_reference = {"source": provider.value, "raw_id": raw_id}
        now = utcnow()

        existing = await self.repository.get_business(place_id)
        if existing is None:
            business = build_business(
                normalized,
                provider,
                raw_reference=raw_reference,
                owner_id=owner_id,
                now=now,
            )
            try:
                await self.repository.insert_business(business)
                return "new", place_id
            except RepositoryConflictError:
                # Another job inserted the same place between lookup and insert.
                existing = await self.repository.get_business(place_id)
                if existing is None:
                    raise

        changed = merge_into(existing, normalized, provider)
        referenced = raw_reference in existing.raw_references
        if not referenced:
            existing.raw_references.append(raw_reference)

        if changed or not referenced:
            if changed:
                existing.last_updated = now
            await self.repository.update_business(existing)
        return ("updated" if changed else "skipped"), place_id

    async def _record_raw(
        self,
        raw: Any,
        provider: ProviderType,
        place_id: str,
        job_id: str | None,
        source_query: str,
    ) -> str:
        found = await self.repository.find_raw_record(provider=provider, place_id=place_id, job_id=job_id)
        if found is not None:
            return found.id
        created = await self.repository.create_raw_record(
            RawRecord(
                id=str(uuid4()),
                provider=provider,
                place_id=place_id,
                job_id=job_id,
                source_query=source_query,
                data=raw,
            )
        )
        return created.id
