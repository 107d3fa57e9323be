from __future__ import annotations

import asyncio
import json
from datetime import date, datetime, timezone

import httpx
import pytest

from harvester.providers.places_client import PlacesClient
from harvester.providers.structured_search import (
    QuotaExhaustedError,
    StructuredSearchError,
    StructuredSearchProvider,
    field_mask,
    transform_place,
)
from harvester.schemas.jobs import JobConfig
from harvester.schemas.settings import GlobalSettings, PlacesSettings
from harvester.services.merge import read_output_file
from harvester.services.store import InMemoryRepository

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)
TODAY = date(2026, 3, 10)


def _place(place_id: str) -> dict:
    return {
        "id": place_id,
        "displayName": {"text": f"Place {place_id}"},
        "formattedAddress": "1 Main St",
        "nationalPhoneNumber": "020 1234",
        "location": {"latitude": 51.5, "longitude": -0.12},
        "types": ["coffee_shop", "cafe"],
    }


class FakePlaces:
    """Serves scripted Text Search pages and records every request body."""

    def __init__(self, pages: list[httpx.Response] | None = None, *, endless: bool = False) -> None:
        self.pages = list(pages or [])
        self.endless = endless
        self.requests: list[httpx.Request] = []

    @property
    def bodies(self) -> list[dict]:
        return [json.loads(request.content) for request in self.requests]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.endless:
            index = len(self.requests)
            return httpx.Response(200, json={"places": [_place(f"p{index}")], "nextPageToken": f"t{index}"})
        return self.pages.pop(0)

    def client(self) -> PlacesClient:
        transport = httpx.MockTransport(self.handler)
        return PlacesClient("https://places.test/v1", client=httpx.AsyncClient(transport=transport))


async def _repository(**places) -> InMemoryRepository:
    repository = InMemoryRepository()
    places.setdefault("api_key", "test-key")
    places.setdefault("last_reset_date", TODAY)
    await repository.save_global_settings(GlobalSettings(google_places=PlacesSettings(**places)))
    return repository


def _provider(repository, settings, fake: FakePlaces) -> StructuredSearchProvider:
    return StructuredSearchProvider(repository, settings, client=fake.client(), clock=lambda: NOW)


def test_last_call_of_the_day_runs_then_budget_is_spent(settings) -> None:
    async def scenario() -> None:
        repository = await _repository(calls_today=49, daily_limit=50)
        fake = FakePlaces([httpx.Response(200, json={"places": [_place("a")]})])
        provider = _provider(repository, settings, fake)

        assert (await provider.check_limit()).allowed
        output = await provider.execute_scrape(["cafes"], "job-1", JobConfig())
        assert len(fake.requests) == 1
        assert read_output_file(output.path)[0]["place_id"] == "a"
        assert (await repository.get_global_settings()).google_places.calls_today == 50

        decision = await provider.check_limit()
        assert not decision.allowed
        assert decision.reason == "Daily Limit Reached"
        with pytest.raises(QuotaExhaustedError):
            await provider.execute_scrape(["bars"], "job-2", JobConfig())
        assert len(fake.requests) == 1

    asyncio.run(scenario())


def test_new_day_resets_the_counter(settings) -> None:
    async def scenario() -> None:
        repository = await _repository(calls_today=50, daily_limit=50, last_reset_date=date(2026, 3, 9))
        provider = _provider(repository, settings, FakePlaces())

        decision = await provider.check_limit()
        assert decision.allowed
        assert decision.reason == "New Day"

        places = (await repository.get_global_settings()).google_places
        assert places.calls_today == 0
        assert places.last_reset_date == TODAY
        assert (await provider.check_limit()).reason == "Within Limit"

    asyncio.run(scenario())


def test_missing_api_key_is_refused(settings) -> None:
    async def scenario() -> None:
        repository = InMemoryRepository()
        provider = _provider(repository, settings, FakePlaces())
        assert (await provider.check_limit()).reason == "No API Key"
        with pytest.raises(StructuredSearchError):
            await provider.execute_scrape(["cafes"], "job-1", JobConfig())

    asyncio.run(scenario())


def test_pagination_is_capped_at_three_pages(settings) -> None:
    async def scenario() -> None:
        repository = await _repository(daily_limit=50)
        fake = FakePlaces(endless=True)
        provider = _provider(repository, settings, fake)

        output = await provider.execute_scrape(["cafes"], "job-1", JobConfig(max_pages=5, lang="fr"))

        bodies = fake.bodies
        assert len(bodies) == 3
        assert "pageToken" not in bodies[0]
        assert [body.get("pageToken") for body in bodies[1:]] == ["t1", "t2"]
        assert all(body["languageCode"] == "fr" for body in bodies)
        assert [item["place_id"] for item in read_output_file(output.path)] == ["p1", "p2", "p3"]
        assert (await repository.get_global_settings()).google_places.calls_today == 3

    asyncio.run(scenario())


def test_budget_running_out_mid_pagination_keeps_collected_pages(settings) -> None:
    async def scenario() -> None:
        repository = await _repository(calls_today=48, daily_limit=50)
        fake = FakePlaces(endless=True)
        provider = _provider(repository, settings, fake)

        output = await provider.execute_scrape(["cafes", "bars"], "job-1", JobConfig(max_pages=3))

        assert len(fake.requests) == 2
        assert [item["place_id"] for item in read_output_file(output.path)] == ["p1", "p2"]
        assert (await repository.get_global_settings()).google_places.calls_today == 50

    asyncio.run(scenario())


def test_concurrent_jobs_share_one_daily_budget(settings) -> None:
    async def scenario() -> None:
        repository = await _repository(calls_today=45, daily_limit=50)
        fake = FakePlaces(endless=True)
        provider = _provider(repository, settings, fake)
        queries = [f"query {index}" for index in range(5)]

        results = await asyncio.gather(
            provider.execute_scrape(queries, "job-1", JobConfig()),
            provider.execute_scrape(queries, "job-2", JobConfig()),
            return_exceptions=True,
        )

        assert len(fake.requests) == 5
        assert (await repository.get_global_settings()).google_places.calls_today == 50
        collected = sum(
            len(read_output_file(result.path)) for result in results if not isinstance(result, BaseException)
        )
        assert collected == 5
        for result in results:
            if isinstance(result, BaseException):
                assert isinstance(result, QuotaExhaustedError)

    asyncio.run(scenario())


def test_empty_result_page_writes_empty_array(settings) -> None:
    async def scenario() -> None:
        repository = await _repository()
        fake = FakePlaces([httpx.Response(200, json={})])
        provider = _provider(repository, settings, fake)

        output = await provider.execute_scrape(["nothing here"], "job-1", JobConfig(max_pages=3))
        assert output.path.read_text(encoding="utf-8") == "[]"
        assert read_output_file(output.path) == []

    asyncio.run(scenario())


def test_all_requests_failing_is_an_error_but_still_metered(settings) -> None:
    async def scenario() -> None:
        repository = await _repository(calls_today=0)
        fake = FakePlaces(
            [
                httpx.Response(403, json={"error": {"message": "API key not valid"}}),
                httpx.Response(500, text="backend error"),
            ]
        )
        provider = _provider(repository, settings, fake)

        with pytest.raises(StructuredSearchError, match="all 2"):
            await provider.execute_scrape(["cafes", "bars"], "job-1", JobConfig())
        assert (await repository.get_global_settings()).google_places.calls_today == 2

    asyncio.run(scenario())


def test_request_carries_key_and_field_mask(settings) -> None:
    async def scenario() -> None:
        repository = await _repository(fields_level="basic")
        fake = FakePlaces([httpx.Response(200, json={"places": [_place("a")]})])
        provider = _provider(repository, settings, fake)

        await provider.execute_scrape(["cafes"], "job-1", JobConfig())
        request = fake.requests[0]
        assert request.url == "https://places.test/v1/places:searchText"
        assert request.headers["X-Goog-Api-Key"] == "test-key"
        assert request.headers["X-Goog-FieldMask"] == field_mask("basic")
        assert fake.bodies[0] == {"textQuery": "cafes", "pageSize": 20}

    asyncio.run(scenario())


def test_field_mask_levels_are_additive() -> None:
    basic = field_mask("basic").split(",")
    contact = field_mask("contact").split(",")
    atmosphere = field_mask("atmosphere").split(",")

    assert "places.id" in basic
    assert "places.websiteUri" not in basic
    assert "places.websiteUri" in contact
    assert "places.rating" not in contact
    assert "places.rating" in atmosphere
    assert set(basic) < set(contact) < set(atmosphere)
    assert all(mask[-1] == "nextPageToken" for mask in (basic, contact, atmosphere))


def test_transform_place_flattens_api_shape() -> None:
    place = _place("ChIJ1")
    place["regularOpeningHours"] = {"openNow": True, "weekdayDescriptions": ["Mon: 8-18"]}
    place["photos"] = [{"name": "places/ChIJ1/photos/x"}]
    place["websiteUri"] = "https://cafe.example"

    item = transform_place(place, NOW)
    assert item["place_id"] == "ChIJ1"
    assert item["name"] == "Place ChIJ1"
    assert item["website"] == "https://cafe.example"
    assert item["category"] == "Coffee Shop"
    assert item["open_state"] == "Open"
    assert item["main_photo_ref"] == "places/ChIJ1/photos/x"
    assert item["latitude"] == 51.5
    assert item["source"] == "google_places_api"
    assert item["fetched_at"] == NOW.isoformat()
