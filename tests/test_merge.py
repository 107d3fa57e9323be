from __future__ import annotations

import asyncio
import json
from pathlib import Path

from harvester.schemas.jobs import ProviderType
from harvester.services.merge import MergeEngine, has_contact, normalize_business
from harvester.services.records import BusinessRecord
from harvester.services.store import InMemoryRepository


def _scraped(place_id: str, **fields) -> dict:
    payload = {"place_id": place_id, "title": f"Cafe {place_id}", "phone": "+33 1 23 45 67 89"}
    payload.update(fields)
    return payload


def _write_ndjson(path: Path, items: list[dict]) -> Path:
    path.write_text("\n".join(json.dumps(item) for item in items) + "\n", encoding="utf-8")
    return path


def test_reprocessing_the_same_file_changes_nothing(tmp_path: Path) -> None:
    output = _write_ndjson(
        tmp_path / "output.json",
        [
            _scraped("p1", web_site="https://one.example", emails=["a@one.example"]),
            _scraped("p2", categories=["Cafe", "Bakery"]),
        ],
    )

    async def scenario() -> None:
        repository = InMemoryRepository()
        engine = MergeEngine(repository)
        first = await engine.process_output(output, source_query="cafes", provider=ProviderType.SCRAPER, job_id="j1")
        snapshot = {key: business.to_json() for key, business in repository.businesses.items()}
        second = await engine.process_output(output, source_query="cafes", provider=ProviderType.SCRAPER, job_id="j1")

        assert first.counters() == {"total": 2, "new": 2, "updated": 0, "skipped": 0, "errors": 0}
        assert second.counters() == {"total": 2, "new": 0, "updated": 0, "skipped": 2, "errors": 0}
        assert {key: business.to_json() for key, business in repository.businesses.items()} == snapshot
        assert len(repository.raw_records) == 2
        assert second.processed_ids == ["p1", "p2"]

    asyncio.run(scenario())


def test_record_without_contact_is_skipped_and_not_stored() -> None:
    async def scenario() -> None:
        repository = InMemoryRepository()
        engine = MergeEngine(repository)
        stats = await engine.process_batch(
            [{"place_id": "quiet", "title": "No Phone Bistro", "address": "1 Rue X"}],
            source_query="bistro",
            provider=ProviderType.SCRAPER,
            job_id="j1",
        )
        assert stats.skipped == 1
        assert stats.new == 0
        assert repository.businesses == {}
        assert repository.raw_records == []

    asyncio.run(scenario())


def test_record_without_identifier_is_skipped() -> None:
    async def scenario() -> None:
        engine = MergeEngine(InMemoryRepository())
        stats = await engine.process_batch(
            [{"title": "Anonymous", "phone": "123"}],
            source_query="q",
            provider=ProviderType.SCRAPER,
            job_id=None,
        )
        assert stats.counters() == {"total": 1, "new": 0, "updated": 0, "skipped": 1, "errors": 0}

    asyncio.run(scenario())


def test_emails_are_unioned_without_duplicates() -> None:
    async def scenario() -> None:
        repository = InMemoryRepository()
        engine = MergeEngine(repository)
        await engine.process_batch(
            [_scraped("p1", emails=["a@x.example", "b@x.example"])],
            source_query="q",
            provider=ProviderType.SCRAPER,
            job_id="j1",
        )
        stats = await engine.process_batch(
            [_scraped("p1", emails=["b@x.example", "c@x.example"])],
            source_query="q",
            provider=ProviderType.SCRAPER,
            job_id="j2",
        )
        assert stats.updated == 1
        assert repository.businesses["p1"].emails == ["a@x.example", "b@x.example", "c@x.example"]

    asyncio.run(scenario())


def test_populated_scalar_is_not_overwritten_but_gaps_are_filled() -> None:
    async def scenario() -> None:
        repository = InMemoryRepository()
        engine = MergeEngine(repository)
        await engine.process_batch(
            [_scraped("p1", phone="111")],
            source_query="q",
            provider=ProviderType.SCRAPER,
            job_id="j1",
        )
        stats = await engine.process_batch(
            [{"place_id": "p1", "phone": "222", "website": "https://new.example", "rating": 4.5}],
            source_query="q",
            provider=ProviderType.GOOGLE_PLACES,
            job_id="j2",
        )
        business = repository.businesses["p1"]
        assert stats.updated == 1
        assert business.phone == "111"
        assert business.website == "https://new.example"
        assert business.rating == 4.5

    asyncio.run(scenario())


def test_missing_status_is_repaired_on_merge() -> None:
    async def scenario() -> None:
        repository = InMemoryRepository()
        await repository.insert_business(
            BusinessRecord(place_id="p1", name="Legacy", phone="123", status=None, sources=["scraper"])
        )
        engine = MergeEngine(repository)
        stats = await engine.process_batch(
            [_scraped("p1")],
            source_query="q",
            provider=ProviderType.SCRAPER,
            job_id="j1",
        )
        assert stats.updated == 1
        assert repository.businesses["p1"].status == "new"

    asyncio.run(scenario())


def test_lineage_records_both_providers_and_raw_references() -> None:
    async def scenario() -> None:
        repository = InMemoryRepository()
        engine = MergeEngine(repository)
        await engine.process_batch([_scraped("p1")], source_query="q", provider=ProviderType.SCRAPER, job_id="j1")
        await engine.process_batch(
            [{"place_id": "p1", "name": "Cafe p1", "website": "https://p1.example"}],
            source_query="q",
            provider=ProviderType.GOOGLE_PLACES,
            job_id="j2",
        )
        business = repository.businesses["p1"]
        assert business.sources == ["scraper", "google_places"]
        assert [reference["source"] for reference in business.raw_references] == ["scraper", "google_places"]
        assert {raw.id for raw in repository.raw_records} == {
            reference["raw_id"] for reference in business.raw_references
        }

    asyncio.run(scenario())


def test_new_raw_reference_alone_is_not_an_update() -> None:
    async def scenario() -> None:
        repository = InMemoryRepository()
        engine = MergeEngine(repository)
        await engine.process_batch([_scraped("p1")], source_query="q", provider=ProviderType.SCRAPER, job_id="j1")
        stats = await engine.process_batch(
            [_scraped("p1")],
            source_query="q",
            provider=ProviderType.SCRAPER,
            job_id="j2",
        )
        assert stats.skipped == 1
        assert stats.updated == 0
        assert len(repository.businesses["p1"].raw_references) == 2
        assert len(repository.raw_records) == 2

    asyncio.run(scenario())


def test_bad_item_is_counted_and_batch_continues() -> None:
    async def scenario() -> None:
        repository = InMemoryRepository()
        engine = MergeEngine(repository)
        stats = await engine.process_batch(
            ["not an object", _scraped("p1"), 42],
            source_query="q",
            provider=ProviderType.SCRAPER,
            job_id="j1",
        )
        assert stats.counters() == {"total": 3, "new": 1, "updated": 0, "skipped": 0, "errors": 2}
        assert list(repository.businesses) == ["p1"]

    asyncio.run(scenario())


def test_insert_race_falls_back_to_merge() -> None:
    class RacingRepository(InMemoryRepository):
        async def get_business(self, place_id: str):
            business = await super().get_business(place_id)
            if business is None and place_id not in self.businesses:
                self.businesses[place_id] = BusinessRecord(
                    place_id=place_id, name="Other Job", phone="999", status="new", sources=["scraper"]
                )
            return business

    async def scenario() -> None:
        repository = RacingRepository()
        engine = MergeEngine(repository)
        stats = await engine.process_batch(
            [_scraped("p1", web_site="https://p1.example")],
            source_query="q",
            provider=ProviderType.SCRAPER,
            job_id="j1",
        )
        business = repository.businesses["p1"]
        assert stats.updated == 1
        assert business.name == "Other Job"
        assert business.phone == "999"
        assert business.website == "https://p1.example"

    asyncio.run(scenario())


def test_normalize_scraper_record_unwraps_data_and_maps_aliases() -> None:
    normalized = normalize_business(
        {
            "data": {
                "cid": 123456,
                "title": "Bakery",
                "category": "Bakery",
                "complete_address": {"street": "2 Main St", "city": "Lyon", "postal_code": "69001", "country": "FR"},
                "web_site": "https://bakery.example",
                "review_rating": "4.2",
                "review_count": "17",
                "latitude": 45.76,
                "longtitude": 4.83,
                "categories": ["Bakery", "Cafe"],
            }
        },
        ProviderType.SCRAPER,
    )
    assert normalized["place_id"] == "123456"
    assert normalized["name"] == "Bakery"
    assert normalized["address"] == "2 Main St"
    assert normalized["city"] == "Lyon"
    assert normalized["zip"] == "69001"
    assert normalized["rating"] == 4.2
    assert normalized["review_count"] == 17
    assert normalized["longitude"] == 4.83
    assert normalized["category"] == "Bakery"
    assert normalized["additional_categories"] == ["Bakery", "Cafe"]
    assert "phone" not in normalized
    assert has_contact(normalized)


def test_normalize_places_record_prefers_category_over_types() -> None:
    normalized = normalize_business(
        {
            "place_id": "ChIJ1",
            "name": "Clinic",
            "address": "3 High St",
            "phone": "020 1234",
            "phone_international": "+44 20 1234",
            "category": "Dental clinic",
            "types": ["dentist", "health"],
            "reviews_count": 8,
            "main_photo_ref": "places/ChIJ1/photos/abc",
            "website": "",
        },
        ProviderType.GOOGLE_PLACES,
    )
    assert normalized["category"] == "Dental clinic"
    assert normalized["international_phone"] == "+44 20 1234"
    assert normalized["review_count"] == 8
    assert normalized["images"] == ["places/ChIJ1/photos/abc"]
    assert "website" not in normalized
