from datetime import date

from pydantic import BaseModel, Field

from harvester.schemas.jobs import FieldsLevel, ProviderType


class PlacesSettings(BaseModel):
    api_key: str | None = None
    # Stored for the settings screen only; check_limit gates on the API key.
    enabled: bool = False
    daily_limit: int = Field(default=50, ge=0)
    calls_today: int = Field(default=0, ge=0)
    last_reset_date: date | None = None
    # Stored for the settings screen only; dispatch never falls back on its own.
    fallback_to_scraper: bool = False
    default_max_pages: int = Field(default=1, ge=1)
    fields_level: FieldsLevel = "contact"


class GlobalSettings(BaseModel):
    """The persisted, operator-editable settings record (key ``global``)."""

    max_concurrent_jobs: int | None = Field(default=None, ge=1)
    default_max_results: int = Field(default=70, ge=1)
    email_extraction_enabled: bool = False
    data_provider: ProviderType = ProviderType.SCRAPER
    google_places: PlacesSettings = Field(default_factory=PlacesSettings)
