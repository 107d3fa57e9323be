from __future__ import annotations

from typing import Any

import httpx


class PlacesApiError(RuntimeError):
    """Raised when a Places Text Search request fails or returns an error status."""


class PlacesClient:
    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 30.0,
        page_size: int = 20,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.page_size = page_size
        self._client = client

    async def search_text(
        self,
        query: str,
        *,
        api_key: str,
        field_mask: str,
        page_token: str | None = None,
        language_code: str | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"textQuery": query, "pageSize": self.page_size}
        if page_token:
            body["pageToken"] = page_token
        if language_code:
            body["languageCode"] = language_code
        headers = {
            "Content-Type": "application/json",
            "X-Goog-Api-Key": api_key,
            "X-Goog-FieldMask": field_mask,
        }
        url = f"{self.base_url}/places:searchText"

        try:
            if self._client is not None:
                response = await self._client.post(url, json=body, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    response = await client.post(url, json=body, headers=headers)
        except httpx.HTTPError as exc:
            raise PlacesApiError(f"Places request failed: {exc}") from exc

        if response.status_code >= 400:
            raise PlacesApiError(f"Places API error {response.status_code}: {response.text[:500]}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise PlacesApiError("Places API returned a non-JSON body") from exc
        if not isinstance(payload, dict):
            raise PlacesApiError("Places API returned an unexpected payload")
        return payload
