"""AI Search (AutoRAG) API client using httpx."""

from typing import Any

import httpx
from pydantic import ValidationError

from docsearch_mcp.api.models import SearchAnswer, SearchEnvelope, SearchOptions
from docsearch_mcp.errors import (
    SearchBackendError,
    SearchIndexingError,
    SearchNotProvisionedError,
)

_NOT_PROVISIONED_MARKERS = ("ai search instance not found", "autorag instance")


def classify_backend_error(message: str, status_code: int | None = None) -> SearchBackendError:
    """Map a backend failure onto the three user-facing error kinds.

    Not-provisioned wins over indexing: a missing instance cannot finish
    indexing.
    """
    lowered = message.lower()
    if status_code == 404 or any(marker in lowered for marker in _NOT_PROVISIONED_MARKERS):
        return SearchNotProvisionedError(message)
    if "indexing" in lowered:
        return SearchIndexingError(message)
    return SearchBackendError(message)


class AISearchClient:
    """AI Search client for one instance."""

    def __init__(
        self,
        account_id: str,
        api_token: str,
        instance: str,
        base_url: str = "https://api.cloudflare.com/client/v4",
        timeout: float = 30.0,
    ) -> None:
        """Initialize the AI Search client.

        Args:
            account_id: Account owning the AI Search instance
            api_token: API token with AI Search read access
            instance: AI Search (AutoRAG) instance name
            base_url: Base URL for the REST API
            timeout: Request timeout in seconds
        """
        self.account_id = account_id
        self.instance = instance
        self.base_url = base_url
        self.client = httpx.AsyncClient(
            base_url=base_url,
            headers={"Authorization": f"Bearer {api_token}"},
            timeout=timeout,
        )

    @property
    def endpoint(self) -> str:
        return f"/accounts/{self.account_id}/autorag/rags/{self.instance}/ai-search"

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()

    async def __aenter__(self) -> "AISearchClient":
        """Async context manager entry."""
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Async context manager exit."""
        await self.close()

    async def query(self, text: str, options: SearchOptions) -> SearchAnswer:
        """Run a retrieval-augmented query and return the generated answer.

        Raises:
            SearchNotProvisionedError: instance missing or unreachable
            SearchIndexingError: instance still indexing
            SearchBackendError: any other failure
        """
        try:
            response = await self.client.request(
                "POST", self.endpoint, json=options.to_request(text)
            )
        except httpx.TimeoutException as e:
            raise SearchBackendError(f"AI Search request timed out: {e}") from e
        except httpx.HTTPError as e:
            raise SearchBackendError(f"Request failed: {e}") from e

        try:
            envelope = SearchEnvelope.model_validate(response.json())
        except (ValueError, ValidationError):
            envelope = None

        if response.is_error or envelope is None or not envelope.success:
            detail = envelope.error_text() if envelope else ""
            message = f"HTTP {response.status_code}: {detail or response.text[:200]}"
            raise classify_backend_error(message, response.status_code)

        if envelope.result is None:
            raise SearchBackendError("AI Search response did not include a result.")
        return envelope.result
