"""Pydantic models for AI Search requests and responses."""

from typing import Any

from pydantic import BaseModel, Field


class SearchOptions(BaseModel):
    """Retrieval tuning for one priced operation."""

    result_limit: int = Field(10, ge=1, le=50)
    relevance_threshold: float = Field(0.3, ge=0.0, le=1.0)
    rewrite: bool = True

    def to_request(self, query: str) -> dict[str, Any]:
        """Build the ai-search request body."""
        return {
            "query": query,
            "rewrite_query": self.rewrite,
            "max_num_results": self.result_limit,
            "ranking_options": {"score_threshold": self.relevance_threshold},
        }


class SearchAnswer(BaseModel):
    """Generated answer returned by the backend."""

    answer_text: str = Field(alias="response")
    search_query: str | None = None


class APIMessage(BaseModel):
    """Error or message entry in the response envelope."""

    code: int | None = None
    message: str = ""


class SearchEnvelope(BaseModel):
    """Standard response envelope: ``{success, result, errors, messages}``."""

    success: bool = True
    result: SearchAnswer | None = None
    errors: list[APIMessage] = Field(default_factory=list)
    messages: list[APIMessage] = Field(default_factory=list)

    def error_text(self) -> str:
        return "; ".join(e.message for e in self.errors if e.message)
