"""Pydantic models: query-cache payload variants, watcher cursor, API bodies."""

from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter


class TextPayload(BaseModel):
    kind: Literal["text"] = "text"
    text: str


class JsonPayload(BaseModel):
    kind: Literal["json"] = "json"
    data: Any = None


QueryPayload = Annotated[Union[TextPayload, JsonPayload], Field(discriminator="kind")]
query_payload_adapter = TypeAdapter(QueryPayload)


class WatchCursor(BaseModel):
    """Persisted high-water mark of a delta watch (epoch seconds)."""

    last_seen_created_at: float = 0.0


class HealthcheckOut(BaseModel):
    status: Literal["ok", "degraded"]
    backend: Literal["durable", "memory"]
    upstream_ok: bool
    entries: Dict[str, int]
    watcher: Optional[str] = None


class ClearOut(BaseModel):
    table: str
    cleared: bool


class ProblemDetail(BaseModel):
    """RFC 7807-style problem response (simplified)."""

    type: str = "about:blank"
    title: str
    status: int
    detail: Optional[str] = None
    instance: Optional[str] = None
