"""
Response envelopes for the cancellation API.

    success: {"data": {...}, "meta": {"trace_id", "timestamp"}}
    list:    {"data": [...], "meta": {"trace_id", "timestamp", "total", "limit", "offset", "has_more"}}
    error:   {"error": {"code", "message", "details", "trace_id", "timestamp"}}

Workflow payloads inside `data` are either the full record (model_dump) or
the public camelCase view from CancellationWorkflow.public_view().
"""

from datetime import datetime, timezone
from typing import Generic, List, Optional, TypeVar
from uuid import uuid4

from pydantic import BaseModel, Field

T = TypeVar("T")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_trace_id() -> str:
    return uuid4().hex


class ResponseMeta(BaseModel):
    trace_id: str = Field(default_factory=_new_trace_id)
    timestamp: datetime = Field(default_factory=_utcnow)


class SuccessResponse(BaseModel, Generic[T]):
    data: T
    meta: ResponseMeta = Field(default_factory=ResponseMeta)

    @classmethod
    def create(cls, data: T, trace_id: Optional[str] = None) -> "SuccessResponse[T]":
        return cls(data=data, meta=ResponseMeta(trace_id=trace_id or _new_trace_id()))


class ListMeta(ResponseMeta):
    total: int = 0
    limit: int = 20
    offset: int = 0
    has_more: bool = False


class ListResponse(BaseModel, Generic[T]):
    """A page of workflows, approvals or escalations."""

    data: List[T]
    meta: ListMeta

    @classmethod
    def create(
        cls,
        data: List[T],
        total: int,
        limit: int = 20,
        offset: int = 0,
        trace_id: Optional[str] = None,
    ) -> "ListResponse[T]":
        return cls(
            data=data,
            meta=ListMeta(
                trace_id=trace_id or _new_trace_id(),
                total=total,
                limit=limit,
                offset=offset,
                has_more=offset + len(data) < total,
            ),
        )


class ErrorDetail(BaseModel):
    """One problem with a request; `code` is machine-readable (e.g. "warehouse_email_missing")."""

    field: Optional[str] = None
    message: str
    code: Optional[str] = None


class ErrorBody(BaseModel):
    code: str
    message: str
    details: Optional[List[ErrorDetail]] = None
    trace_id: str = Field(default_factory=_new_trace_id)
    timestamp: datetime = Field(default_factory=_utcnow)


class ErrorResponse(BaseModel):
    error: ErrorBody
