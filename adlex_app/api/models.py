from __future__ import annotations

from typing import Any, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class _DTOBase(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class ProblemDetail(BaseModel):
    type: str = "/errors/general"
    title: str
    status: int
    detail: str | None = None
    instance: str | None = None
    code: str | None = None
    extra: dict[str, Any] | None = None


class CreateCheckRequest(_DTOBase):
    """Body of ``POST /api/checks``.

    ``organizationId``/``inputType``/``fileName`` camelCase aliases are
    accepted for older clients.
    """

    organization_id: int = Field(validation_alias=AliasChoices("organization_id", "organizationId"))
    text: str
    input_type: Literal["text", "image"] = Field(
        "text", validation_alias=AliasChoices("input_type", "inputType")
    )
    file_name: Optional[str] = Field(None, validation_alias=AliasChoices("file_name", "fileName"))
    priority: Literal["high", "normal", "low"] = "normal"


class CreateCheckResponse(BaseModel):
    check_id: int
    status: str
    message: str


class ViolationOut(BaseModel):
    id: int
    start_pos: int
    end_pos: int
    reason: str
    dictionary_id: Optional[int] = None


class CheckOut(BaseModel):
    id: int
    organization_id: int
    user_id: str
    original_text: str
    modified_text: Optional[str] = None
    status: Literal["pending", "processing", "completed", "failed"]
    error_message: Optional[str] = None
    input_type: str = "text"
    file_name: Optional[str] = None
    created_at: Optional[str] = None
    completed_at: Optional[str] = None
    violations: List[ViolationOut] = Field(default_factory=list)


class QueueStatus(BaseModel):
    running: bool
    queue_length: int
    processing_count: int
    processing_ids: List[int] = Field(default_factory=list)
    max_concurrent: int
    max_size: int
