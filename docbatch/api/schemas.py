from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class CallbackRequest(BaseModel):
    """Status report posted by the worker. Accepts snake_case and camelCase keys."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    processing_id: str = Field(
        ..., min_length=1, validation_alias=AliasChoices("processing_id", "processingId")
    )
    status: str = Field(..., min_length=1)
    progress: int | None = Field(default=None, ge=0)
    result_ref: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "result_ref", "resultRef", "result_url", "resultUrl", "result_file_url"
        ),
    )
    error_message: str | None = Field(
        default=None, validation_alias=AliasChoices("error_message", "errorMessage", "error")
    )
    estimated_time: int | None = Field(
        default=None,
        ge=0,
        validation_alias=AliasChoices("estimated_time", "estimatedTime"),
    )
    data: dict[str, Any] | None = None


class CallbackResponse(BaseModel):
    processing_id: str
    outcome: str
    status: str


class HealthResponse(BaseModel):
    status: str
    listener: bool
