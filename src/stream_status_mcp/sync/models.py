"""Models for on-disk stream definitions."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

Category = Literal["frontend", "backend", "infrastructure", "testing", "documentation", "refactoring"]
Priority = Literal["critical", "high", "medium", "low"]
Status = Literal["initializing", "active", "blocked", "paused", "completed", "archived"]


class StreamDefinition(BaseModel):
    """Frontmatter of a stream plan file, after defaults are applied."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(..., description="Stream id derived from the file or directory name.")
    title: str = Field(..., description="Display title for the stream.")
    stream_number: str = Field(
        default="0000",
        validation_alias="streamNumber",
        description="Sortable stream sequence code.",
    )
    category: Category = Field(default="backend")
    priority: Priority = Field(default="medium")
    status: Status = Field(default="active")
    branch: str | None = Field(default=None)
    worktree_path: str | None = Field(default=None, validation_alias="worktreePath")
    blocked_by: str | None = Field(default=None, validation_alias="blockedBy")
    phases: list[str] = Field(
        default_factory=list,
        description="Ordered phase names; a comma separated string is accepted.",
    )

    @field_validator("id", "title")
    @classmethod
    def _require_text(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Stream id and title must not be empty")
        return normalized

    @field_validator("title", "stream_number", "branch", "worktree_path", "blocked_by", mode="before")
    @classmethod
    def _coerce_scalar(cls, value: Any):  # type: ignore[override]
        if value is None:
            return None
        if isinstance(value, (int, float)):
            return str(value)
        return value

    @field_validator("category", "priority", "status", mode="before")
    @classmethod
    def _normalize_enum(cls, value: Any):  # type: ignore[override]
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("phases", mode="before")
    @classmethod
    def _split_phases(cls, value: Any):  # type: ignore[override]
        if value is None or value == "":
            return []
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        if isinstance(value, (list, tuple)):
            return [str(item).strip() for item in value if str(item).strip()]
        raise TypeError("phases must be a list or a comma separated string")


__all__ = ["Category", "Priority", "Status", "StreamDefinition"]
