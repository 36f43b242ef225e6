"""Typed view of the Gmail API ``users.messages.get`` (format=full) payload.

Every field is optional except ``id`` and ``threadId``, which Gmail always
returns. The parser validates raw dicts into ``RawMessage`` once and works
with the typed structure from then on.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _none_to_list(value: Any) -> Any:
    return [] if value is None else value


def _number_to_str(value: Any) -> Any:
    # internalDate/historyId are documented as strings but arrive as ints from some fixtures.
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return value


class RawHeader(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str = ""
    value: str = ""


class RawBody(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    attachment_id: str | None = Field(default=None, alias="attachmentId")
    size: int | None = None
    data: str | None = None


class RawMessagePart(BaseModel):
    """One node of the MIME tree."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    part_id: str | None = Field(default=None, alias="partId")
    mime_type: str | None = Field(default=None, alias="mimeType")
    filename: str | None = None
    headers: list[RawHeader] = Field(default_factory=list)
    body: RawBody | None = None
    parts: list[RawMessagePart] = Field(default_factory=list)

    @field_validator("headers", "parts", mode="before")
    @classmethod
    def default_lists(cls, value: Any) -> Any:
        return _none_to_list(value)


class RawMessage(BaseModel):
    """A full Gmail message as returned by the API."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str
    thread_id: str = Field(alias="threadId")
    label_ids: list[str] = Field(default_factory=list, alias="labelIds")
    snippet: str | None = None
    history_id: str | None = Field(default=None, alias="historyId")
    internal_date: str | None = Field(default=None, alias="internalDate")
    payload: RawMessagePart | None = None
    size_estimate: int | None = Field(default=None, alias="sizeEstimate")

    @field_validator("label_ids", mode="before")
    @classmethod
    def default_labels(cls, value: Any) -> Any:
        return _none_to_list(value)

    @field_validator("history_id", "internal_date", mode="before")
    @classmethod
    def numbers_as_strings(cls, value: Any) -> Any:
        return _number_to_str(value)
