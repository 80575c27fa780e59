from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

Source = Literal["github", "gitlab", "jira", "slack", "discord"]
LinkType = Literal["lexical", "semantic"]
Relationship = Literal["incoming", "outgoing"]


class IngestEventInput(BaseModel):
    """Canonical event handed to the ingestion gateway by every adapter.

    ``external_id`` must be stable for a given provider event; it is the
    idempotency key together with ``source``.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    organization_id: str | None = None
    source: Source
    event_type: str = Field(min_length=1)
    external_id: str = Field(min_length=1)
    activity_type: str = Field(min_length=1)
    title: str
    description: str | None = None
    repo_name: str | None = None
    pr_number: int | None = None
    issue_number: int | None = None
    user_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("external_id")
    @classmethod
    def _strip_external_id(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("external_id must be a non-empty string")
        return stripped

    @field_validator("metadata", mode="before")
    @classmethod
    def _default_metadata(cls, value: Any) -> Any:
        return {} if value is None else value


class IngestAccepted(BaseModel):
    activity_id: str
    skipped: bool


class LinkOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    title: str
    source: str
    type: str
    url: str | None = None
    relationship: Relationship
    link_type: LinkType = Field(serialization_alias="linkType")
    link_subtype: str | None = Field(default=None, serialization_alias="linkSubtype")
    similarity: float | None = None


class LinksOut(BaseModel):
    links: list[LinkOut]


class RelatedContextRequest(BaseModel):
    text: str = Field(min_length=1)
    threshold: float | None = Field(default=None, ge=0.0, le=1.0)
    limit: int = Field(default=5, ge=1, le=50)


class RelatedActivityOut(BaseModel):
    id: str
    title: str
    description: str | None = None
    source: str
    activity_type: str
    similarity: float


class RelatedContextOut(BaseModel):
    results: list[RelatedActivityOut]


class WebhookAccepted(BaseModel):
    success: bool = True
    activity_id: str | None = None
    skipped: bool | None = None
    queue_item_id: str | None = None
