from __future__ import annotations

import hashlib
from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Any, ClassVar, Literal, get_args

from pydantic import BaseModel, ConfigDict, EmailStr, Field, model_validator


DealStage = Literal["lead", "qualified", "proposal", "negotiation", "won", "lost"]
ActivityType = Literal["call", "email", "meeting", "task", "note"]

DEAL_STAGES: tuple[str, ...] = get_args(DealStage)
ACTIVITY_TYPES: tuple[str, ...] = get_args(ActivityType)

MAX_PAGE_SIZE = 100


class ListFilter(BaseModel):
    """Query shape for ``EntityStore.find_many``.

    ``organization_id`` is optional so cross-tenant integrity probes can look for
    rows that reference an entity from another organization. ``limit=None`` returns
    every matching row.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    organization_id: str | None = None
    page: int = Field(default=1, ge=1)
    limit: int | None = Field(default=None, ge=1, le=MAX_PAGE_SIZE)

    def reference_segments(self) -> tuple[str, ...]:
        return ()

    def fingerprint(self) -> str:
        payload = self.model_dump_json(exclude={"organization_id"})
        return hashlib.sha1(payload.encode("utf-8")).hexdigest()[:16]

    @property
    def offset(self) -> int:
        if self.limit is None:
            return 0
        return (self.page - 1) * self.limit


class ContactFilter(ListFilter):
    entity_type: Literal["contact"] = "contact"
    company_id: str | None = None
    search: str | None = None

    def reference_segments(self) -> tuple[str, ...]:
        return ("company", self.company_id) if self.company_id else ()


class CompanyFilter(ListFilter):
    entity_type: Literal["company"] = "company"
    search: str | None = None
    industry: str | None = None
    size: str | None = None


class DealFilter(ListFilter):
    entity_type: Literal["deal"] = "deal"
    stage: DealStage | None = None
    owner_id: str | None = None
    contact_id: str | None = None
    company_id: str | None = None
    min_amount: Decimal | None = None
    max_amount: Decimal | None = None
    search: str | None = None

    def reference_segments(self) -> tuple[str, ...]:
        segments: tuple[str, ...] = ()
        if self.contact_id:
            segments += ("contact", self.contact_id)
        if self.company_id:
            segments += ("company", self.company_id)
        return segments


class ActivityFilter(ListFilter):
    entity_type: Literal["activity"] = "activity"
    type: ActivityType | None = None
    completed: bool | None = None
    contact_id: str | None = None
    deal_id: str | None = None

    def reference_segments(self) -> tuple[str, ...]:
        segments: tuple[str, ...] = ()
        if self.contact_id:
            segments += ("contact", self.contact_id)
        if self.deal_id:
            segments += ("deal", self.deal_id)
        return segments


EntityFilter = Annotated[
    ContactFilter | CompanyFilter | DealFilter | ActivityFilter,
    Field(discriminator="entity_type"),
]


class _PatchModel(BaseModel):
    model_config = ConfigDict(extra="forbid")

    non_nullable: ClassVar[frozenset[str]] = frozenset()
    # Keys that steer the update but are not persisted.
    control_fields: ClassVar[frozenset[str]] = frozenset()

    @model_validator(mode="after")
    def _reject_null_required_fields(self) -> _PatchModel:
        nulled = sorted(
            name for name in self.model_fields_set if name in self.non_nullable and getattr(self, name) is None
        )
        if nulled:
            raise ValueError(f"fields cannot be null: {', '.join(nulled)}")
        return self

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class ContactPatch(_PatchModel):
    non_nullable: ClassVar[frozenset[str]] = frozenset({"first_name", "last_name", "email"})

    first_name: str | None = Field(default=None, min_length=1)
    last_name: str | None = Field(default=None, min_length=1)
    email: EmailStr | None = None
    phone: str | None = None
    job_title: str | None = None
    company_id: str | None = None


class CompanyPatch(_PatchModel):
    non_nullable: ClassVar[frozenset[str]] = frozenset({"name"})

    name: str | None = Field(default=None, min_length=1)
    domain: str | None = None
    industry: str | None = None
    size: str | None = None


class DealPatch(_PatchModel):
    non_nullable: ClassVar[frozenset[str]] = frozenset({"title", "stage", "probability", "owner_id"})
    control_fields: ClassVar[frozenset[str]] = frozenset({"force_stage_change"})

    title: str | None = Field(default=None, min_length=1)
    amount: Decimal | None = Field(default=None, ge=0)
    stage: DealStage | None = None
    probability: int | None = Field(default=None, ge=0, le=100)
    expected_close_date: date | None = None
    contact_id: str | None = None
    company_id: str | None = None
    owner_id: str | None = None
    force_stage_change: bool = False


class ActivityPatch(_PatchModel):
    non_nullable: ClassVar[frozenset[str]] = frozenset({"type", "subject", "completed", "user_id"})

    type: ActivityType | None = None
    subject: str | None = Field(default=None, min_length=1)
    description: str | None = None
    due_date: datetime | None = None
    completed: bool | None = None
    contact_id: str | None = None
    deal_id: str | None = None
    user_id: str | None = None


PATCH_SCHEMAS: dict[str, type[_PatchModel]] = {
    "contact": ContactPatch,
    "company": CompanyPatch,
    "deal": DealPatch,
    "activity": ActivityPatch,
}

# Which entity type each reference column points at.
REFERENCE_FIELDS: dict[str, str] = {
    "company_id": "company",
    "contact_id": "contact",
    "deal_id": "deal",
    "owner_id": "user",
    "user_id": "user",
}
