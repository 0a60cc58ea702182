from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import Boolean, Date, DateTime, Index, Integer, Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class TenantRecord:
    """Identity, tenant and bookkeeping columns shared by every CRM table.

    ``row_version`` starts at 1 and is bumped by every successful conditional update.
    """

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )
    row_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")


class CRMUser(TenantRecord, Base):
    __tablename__ = "crm_user"

    email: Mapped[str] = mapped_column(Text, nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    role: Mapped[str] = mapped_column(String(32), nullable=False, default="user", server_default="user")


class CRMCompany(TenantRecord, Base):
    __tablename__ = "crm_company"
    __table_args__ = (
        UniqueConstraint("organization_id", "name", name="uq_crm_company_org_name"),
        UniqueConstraint("organization_id", "domain", name="uq_crm_company_org_domain"),
    )

    name: Mapped[str] = mapped_column(Text, nullable=False)
    domain: Mapped[str | None] = mapped_column(Text, nullable=True)
    industry: Mapped[str | None] = mapped_column(Text, nullable=True)
    size: Mapped[str | None] = mapped_column(String(32), nullable=True)


class CRMContact(TenantRecord, Base):
    __tablename__ = "crm_contact"
    __table_args__ = (UniqueConstraint("organization_id", "email", name="uq_crm_contact_org_email"),)

    # References are not foreign keys; dangling ones are reported by the integrity validator.
    company_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    first_name: Mapped[str] = mapped_column(Text, nullable=False)
    last_name: Mapped[str] = mapped_column(Text, nullable=False)
    email: Mapped[str] = mapped_column(Text, nullable=False)
    phone: Mapped[str | None] = mapped_column(Text, nullable=True)
    job_title: Mapped[str | None] = mapped_column(Text, nullable=True)


class CRMDeal(TenantRecord, Base):
    __tablename__ = "crm_deal"
    __table_args__ = (
        Index("ix_crm_deal_contact_id", "contact_id"),
        Index("ix_crm_deal_company_id", "company_id"),
    )

    title: Mapped[str] = mapped_column(Text, nullable=False)
    amount: Mapped[Decimal | None] = mapped_column(Numeric(18, 2), nullable=True)
    stage: Mapped[str] = mapped_column(String(32), nullable=False, default="lead", server_default="lead")
    probability: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    expected_close_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    contact_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    company_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    owner_id: Mapped[str] = mapped_column(String(36), nullable=False)


class CRMActivity(TenantRecord, Base):
    __tablename__ = "crm_activity"
    __table_args__ = (
        Index("ix_crm_activity_contact_id", "contact_id"),
        Index("ix_crm_activity_deal_id", "deal_id"),
    )

    type: Mapped[str] = mapped_column(String(16), nullable=False)
    subject: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    due_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    contact_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    deal_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)


ENTITY_MODELS: dict[str, type[Base]] = {
    "user": CRMUser,
    "company": CRMCompany,
    "contact": CRMContact,
    "deal": CRMDeal,
    "activity": CRMActivity,
}
