from __future__ import annotations

import contextvars
import logging
import re
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from opentelemetry import trace

from app.crm.schemas import (
    ACTIVITY_TYPES,
    DEAL_STAGES,
    ActivityFilter,
    CompanyFilter,
    ContactFilter,
    DealFilter,
    ListFilter,
)
from app.crm.store import EntityStore
from app.metrics import observe_integrity_check
from app.platform.integrity.errors import IntegrityServiceError, UnsupportedEntityTypeError
from app.platform.integrity.schemas import IntegrityCheckResult


logger = logging.getLogger("app.integrity.validator")
tracer = trace.get_tracer("app.integrity.validator")

EMAIL_RE = re.compile(r"[^\s@]+@[^\s@]+\.[^\s@]+")
DOMAIN_RE = re.compile(r"(https?://)?([\da-z.-]+)\.([a-z.]{2,6})([/\w .-]*)/?")

DEFAULT_MAX_WORKERS = 4

_Check = Callable[[str, IntegrityCheckResult], None]


class DataIntegrityValidator:
    """Referential and tenant consistency checks over persisted CRM entities.

    Data-quality problems are reported in the returned ``IntegrityCheckResult``;
    only an unsupported entity type raises. A store failure while checking one
    entity becomes a ``Validation error: ...`` entry on that entity's result.
    """

    def __init__(self, store: EntityStore, *, max_workers: int = DEFAULT_MAX_WORKERS) -> None:
        self.store = store
        self.max_workers = max_workers
        self._checks: dict[str, _Check] = {
            "contact": self._check_contact,
            "company": self._check_company,
            "deal": self._check_deal,
            "activity": self._check_activity,
        }

    def validate_contact(self, contact_id: str) -> IntegrityCheckResult:
        return self._run("contact", contact_id, self._check_contact)

    def validate_company(self, company_id: str) -> IntegrityCheckResult:
        return self._run("company", company_id, self._check_company)

    def validate_deal(self, deal_id: str) -> IntegrityCheckResult:
        return self._run("deal", deal_id, self._check_deal)

    def validate_activity(self, activity_id: str) -> IntegrityCheckResult:
        return self._run("activity", activity_id, self._check_activity)

    def validate_entity(self, entity_type: str, entity_id: str) -> IntegrityCheckResult:
        check = self._checks.get(entity_type)
        if check is None:
            raise UnsupportedEntityTypeError(entity_type)
        return self._run(entity_type, entity_id, check)

    def validate_organization(self, organization_id: str) -> list[IntegrityCheckResult]:
        with tracer.start_as_current_span("integrity.validate_organization") as span:
            span.set_attribute("organization_id", organization_id)
            try:
                targets = [
                    (entity_type, row["id"])
                    for entity_type, filter in (
                        ("contact", ContactFilter(organization_id=organization_id)),
                        ("company", CompanyFilter(organization_id=organization_id)),
                        ("deal", DealFilter(organization_id=organization_id)),
                    )
                    for row in self.store.find_many(entity_type, filter)
                ]
            except Exception as exc:
                logger.exception(
                    "organization_validation_failed",
                    extra={"organization_id": organization_id, "error": str(exc)},
                )
                observe_integrity_check("organization", False)
                return [
                    IntegrityCheckResult.failed(
                        "organization", organization_id, f"Organization validation failed: {exc}"
                    )
                ]

            results = self._validate_all(targets)
            invalid = sum(1 for result in results if not result.is_valid)
            span.set_attribute("entity_count", len(results))
            span.set_attribute("invalid_count", invalid)

        logger.info(
            "organization_validated",
            extra={"organization_id": organization_id, "checked": len(results), "invalid": invalid},
        )
        return results

    def _validate_all(self, targets: list[tuple[str, str]]) -> list[IntegrityCheckResult]:
        if not targets:
            return []

        results: list[IntegrityCheckResult] = []
        workers = min(self.max_workers, len(targets))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="integrity") as executor:
            # Each task runs in its own copy of the caller's context so log records keep the correlation id.
            futures = [
                (
                    entity_type,
                    entity_id,
                    executor.submit(contextvars.copy_context().run, self.validate_entity, entity_type, entity_id),
                )
                for entity_type, entity_id in targets
            ]
            for entity_type, entity_id, future in futures:
                try:
                    results.append(future.result())
                except Exception as exc:
                    # A crashing check invalidates only its own entity.
                    logger.error(
                        "integrity_check_crashed",
                        extra={"entity_type": entity_type, "entity_id": entity_id, "error": str(exc)},
                        exc_info=True,
                    )
                    observe_integrity_check(entity_type, False)
                    results.append(IntegrityCheckResult.failed(entity_type, entity_id, f"Validation failed: {exc}"))
        return results

    def _run(self, entity_type: str, entity_id: str, check: _Check) -> IntegrityCheckResult:
        result = IntegrityCheckResult(entity_type=entity_type, entity_id=entity_id)
        try:
            check(entity_id, result)
        except IntegrityServiceError as exc:
            logger.warning(
                "integrity_check_error",
                extra={"entity_type": entity_type, "entity_id": entity_id, "error": str(exc)},
            )
            result.add_error(f"Validation error: {exc}")
        except Exception as exc:
            logger.exception(
                "integrity_check_error",
                extra={"entity_type": entity_type, "entity_id": entity_id, "error": str(exc)},
            )
            result.add_error(f"Validation error: {exc}")
        observe_integrity_check(entity_type, result.is_valid)
        return result

    def _check_contact(self, contact_id: str, result: IntegrityCheckResult) -> None:
        contact = self.store.find_by_id("contact", contact_id)
        if contact is None:
            result.add_error("Contact not found")
            return

        if not EMAIL_RE.fullmatch(contact["email"] or ""):
            result.add_error("Invalid email format")

        company = self._resolve("company", contact.get("company_id"))
        if contact.get("company_id") and company is None:
            result.add_error("Company reference exists but company not found")

        orphaned_deals = self._count_orphans("deal", DealFilter(contact_id=contact_id), "contact", contact_id)
        if orphaned_deals:
            result.add_warning(f"{orphaned_deals} orphaned deals found")

        orphaned_activities = self._count_orphans(
            "activity", ActivityFilter(contact_id=contact_id), "contact", contact_id
        )
        if orphaned_activities:
            result.add_warning(f"{orphaned_activities} orphaned activities found")

        if company is not None and company["organization_id"] != contact["organization_id"]:
            result.add_error("Contact and company belong to different organizations")

    def _check_deal(self, deal_id: str, result: IntegrityCheckResult) -> None:
        deal = self.store.find_by_id("deal", deal_id)
        if deal is None:
            result.add_error("Deal not found")
            return

        if deal["stage"] not in DEAL_STAGES:
            result.add_error("Invalid deal stage")

        probability = deal["probability"]
        if probability is None or not 0 <= probability <= 100:
            result.add_error("Probability must be between 0 and 100")

        if deal.get("amount") is not None and deal["amount"] < 0:
            result.add_error("Deal amount cannot be negative")

        contact = self._resolve("contact", deal.get("contact_id"))
        if deal.get("contact_id") and contact is None:
            result.add_error("Contact reference exists but contact not found")

        company = self._resolve("company", deal.get("company_id"))
        if deal.get("company_id") and company is None:
            result.add_error("Company reference exists but company not found")

        owner = self._resolve("user", deal.get("owner_id"))
        if owner is None:
            result.add_error("Deal owner not found")

        for label, related in (("contact", contact), ("company", company), ("owner", owner)):
            if related is not None and related["organization_id"] != deal["organization_id"]:
                result.add_error(f"Deal and {label} belong to different organizations")

        if deal["stage"] == "won" and probability != 100:
            result.add_warning("Won deal should have 100% probability")
        if deal["stage"] == "lost" and probability != 0:
            result.add_warning("Lost deal should have 0% probability")

    def _check_company(self, company_id: str, result: IntegrityCheckResult) -> None:
        company = self.store.find_by_id("company", company_id)
        if company is None:
            result.add_error("Company not found")
            return

        if company.get("domain") and not DOMAIN_RE.fullmatch(company["domain"]):
            result.add_warning("Invalid domain format")

        orphaned_contacts = self._count_orphans(
            "contact", ContactFilter(company_id=company_id), "company", company_id
        )
        if orphaned_contacts:
            result.add_warning(f"{orphaned_contacts} orphaned contacts found")

        orphaned_deals = self._count_orphans("deal", DealFilter(company_id=company_id), "company", company_id)
        if orphaned_deals:
            result.add_warning(f"{orphaned_deals} orphaned deals found")

        foreign_contacts = sum(
            1
            for contact in self.store.find_many("contact", ContactFilter(company_id=company_id))
            if contact["organization_id"] != company["organization_id"]
        )
        if foreign_contacts:
            result.add_error(f"{foreign_contacts} contacts belong to different organizations")

    def _check_activity(self, activity_id: str, result: IntegrityCheckResult) -> None:
        activity = self.store.find_by_id("activity", activity_id)
        if activity is None:
            result.add_error("Activity not found")
            return

        if activity["type"] not in ACTIVITY_TYPES:
            result.add_error("Invalid activity type")

        contact = self._resolve("contact", activity.get("contact_id"))
        if activity.get("contact_id") and contact is None:
            result.add_error("Contact reference exists but contact not found")

        deal = self._resolve("deal", activity.get("deal_id"))
        if activity.get("deal_id") and deal is None:
            result.add_error("Deal reference exists but deal not found")

        user = self._resolve("user", activity.get("user_id"))
        if user is None:
            result.add_error("Activity user not found")

        for label, related in (("contact", contact), ("deal", deal), ("user", user)):
            if related is not None and related["organization_id"] != activity["organization_id"]:
                result.add_error(f"Activity and {label} belong to different organizations")

        if (
            contact is not None
            and deal is not None
            and deal.get("contact_id")
            and deal["contact_id"] != contact["id"]
        ):
            result.add_warning("Activity contact does not match the deal contact")

    def _resolve(self, entity_type: str, entity_id: str | None) -> dict[str, Any] | None:
        if not entity_id:
            return None
        return self.store.find_by_id(entity_type, entity_id)

    def _count_orphans(self, entity_type: str, filter: ListFilter, target_type: str, target_id: str) -> int:
        """Rows of ``entity_type`` pointing at ``target_id`` while the target no longer resolves."""
        referencing = self.store.find_many(entity_type, filter)
        if not referencing:
            return 0
        if self.store.find_by_id(target_type, target_id) is not None:
            return 0
        return len(referencing)
