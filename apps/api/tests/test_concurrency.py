from __future__ import annotations

from collections.abc import Generator, Mapping
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from app import events
from app.core.database import Base
from app.crm.models import CRMContact, CRMDeal, CRMUser
from app.crm.schemas import DealFilter
from app.crm.store import SqlAlchemyEntityStore, UpdateOperation
from app.platform.integrity.cache import CacheStore
from app.platform.integrity.concurrency import ConcurrencyController
from app.platform.integrity.errors import (
    ConflictError,
    ConflictInfo,
    NotFoundError,
    UnsupportedEntityTypeError,
    ValidationFailedError,
)
from app.platform.integrity.keys import entity_key, list_key
from app.platform.integrity.manager import CacheManager
from app.platform.integrity.schemas import ConflictResolutionStrategy as Strategy


@pytest.fixture(autouse=True)
def clear_published_events() -> Generator[None, None, None]:
    events.published_events.clear()
    yield
    events.published_events.clear()


@pytest.fixture()
def session_factory(tmp_path: Path) -> Generator[sessionmaker[Session], None, None]:
    engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'crm.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
    with factory() as session:
        session.add_all(
            [
                CRMUser(id="u1", organization_id="org1", email="u1@example.com", name="Owner"),
                CRMUser(id="u2", organization_id="org2", email="u2@example.com", name="Other"),
                CRMContact(id="c1", organization_id="org1", first_name="Ann", last_name="Lee", email="ann@example.com"),
                CRMContact(id="c2", organization_id="org1", first_name="Bob", last_name="Ray", email="bob@example.com"),
                CRMDeal(id="d1", organization_id="org1", title="Renewal", stage="lead", probability=10, owner_id="u1"),
                CRMDeal(
                    id="d2",
                    organization_id="org1",
                    title="Upsell",
                    stage="proposal",
                    probability=50,
                    owner_id="u1",
                    row_version=3,
                ),
            ]
        )
        session.commit()
    try:
        yield factory
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture()
def store(session_factory: sessionmaker[Session]) -> SqlAlchemyEntityStore:
    return SqlAlchemyEntityStore(session_factory)


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture()
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture()
def controller(store: SqlAlchemyEntityStore, sleep: RecordingSleep) -> ConcurrencyController:
    return ConcurrencyController(store, max_retries=3, retry_delay_seconds=0.1, sleep=sleep)


class AlwaysLosingStore:
    """Every conditional write loses to a concurrent writer."""

    def __init__(self, inner: SqlAlchemyEntityStore) -> None:
        self.inner = inner
        self.writes = 0

    def find_by_id(self, entity_type: str, entity_id: str) -> dict[str, Any] | None:
        return self.inner.find_by_id(entity_type, entity_id)

    def update(
        self,
        entity_type: str,
        entity_id: str,
        patch: Mapping[str, Any],
        *,
        expected_version: int | None = None,
    ) -> dict[str, Any]:
        self.writes += 1
        raise ConflictError(
            "row_version conflict",
            ConflictInfo(entity_type, entity_id, expected_version or 0, (expected_version or 0) + 1),
        )


def test_get_with_version_returns_the_row_version(controller: ConcurrencyController) -> None:
    row = controller.get_with_version("deal", "d2")
    assert row is not None
    assert row["row_version"] == 3
    assert controller.get_with_version("deal", "missing") is None


def test_only_one_of_two_writers_with_the_same_version_succeeds(controller: ConcurrencyController) -> None:
    first = controller.update_with_version("deal", "d1", 1, {"title": "First"}, Strategy.FAIL)
    second = controller.update_with_version("deal", "d1", 1, {"title": "Second"}, Strategy.FAIL)

    assert first.success is True
    assert first.data is not None
    assert first.data["row_version"] == 2
    assert second.success is False
    assert second.conflict is not None
    assert second.conflict.expected_version == 1
    assert second.conflict.actual_version == 2
    assert second.conflict.conflicting_fields == ["title"]
    assert controller.get_with_version("deal", "d1")["title"] == "First"


def test_parallel_writers_with_the_same_version_produce_one_winner(controller: ConcurrencyController) -> None:
    def attempt(index: int) -> bool:
        result = controller.update_with_version("deal", "d1", 1, {"title": f"Writer {index}"}, Strategy.FAIL)
        return result.success

    with ThreadPoolExecutor(max_workers=4) as executor:
        outcomes = list(executor.map(attempt, range(6)))

    assert outcomes.count(True) == 1
    assert controller.get_with_version("deal", "d1")["row_version"] == 2


def test_safe_update_raises_on_stale_version(controller: ConcurrencyController) -> None:
    with pytest.raises(ConflictError) as excinfo:
        controller.safe_update("deal", "d2", 1, {"title": "Stale"}, Strategy.FAIL)

    assert str(excinfo.value) == "Concurrent modification detected: expected version 1, got 3"
    assert excinfo.value.conflict is not None
    assert excinfo.value.conflict.actual_version == 3


def test_retry_adopts_the_current_version(controller: ConcurrencyController, sleep: RecordingSleep) -> None:
    result = controller.update_with_version("deal", "d2", 1, {"probability": 60}, Strategy.RETRY)

    assert result.success is True
    assert result.retry_count == 1
    assert result.data is not None
    assert result.data["row_version"] == 4
    assert result.data["probability"] == 60
    assert sleep.delays == [pytest.approx(0.1)]


def test_retry_gives_up_after_max_retries(store: SqlAlchemyEntityStore, sleep: RecordingSleep) -> None:
    losing = AlwaysLosingStore(store)
    controller = ConcurrencyController(losing, max_retries=3, retry_delay_seconds=0.1, sleep=sleep)

    result = controller.update_with_version("deal", "d1", 1, {"title": "Never"}, Strategy.RETRY)

    assert result.success is False
    assert result.retry_count == 3
    assert result.conflict is not None
    assert losing.writes == 4
    assert sleep.delays == [pytest.approx(0.1), pytest.approx(0.2), pytest.approx(0.3)]


def test_lost_race_is_not_retried_for_other_strategies(store: SqlAlchemyEntityStore, sleep: RecordingSleep) -> None:
    losing = AlwaysLosingStore(store)
    controller = ConcurrencyController(losing, sleep=sleep)

    result = controller.update_with_version("deal", "d1", 1, {"title": "Mine"}, Strategy.OVERWRITE)

    assert result.success is False
    assert losing.writes == 1
    assert sleep.delays == []


def test_overwrite_applies_the_patch_over_a_newer_version(controller: ConcurrencyController) -> None:
    result = controller.update_with_version("deal", "d2", 1, {"title": "Mine", "stage": "lead"}, Strategy.OVERWRITE)

    assert result.success is True
    assert result.data is not None
    assert result.data["title"] == "Mine"
    assert result.data["stage"] == "lead"
    assert result.data["row_version"] == 4


def test_merge_keeps_an_advanced_deal_stage(controller: ConcurrencyController) -> None:
    result = controller.update_with_version(
        "deal", "d2", 1, {"stage": "qualified", "probability": 20}, Strategy.MERGE
    )

    assert result.success is True
    assert result.data is not None
    assert result.data["stage"] == "proposal"
    assert result.data["probability"] == 20


def test_merge_can_force_a_stage_change(controller: ConcurrencyController) -> None:
    result = controller.update_with_version(
        "deal", "d2", 1, {"stage": "qualified", "force_stage_change": True}, Strategy.MERGE
    )

    assert result.success is True
    assert result.data is not None
    assert result.data["stage"] == "qualified"
    assert "force_stage_change" not in result.data


def test_merge_moves_a_stage_forward(controller: ConcurrencyController) -> None:
    result = controller.update_with_version("deal", "d2", 1, {"stage": "won", "probability": 100}, Strategy.MERGE)

    assert result.success is True
    assert result.data is not None
    assert result.data["stage"] == "won"


@pytest.mark.parametrize(
    ("patch", "message"),
    [
        ({"nickname": "x"}, "invalid deal patch"),
        ({"probability": 101}, "invalid deal patch"),
        ({"title": None}, "invalid deal patch"),
        ({"organization_id": "org2"}, "immutable deal fields: organization_id"),
        ({}, "deal patch has no changes"),
        ({"force_stage_change": True}, "deal patch has no changes"),
        ({"contact_id": "ghost"}, "contact ghost referenced by deal.contact_id does not exist"),
        ({"owner_id": "u2"}, "user u2 belongs to a different organization"),
    ],
)
def test_invalid_patches_are_rejected_before_writing(
    controller: ConcurrencyController, patch: dict[str, Any], message: str
) -> None:
    with pytest.raises(ValidationFailedError, match=message):
        controller.update_with_version("deal", "d1", 1, patch, Strategy.FAIL)

    assert controller.get_with_version("deal", "d1")["row_version"] == 1
    assert len(events.published_events) == 0


def test_missing_entity_raises_not_found(controller: ConcurrencyController) -> None:
    with pytest.raises(NotFoundError):
        controller.update_with_version("deal", "missing", 1, {"title": "x"}, Strategy.FAIL)


@pytest.mark.parametrize("entity_type", ["user", "invoice"])
def test_unsupported_entity_types_are_rejected(controller: ConcurrencyController, entity_type: str) -> None:
    with pytest.raises(UnsupportedEntityTypeError):
        controller.update_with_version(entity_type, "u1", 1, {"name": "x"}, Strategy.FAIL)


def test_successful_update_invalidates_caches_and_publishes(store: SqlAlchemyEntityStore) -> None:
    cache = CacheManager(CacheStore())
    cache.store.set(entity_key("deal", "d1"), {"title": "Renewal"})
    cache.store.set(list_key(DealFilter(), "org1"), ["d1", "d2"])
    cache.store.set(entity_key("contact", "c1"), {"id": "c1"})
    controller = ConcurrencyController(store, cache_manager=cache)

    controller.safe_update("deal", "d1", 1, {"title": "Renewal 2025"}, Strategy.FAIL, actor_user_id="u1")

    assert cache.store.keys() == [entity_key("contact", "c1")]
    assert len(events.published_events) == 1
    event = events.published_events[0]
    assert event["event_type"] == "crm.deal.updated"
    assert event["actor_user_id"] == "u1"
    assert event["organization_id"] == "org1"
    assert event["payload"] == {"deal_id": "d1", "row_version": 2, "changed_fields": ["title"]}


def test_failed_update_leaves_caches_alone(store: SqlAlchemyEntityStore) -> None:
    cache = CacheManager(CacheStore())
    cache.store.set(entity_key("deal", "d2"), {"title": "Upsell"})
    controller = ConcurrencyController(store, cache_manager=cache)

    result = controller.update_with_version("deal", "d2", 1, {"title": "x"}, Strategy.FAIL)

    assert result.success is False
    assert cache.store.size() == 1
    assert len(events.published_events) == 0


def test_fail_batch_applies_every_update(controller: ConcurrencyController) -> None:
    results = controller.safe_batch_update(
        [
            UpdateOperation("deal", "d1", {"probability": 30}, expected_version=1),
            UpdateOperation("deal", "d2", {"probability": 70}, expected_version=3),
        ],
        Strategy.FAIL,
    )

    assert [result.success for result in results] == [True, True]
    assert [result.data["row_version"] for result in results if result.data] == [2, 4]
    assert [event["payload"]["deal_id"] for event in events.published_events] == ["d1", "d2"]


def test_fail_batch_with_a_stale_version_changes_nothing(controller: ConcurrencyController) -> None:
    with pytest.raises(ConflictError, match="Batch update conflict") as excinfo:
        controller.safe_batch_update(
            [
                UpdateOperation("deal", "d1", {"probability": 30}, expected_version=1),
                UpdateOperation("deal", "d2", {"probability": 70}, expected_version=1),
            ],
            Strategy.FAIL,
        )

    assert excinfo.value.conflict is not None
    assert excinfo.value.conflict.entity_id == "d2"
    assert controller.get_with_version("deal", "d1")["probability"] == 10
    assert len(events.published_events) == 0


def test_fail_batch_rolls_back_when_a_later_write_fails(controller: ConcurrencyController) -> None:
    with pytest.raises(ValidationFailedError, match="uniqueness"):
        controller.safe_batch_update(
            [
                UpdateOperation("contact", "c1", {"job_title": "CTO"}, expected_version=1),
                UpdateOperation("contact", "c2", {"email": "ann@example.com"}, expected_version=1),
            ],
            Strategy.FAIL,
        )

    contact = controller.get_with_version("contact", "c1")
    assert contact["job_title"] is None
    assert contact["row_version"] == 1


def test_fail_batch_requires_expected_versions(controller: ConcurrencyController) -> None:
    with pytest.raises(ValidationFailedError, match="expected_version is required"):
        controller.safe_batch_update([UpdateOperation("deal", "d1", {"probability": 30})], Strategy.FAIL)


def test_non_fail_batch_reports_each_update(controller: ConcurrencyController) -> None:
    results = controller.safe_batch_update(
        [
            UpdateOperation("deal", "d1", {"title": "One"}, expected_version=1),
            UpdateOperation("deal", "d2", {"title": "Two"}, expected_version=1),
        ],
        Strategy.OVERWRITE,
    )

    assert [result.success for result in results] == [True, True]
    assert results[1].data is not None
    assert results[1].data["row_version"] == 4


def test_non_fail_batch_reports_a_missing_item_without_raising(
    controller: ConcurrencyController, store: SqlAlchemyEntityStore
) -> None:
    results = controller.safe_batch_update(
        [
            UpdateOperation("deal", "d1", {"title": "One"}, expected_version=1),
            UpdateOperation("deal", "missing", {"title": "Ghost"}, expected_version=1),
            UpdateOperation("deal", "d2", {"probability": 500}, expected_version=3),
        ],
        Strategy.OVERWRITE,
    )

    assert [result.success for result in results] == [True, False, False]
    assert results[0].error is None
    assert results[1].error == "deal missing not found"
    assert results[2].error == "invalid deal patch"
    assert store.find_by_id("deal", "d1")["title"] == "One"
    assert [event["payload"]["deal_id"] for event in events.published_events] == ["d1"]
