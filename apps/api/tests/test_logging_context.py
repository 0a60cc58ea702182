from __future__ import annotations

import json
import logging
from collections.abc import Generator
from pathlib import Path
from typing import Any

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from app.core.context import reset_correlation_id, set_correlation_id
from app.core.config import get_settings
from app.core.database import Base
from app.crm.api import ActorUser, get_current_user as crm_get_current_user, get_integrity_services
from app.crm.models import CRMContact
from app.crm.schemas import ListFilter
from app.crm.store import SqlAlchemyEntityStore
from app.logging import JsonLogFormatter
from app.main import app
from app.platform.integrity.errors import DatabaseError
from app.platform.integrity.services import IntegrityServices, build_integrity_services
from app.platform.integrity.validator import DataIntegrityValidator


@pytest.fixture()
def session_factory(tmp_path: Path) -> Generator[sessionmaker[Session], None, None]:
    engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'crm.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
    with factory() as session:
        session.add_all(
            [
                CRMContact(id="c1", organization_id="org1", first_name="Ann", last_name="Lee", email="ann@example.com"),
                CRMContact(
                    id="c2",
                    organization_id="org1",
                    first_name="Bob",
                    last_name="Ray",
                    email="bob@example.com",
                    company_id="x",
                ),
            ]
        )
        session.commit()
    try:
        yield factory
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture(autouse=True)
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def services(session_factory: sessionmaker[Session]) -> IntegrityServices:
    return build_integrity_services(session_factory, get_settings())


@pytest.fixture()
def client(services: IntegrityServices) -> Generator[TestClient, None, None]:
    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="user-1",
            organization_id="org1",
            roles={"admin"},
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_integrity_services] = lambda: services
    app.dependency_overrides[crm_get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


class CompanyLookupFails:
    def __init__(self, inner: SqlAlchemyEntityStore) -> None:
        self.inner = inner

    def find_by_id(self, entity_type: str, entity_id: str) -> dict[str, Any] | None:
        if entity_type == "company":
            raise DatabaseError("connection reset")
        return self.inner.find_by_id(entity_type, entity_id)

    def find_many(self, entity_type: str, filter: ListFilter | None = None) -> list[dict[str, Any]]:
        return self.inner.find_many(entity_type, filter)


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    response = client.get("/api/crm/contact/missing", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404

    records = [record for record in caplog.records if record.name == "app.request" and record.getMessage() == "http.request"]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/api/crm/{id}/{id}"
        and getattr(record, "status_code", None) == 404
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_logs_include_cache_invalidation_context(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    response = client.patch(
        "/api/crm/contact/c1",
        json={"expected_version": 1, "patch": {"job_title": "CTO"}, "strategy": "FAIL"},
        headers={"X-Correlation-Id": "abc-456"},
    )
    assert response.status_code == 200

    cache_records = [record for record in caplog.records if record.name == "app.integrity.cache"]
    assert any(
        record.getMessage() == "cache_entity_invalidated"
        and getattr(record, "entity_type", None) == "contact"
        and getattr(record, "entity_id", None) == "c1"
        and getattr(record, "correlation_id", None) == "abc-456"
        for record in cache_records
    )


def test_organization_scan_logs_summary(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    response = client.get(
        "/api/admin/integrity",
        params={"organization": "true"},
        headers={"X-Correlation-Id": "scan-1"},
    )
    assert response.status_code == 200

    summaries = [record for record in caplog.records if record.getMessage() == "organization_validated"]
    assert summaries
    assert getattr(summaries[-1], "organization_id", None) == "org1"
    assert getattr(summaries[-1], "checked", None) == 2
    assert getattr(summaries[-1], "invalid", None) == 1
    assert getattr(summaries[-1], "correlation_id", None) == "scan-1"


def test_worker_thread_logs_keep_the_callers_correlation_id(
    session_factory: sessionmaker[Session],
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)
    validator = DataIntegrityValidator(CompanyLookupFails(SqlAlchemyEntityStore(session_factory)), max_workers=2)

    token = set_correlation_id("scan-threads-1")
    try:
        results = validator.validate_organization("org1")
    finally:
        reset_correlation_id(token)

    assert [result.errors for result in results if not result.is_valid] == [["Validation error: connection reset"]]
    warnings = [record for record in caplog.records if record.getMessage() == "integrity_check_error"]
    assert warnings
    assert all(getattr(record, "correlation_id", None) == "scan-threads-1" for record in warnings)
    assert all(record.threadName.startswith("integrity") for record in warnings)


def test_json_formatter_keeps_known_fields_only() -> None:
    record = logging.makeLogRecord(
        {
            "name": "app.integrity.concurrency",
            "levelname": "WARNING",
            "msg": "optimistic_lock_conflict",
            "entity_type": "deal",
            "strategy": "RETRY",
            "retry_count": 2,
            "secret": "do-not-log",
            "correlation_id": "fmt-1",
        }
    )

    payload = json.loads(JsonLogFormatter().format(record))

    assert payload["msg"] == "optimistic_lock_conflict"
    assert payload["correlation_id"] == "fmt-1"
    assert payload["fields"] == {"entity_type": "deal", "strategy": "RETRY", "retry_count": 2}
