from __future__ import annotations

from collections.abc import Generator
from pathlib import Path

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app import events
from app.core.config import get_settings
from app.core.database import Base
from app.crm.api import ActorUser, get_current_user as crm_get_current_user, get_integrity_services
from app.crm.models import CRMDeal, CRMUser
from app.main import app
from app.platform.integrity.services import IntegrityServices, build_integrity_services


@pytest.fixture()
def services(tmp_path: Path) -> Generator[IntegrityServices, None, None]:
    engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'crm.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
    with factory() as session:
        session.add_all(
            [
                CRMUser(id="u1", organization_id="org1", email="u1@example.com", name="Owner"),
                CRMDeal(id="d1", organization_id="org1", title="Renewal", stage="lead", probability=10, owner_id="u1"),
            ]
        )
        session.commit()
    try:
        yield build_integrity_services(factory, get_settings())
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture(autouse=True)
def clear_stubs() -> Generator[None, None, None]:
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    events.published_events.clear()
    get_settings.cache_clear()


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


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient) -> None:
    response = client.get("/api/crm/deal/missing")
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    body = response.json()
    assert body["correlation_id"] == header_value


def test_correlation_id_respected_when_provided(client: TestClient) -> None:
    response = client.get("/api/crm/deal/missing", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.headers.get("x-request-id") == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"


def test_conflict_envelope_includes_correlation_id(client: TestClient) -> None:
    body = {"expected_version": 1, "patch": {"title": "First"}, "strategy": "FAIL"}
    assert client.patch("/api/crm/deal/d1", json=body).status_code == 200

    response = client.patch("/api/crm/deal/d1", json=body, headers={"X-Correlation-Id": "corr-conflict-1"})

    assert response.status_code == 409
    assert response.json()["correlation_id"] == "corr-conflict-1"


def test_event_envelope_includes_correlation_id(client: TestClient) -> None:
    response = client.patch(
        "/api/crm/deal/d1",
        json={"expected_version": 1, "patch": {"probability": 25}, "strategy": "FAIL"},
        headers={"X-Correlation-Id": "corr-event-1"},
    )
    assert response.status_code == 200

    updated_events = [item for item in events.published_events if item.get("event_type") == "crm.deal.updated"]
    assert updated_events
    assert updated_events[-1].get("correlation_id") == "corr-event-1"
