from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from dealboard.api.deps import get_current_user
from dealboard.core.auth import AuthUser, get_current_user as auth_get_current_user
from dealboard.core.config import get_settings
from dealboard.core.database import Base, get_db
from dealboard.deals.models import Board, Pipeline, PipelineStage
from dealboard.deals.service import ActorUser
from dealboard.main import app
from dealboard.middleware.rate_limit import reset_rate_limiter


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def stages(db_session: Session) -> dict[str, uuid.UUID]:
    board = Board(name="Metrics Board")
    db_session.add(board)
    db_session.flush()
    pipeline = Pipeline(board_id=board.id, name="Metrics Pipeline")
    db_session.add(pipeline)
    db_session.flush()
    open_stage = PipelineStage(pipeline_id=pipeline.id, name="Open", position=1)
    won_stage = PipelineStage(pipeline_id=pipeline.id, name="Won", position=2)
    db_session.add_all([open_stage, won_stage])
    db_session.commit()
    return {"open": open_stage.id, "won": won_stage.id}


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_actor(request: Request) -> ActorUser:
        return ActorUser(
            user_id="metrics-user",
            permissions={"deals.read", "deals.write", "integrations.read"},
            correlation_id="metrics-corr-1",
        )

    def override_auth_user() -> AuthUser:
        return AuthUser(sub="metrics-admin", roles=["system.metrics.read"])

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_actor
    app.dependency_overrides[auth_get_current_user] = override_auth_user

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def test_metrics_endpoint_exposes_http_and_deal_metrics(client: TestClient, stages) -> None:
    health = client.get("/health")
    assert health.status_code == 200

    deal = client.post("/api/deals", json={"name": "Metrics Deal", "stage_id": str(stages["open"])})
    assert deal.status_code == 201

    moved = client.post(
        f"/api/deals/{deal.json()['id']}/change-stage",
        json={"destination_stage_id": str(stages["won"])},
    )
    assert moved.status_code == 200

    order = client.post(
        f"/api/stages/{stages['won']}/deal-order",
        json={"orders": [{"id": deal.json()["id"], "order": 2}]},
    )
    assert order.status_code == 200

    counts = client.get("/api/integrations/total-count")
    assert counts.status_code == 200

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "deal_stage_changes_total" in body
    assert 'deal_order_updates_total{outcome="applied"}' in body
    assert "integration_aggregations_total" in body

    assert 'path="/health"' in body
    assert 'path="/api/deals/{id}/change-stage"' in body


def test_metrics_endpoint_requires_permission(client: TestClient) -> None:
    app.dependency_overrides[auth_get_current_user] = lambda: AuthUser(sub="someone", roles=["user"])

    response = client.get("/metrics")

    assert response.status_code == 403
