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
def configure_rate_limiter_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "false")
    monkeypatch.setenv("RATE_LIMIT_DEAL_MUTATIONS_PER_MINUTE", "3")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    reset_rate_limiter()
    get_settings.cache_clear()


@pytest.fixture()
def stage_id(db_session: Session) -> uuid.UUID:
    board = Board(name="Sales")
    db_session.add(board)
    db_session.flush()
    pipeline = Pipeline(board_id=board.id, name="Default")
    db_session.add(pipeline)
    db_session.flush()
    stage = PipelineStage(pipeline_id=pipeline.id, name="Open", position=1)
    db_session.add(stage)
    db_session.commit()
    return stage.id


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="user-1",
            permissions={"deals.read", "deals.write"},
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_mutating_deal_endpoints_are_rate_limited(client: TestClient, stage_id: uuid.UUID) -> None:
    responses = []
    for index in range(5):
        response = client.post(
            "/api/deals",
            json={"name": f"Rate Limit Deal {index}", "stage_id": str(stage_id)},
        )
        responses.append(response)

    limited = [response for response in responses if response.status_code == 429]
    assert limited

    first_limited = limited[0]
    body = first_limited.json()
    assert body["code"] == "RATE_LIMITED"
    assert body["message"] == "Too many requests"
    assert body["correlation_id"] is not None
    assert first_limited.headers.get("Retry-After") is not None


def test_get_endpoints_are_not_rate_limited(client: TestClient, stage_id: uuid.UUID) -> None:
    create = client.post("/api/deals", json={"name": "Readable Deal", "stage_id": str(stage_id)})
    assert create.status_code == 201

    responses = [client.get("/api/deals") for _ in range(10)]
    assert all(response.status_code != 429 for response in responses)


def test_stage_order_updates_have_their_own_bucket(client: TestClient, stage_id: uuid.UUID) -> None:
    for index in range(3):
        response = client.post("/api/deals", json={"name": f"Deal {index}", "stage_id": str(stage_id)})
        assert response.status_code == 201

    response = client.post(f"/api/stages/{stage_id}/deal-order", json={"orders": []})
    assert response.status_code == 200
