from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from dealboard.core.database import Base
from dealboard.core.errors import NotFoundError, ValidationFailureError
from dealboard.integrations.kinds import expand_kind
from dealboard.integrations.models import Brand, Channel, ChannelIntegration, Integration, Tag
from dealboard.integrations.service import IntegrationService


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


@pytest.fixture()
def service() -> IntegrationService:
    return IntegrationService()


def _integration(session: Session, kind: str, name: str | None = None, **fields) -> Integration:
    integration = Integration(kind=kind, name=name or f"{kind} integration", **fields)
    session.add(integration)
    session.flush()
    return integration


def test_counts_by_kind(db_session: Session, service: IntegrationService) -> None:
    _integration(db_session, "messenger")
    _integration(db_session, "messenger")
    _integration(db_session, "lead")
    db_session.commit()

    counts = service.aggregate_counts(db_session)

    assert counts.total == 3
    assert counts.by_kind == {"messenger": 2, "lead": 1}


def test_counts_by_channel_only_count_members(db_session: Session, service: IntegrationService) -> None:
    first = _integration(db_session, "messenger")
    second = _integration(db_session, "lead")
    _integration(db_session, "lead")
    channel = Channel(name="Support")
    db_session.add(channel)
    db_session.flush()
    db_session.add_all(
        [
            ChannelIntegration(channel_id=channel.id, integration_id=first.id),
            ChannelIntegration(channel_id=channel.id, integration_id=second.id),
        ]
    )
    db_session.commit()

    counts = service.aggregate_counts(db_session)

    assert counts.by_channel == {str(channel.id): 2}


def test_mail_filter_counts_every_mail_kind(db_session: Session, service: IntegrationService) -> None:
    _integration(db_session, "gmail")
    _integration(db_session, "nylas-imap")
    _integration(db_session, "nylas-outlook")
    _integration(db_session, "messenger")
    db_session.commit()

    counts = service.aggregate_counts(db_session, {"kind": "mail"})
    listed = service.list_integrations(db_session, {"kind": "mail"})

    assert counts.total == 3
    assert counts.by_kind == {"gmail": 1, "nylas-imap": 1, "nylas-outlook": 1}
    assert {item.kind for item in listed} == {"gmail", "nylas-imap", "nylas-outlook"}
    assert counts.total == len(listed)


def test_facebook_filter_matches_both_facebook_kinds(db_session: Session, service: IntegrationService) -> None:
    _integration(db_session, "facebook-messenger")
    _integration(db_session, "facebook-post")
    _integration(db_session, "twitter-dm")
    db_session.commit()

    assert service.aggregate_counts(db_session, {"kind": "facebook"}).total == 2
    assert expand_kind("facebook") == frozenset({"facebook-messenger", "facebook-post"})
    assert expand_kind("lead") == frozenset({"lead"})


def test_counts_by_brand_and_tag(db_session: Session, service: IntegrationService) -> None:
    brand_id = uuid.uuid4()
    _integration(db_session, "messenger", brand_id=brand_id, tag_ids=["vip", "eu"])
    _integration(db_session, "lead", brand_id=brand_id, tag_ids=["vip"])
    _integration(db_session, "lead")
    db_session.commit()

    counts = service.aggregate_counts(db_session)
    tagged = service.aggregate_counts(db_session, {"tag": "eu"})

    assert counts.by_brand == {str(brand_id): 2}
    assert counts.by_tag == {"vip": 2, "eu": 1}
    assert tagged.total == 1
    assert tagged.by_kind == {"messenger": 1}


def test_counts_on_empty_store(db_session: Session, service: IntegrationService) -> None:
    counts = service.aggregate_counts(db_session)

    assert counts.total == 0
    assert counts.by_kind == {}
    assert counts.by_brand == {}
    assert counts.by_channel == {}
    assert counts.by_tag == {}


def test_counts_reject_unknown_filter(db_session: Session, service: IntegrationService) -> None:
    with pytest.raises(ValidationFailureError):
        service.aggregate_counts(db_session, {"colour": "red"})


def test_list_integrations_filters_and_pages(db_session: Session, service: IntegrationService) -> None:
    channel = Channel(name="Sales")
    db_session.add(channel)
    db_session.flush()
    first = _integration(db_session, "messenger", name="Website chat")
    second = _integration(db_session, "messenger", name="Docs chat")
    _integration(db_session, "lead", name="Exit popup")
    db_session.add(ChannelIntegration(channel_id=channel.id, integration_id=second.id))
    db_session.commit()

    by_search = service.list_integrations(db_session, {"search_value": "CHAT"})
    by_channel = service.list_integrations(db_session, {"channel_id": channel.id})
    second_page = service.list_integrations(db_session, page=2, per_page=2)

    assert [item.id for item in by_search] == [first.id, second.id]
    assert [item.id for item in by_channel] == [second.id]
    assert [item.name for item in second_page] == ["Exit popup"]


def test_get_integration_includes_channels_brand_and_tags(db_session: Session, service: IntegrationService) -> None:
    brand = Brand(name="Acme")
    tag = Tag(name="vip")
    channel = Channel(name="Support")
    db_session.add_all([brand, tag, channel])
    db_session.flush()
    integration = _integration(db_session, "messenger", brand_id=brand.id, tag_ids=[str(tag.id), "legacy"])
    db_session.add(ChannelIntegration(channel_id=channel.id, integration_id=integration.id))
    db_session.commit()

    detail = service.get_integration(db_session, integration.id)

    assert detail.channel_ids == [channel.id]
    assert detail.brand is not None and detail.brand.name == "Acme"
    assert [item.name for item in detail.tags] == ["vip"]


def test_get_missing_integration_raises_not_found(db_session: Session, service: IntegrationService) -> None:
    with pytest.raises(NotFoundError) as exc_info:
        service.get_integration(db_session, uuid.uuid4())

    assert exc_info.value.message == "Integration not found"


def test_used_types_follow_catalogue_order(db_session: Session, service: IntegrationService) -> None:
    _integration(db_session, "whatsapp")
    _integration(db_session, "messenger")
    _integration(db_session, "messenger")
    _integration(db_session, "custom-webhook")
    db_session.commit()

    used = service.get_used_types(db_session)

    assert [(item.id, item.name) for item in used] == [
        ("messenger", "Web messenger"),
        ("whatsapp", "WhatsApp"),
        ("custom-webhook", "custom-webhook"),
    ]


def test_gmail_kinds_fold_into_mail(db_session: Session, service: IntegrationService) -> None:
    _integration(db_session, "gmail")
    _integration(db_session, "nylas-gmail")
    db_session.commit()

    folded = service.aggregate_counts(db_session, {"kind": "mail"})
    unfiltered = service.aggregate_counts(db_session)

    assert folded.total == 2
    assert unfiltered.by_kind == {"gmail": 1, "nylas-gmail": 1}


def test_counts_by_channel_count_shared_integration_in_each_channel(
    db_session: Session,
    service: IntegrationService,
) -> None:
    shared = _integration(db_session, "messenger")
    support_only = _integration(db_session, "lead")
    sales_only = _integration(db_session, "whatsapp")
    support = Channel(name="Support")
    sales = Channel(name="Sales")
    db_session.add_all([support, sales])
    db_session.flush()
    db_session.add_all(
        [
            ChannelIntegration(channel_id=support.id, integration_id=shared.id),
            ChannelIntegration(channel_id=support.id, integration_id=support_only.id),
            ChannelIntegration(channel_id=sales.id, integration_id=shared.id),
            ChannelIntegration(channel_id=sales.id, integration_id=sales_only.id),
        ]
    )
    db_session.commit()

    counts = service.aggregate_counts(db_session)

    assert counts.total == 3
    assert counts.by_channel == {str(support.id): 2, str(sales.id): 2}
    assert counts.by_kind == {"messenger": 1, "lead": 1, "whatsapp": 1}
