from datetime import datetime, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import get_settings
from app.core.dependencies import build_engine
from app.models.inspection import Base, Offer, Report, User
from app.schemas.access import ROLE_LEVELS, PermissionContext, Principal, Role
from app.utils.alerting import alert_tracker


@pytest.fixture(autouse=True)
def _reset_settings_cache():
    # Some tests set env vars and clear the settings cache. Ensure we don't leak
    # a cached Settings instance (e.g. with the direct-completion flag on) across tests.
    get_settings.cache_clear()
    alert_tracker.reset()
    yield
    get_settings.cache_clear()
    alert_tracker.reset()


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def make_principal(
    role: Role,
    *,
    id: str = "user-1",
    branch_id: str | None = None,
    company_id: str | None = None,
    display_name: str | None = None,
) -> Principal:
    return Principal(
        id=id,
        role=role,
        permission_level=ROLE_LEVELS[role],
        branch_id=branch_id,
        company_id=company_id,
        display_name=display_name,
    )


def make_ctx(role: Role, **kwargs) -> PermissionContext:
    return PermissionContext(principal=make_principal(role, **kwargs), ip_address="127.0.0.1")


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False)
    yield factory
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def file_session_factory(tmp_path):
    """Two sessions on one file database behave like two app instances."""
    engine = build_engine(f"sqlite:///{tmp_path / 'core.db'}", connect_args={"timeout": 5})
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False)
    yield factory
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


def seed_user(db, principal: Principal, *, email: str | None = None, is_active: bool = True) -> User:
    user = User(
        id=principal.id,
        email=email or f"{principal.id}@example.com",
        display_name=principal.display_name,
        role=principal.role.value,
        permission_level=principal.permission_level,
        branch_id=principal.branch_id,
        company_id=principal.company_id,
        is_active=is_active,
    )
    db.add(user)
    db.commit()
    return user


def seed_report(db, *, branch_id="stockholm", company_id="acme", created_by="inspector-1", is_public=False) -> Report:
    report = Report(
        branch_id=branch_id,
        company_id=company_id,
        created_by=created_by,
        is_public=is_public,
        title="Roof inspection",
    )
    db.add(report)
    db.commit()
    db.refresh(report)
    return report


def seed_offer(
    db,
    *,
    status: str = "awaiting_response",
    sent_at: datetime | None = None,
    valid_until: datetime | None = None,
    branch_id: str = "stockholm",
    company_id: str = "acme",
    created_by: str = "inspector-1",
    report_id: str | None = None,
    follow_up_attempts: int = 0,
    last_follow_up_at: datetime | None = None,
    customer_email: str | None = "customer@example.com",
) -> Offer:
    offer = Offer(
        report_id=report_id,
        branch_id=branch_id,
        company_id=company_id,
        created_by=created_by,
        title="Roof repair",
        customer_name="Anna Svensson",
        customer_email=customer_email,
        status=status,
        sent_at=sent_at,
        valid_until=valid_until or utc(2025, 1, 31, 23, 59),
        follow_up_attempts=follow_up_attempts,
        last_follow_up_at=last_follow_up_at,
        row_version=1,
    )
    db.add(offer)
    db.commit()
    db.refresh(offer)
    return offer
