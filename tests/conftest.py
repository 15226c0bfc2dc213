import os

# must be set before db.py builds its engine
os.environ["DATABASE_URL"] = "sqlite://"

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, SQLModel

import db
from events import sink
from main import app
from models import Organization, OrganizationType, VerificationStatus, utc_today


def make_organization(session, org_type, name, verified=True):
    organization = Organization(
        name=name,
        email=f"{name.lower().replace(' ', '.')}@example.org",
        type=org_type,
        verified=verified,
        verification_status=VerificationStatus.APPROVED if verified else VerificationStatus.PENDING,
    )
    session.add(organization)
    session.commit()
    session.refresh(organization)
    return organization


def as_org(organization_id):
    return {"X-Organization-Id": str(organization_id)}


def days_from_today(days):
    return utc_today() + timedelta(days=days)


@pytest.fixture(autouse=True)
def tables():
    SQLModel.metadata.create_all(db.engine)
    yield
    SQLModel.metadata.drop_all(db.engine)


@pytest.fixture
def session():
    with Session(db.engine) as session:
        yield session


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def grocery(session):
    return make_organization(session, OrganizationType.GROCERY, "Corner Grocer")


@pytest.fixture
def other_grocery(session):
    return make_organization(session, OrganizationType.GROCERY, "Other Grocer")


@pytest.fixture
def ngo(session):
    return make_organization(session, OrganizationType.NGO, "Food Bank")


@pytest.fixture
def admin(session):
    return make_organization(session, OrganizationType.ADMIN, "Site Admin")


@pytest.fixture
def captured_events():
    received = []
    sink.subscribe(received.append)
    yield received
    sink.unsubscribe(received.append)
