import logging
from typing import Annotated, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlmodel import select

from db import SessionDep
from errors import LedgerPermissionError
from models import Organization, OrganizationType, VerificationStatus, utcnow
from schemas import OrganizationCreate, OrganizationRead, OrganizationUpdate

router = APIRouter(tags=["organizations"])

logger = logging.getLogger(__name__)


def get_current_organization(
    session: SessionDep,
    x_organization_id: Optional[int] = Header(default=None),
) -> Organization:
    """
    Resolve the caller from the X-Organization-Id header.
    Raises 401 if the header is missing or names no organization.
    """
    if x_organization_id is None:
        raise HTTPException(status_code=401, detail="Organization not identified")

    organization = session.get(Organization, x_organization_id)
    if organization is None:
        raise HTTPException(status_code=401, detail="Unknown organization")
    return organization


CurrentOrgDep = Annotated[Organization, Depends(get_current_organization)]


def require_verified(organization: Organization, org_type: OrganizationType, action: str) -> None:
    if organization.type != org_type:
        raise LedgerPermissionError(f"Only {org_type.value} organizations can {action}")
    if not organization.verified:
        raise LedgerPermissionError("Organization is not verified yet")


def require_admin(current: CurrentOrgDep) -> Organization:
    if current.type != OrganizationType.ADMIN:
        raise HTTPException(status_code=403, detail="Admin access required")
    return current


AdminDep = Annotated[Organization, Depends(require_admin)]


def seed_admin(session, name: str, email: str) -> Organization:
    """Create the configured admin organization unless it already exists."""
    existing = session.exec(
        select(Organization).where(Organization.email == email)
    ).first()
    if existing:
        return existing

    admin = Organization(
        name=name,
        email=email,
        type=OrganizationType.ADMIN,
        verified=True,
        verification_status=VerificationStatus.APPROVED,
    )
    session.add(admin)
    session.commit()
    session.refresh(admin)
    logger.info("Seeded admin organization %s", admin.id)
    return admin


@router.post("/", response_model=OrganizationRead, status_code=201)
def register_organization(org_in: OrganizationCreate, session: SessionDep):
    """
    Add a grocery or NGO to the directory. New organizations start
    unverified and wait for an admin.
    """
    existing = session.exec(
        select(Organization).where(Organization.email == org_in.email)
    ).first()
    if existing:
        raise HTTPException(status_code=400, detail="Email already registered")

    organization = Organization(
        name=org_in.name,
        email=org_in.email,
        type=OrganizationType(org_in.type),
        phone=org_in.phone,
        address=org_in.address,
        location=org_in.location,
    )
    session.add(organization)
    session.commit()
    session.refresh(organization)
    return organization


@router.get("/", response_model=List[OrganizationRead])
def list_organizations(
    session: SessionDep,
    type: Optional[OrganizationType] = None,
    verified: Optional[bool] = None,
):
    query = select(Organization)
    if type is not None:
        query = query.where(Organization.type == type)
    if verified is not None:
        query = query.where(Organization.verified == verified)
    return session.exec(query.order_by(Organization.id)).all()


@router.get("/me", response_model=OrganizationRead)
def read_me(current: CurrentOrgDep):
    return current


@router.put("/me", response_model=OrganizationRead)
def update_me(update: OrganizationUpdate, session: SessionDep, current: CurrentOrgDep):
    """
    Update the caller's contact details. Email, type and verification
    are not editable here.
    """
    for field, value in update.model_dump(exclude_unset=True).items():
        if value is not None:
            setattr(current, field, value)
    current.updated_at = utcnow()
    session.add(current)
    session.commit()
    session.refresh(current)
    return current


@router.get("/{organization_id}", response_model=OrganizationRead)
def get_organization(organization_id: int, session: SessionDep):
    organization = session.get(Organization, organization_id)
    if organization is None:
        raise HTTPException(status_code=404, detail="Organization not found")
    return organization


def _set_verification(
    session: SessionDep,
    organization_id: int,
    verified: bool,
    status: VerificationStatus,
) -> Organization:
    organization = session.get(Organization, organization_id)
    if organization is None:
        raise HTTPException(status_code=404, detail="Organization not found")
    if organization.type == OrganizationType.ADMIN:
        raise HTTPException(status_code=400, detail="Admin organizations cannot be changed")

    organization.verified = verified
    organization.verification_status = status
    organization.updated_at = utcnow()
    session.add(organization)
    session.commit()
    session.refresh(organization)
    logger.info("Organization %s verification set to %s", organization.id, status.value)
    return organization


@router.put("/{organization_id}/verify", response_model=OrganizationRead)
def verify_organization(organization_id: int, session: SessionDep, admin: AdminDep):
    return _set_verification(session, organization_id, True, VerificationStatus.APPROVED)


@router.put("/{organization_id}/unverify", response_model=OrganizationRead)
def unverify_organization(organization_id: int, session: SessionDep, admin: AdminDep):
    return _set_verification(session, organization_id, False, VerificationStatus.PENDING)


@router.put("/{organization_id}/reject", response_model=OrganizationRead)
def reject_organization(organization_id: int, session: SessionDep, admin: AdminDep):
    return _set_verification(session, organization_id, False, VerificationStatus.REJECTED)
