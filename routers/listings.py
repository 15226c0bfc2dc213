from typing import Annotated, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Response
from sqlmodel import select

from config import get_settings
from db import SessionDep
from events import EventSink, EventType, get_event_sink
from ledger import ListingGroupLedger, expire_open_listings, group_transaction
from models import Listing, ListingGroup, ListingStatus, Organization, OrganizationType
from schemas import (
    ExpiredCount,
    ListingCreate,
    ListingGroupRead,
    ListingQuantityUpdate,
    ListingRead,
)
from .organizations import CurrentOrgDep, require_verified

router = APIRouter(tags=["listings"])

EventsDep = Annotated[EventSink, Depends(get_event_sink)]


def listing_payload(listing: Listing) -> dict:
    return ListingRead.model_validate(listing).model_dump(mode="json")


def _require_grocery(current: Organization) -> None:
    if current.type != OrganizationType.GROCERY:
        raise HTTPException(status_code=403, detail="Only grocery stores can manage listings")


def _owned_listing(session: SessionDep, listing_id: int, grocery: Organization) -> Listing:
    listing = session.get(Listing, listing_id)
    if listing is None or listing.grocery_id != grocery.id:
        raise HTTPException(
            status_code=404,
            detail="Listing not found or you don't have permission to change it",
        )
    return listing


@router.get("/", response_model=List[ListingRead])
def list_listings(
    session: SessionDep,
    status: Optional[ListingStatus] = None,
    category: Optional[str] = None,
):
    """
    List listings, newest first, optionally filtered by status and category.
    """
    query = select(Listing)

    if status is not None:
        query = query.where(Listing.status == status)

    if category is not None:
        query = query.where(Listing.category == category.upper())

    return session.exec(query.order_by(Listing.created_at.desc(), Listing.id.desc())).all()


@router.get("/my", response_model=List[ListingRead])
def my_listings(session: SessionDep, current: CurrentOrgDep):
    _require_grocery(current)
    return session.exec(
        select(Listing)
        .where(Listing.grocery_id == current.id)
        .order_by(Listing.created_at.desc(), Listing.id.desc())
    ).all()


@router.get("/groups/{group_id}", response_model=ListingGroupRead)
def get_listing_group(group_id: int, session: SessionDep):
    """
    Get a listing group's running totals together with its listings.
    """
    group = session.get(ListingGroup, group_id)
    if group is None:
        raise HTTPException(status_code=404, detail="Listing group not found")

    listings = ListingGroupLedger(session).shards(group_id)
    data = ListingGroupRead.model_validate(group)
    data.listings = [ListingRead.model_validate(listing) for listing in listings]
    return data


@router.get("/{listing_id}", response_model=ListingRead)
def get_listing(listing_id: int, session: SessionDep):
    listing = session.get(Listing, listing_id)
    if listing is None:
        raise HTTPException(status_code=404, detail="Listing not found")
    return listing


@router.post("/", response_model=ListingRead, status_code=201)
def create_listing(
    listing_in: ListingCreate,
    session: SessionDep,
    current: CurrentOrgDep,
    events: EventsDep,
):
    """
    Post a new surplus batch. It starts as one open listing holding the
    whole quantity.
    """
    require_verified(current, OrganizationType.GROCERY, "create listings")

    settings = get_settings()
    if listing_in.quantity > settings.max_listing_quantity:
        raise HTTPException(
            status_code=400,
            detail=f"Quantity cannot exceed {settings.max_listing_quantity}",
        )

    ledger = ListingGroupLedger(session)
    with group_transaction(session, None):
        group, listing = ledger.create_group(
            current.id,
            product_name=listing_in.title,
            category=listing_in.category,
            unit=listing_in.unit,
            quantity=listing_in.quantity,
            description=listing_in.description,
            image_url=listing_in.image_url,
            expiry_date=listing_in.expiry_date,
            pickup_time_start=listing_in.pickup_time_start,
            pickup_time_end=listing_in.pickup_time_end,
        )

    session.refresh(listing)
    events.emit(EventType.LISTING_CREATED, listing_payload(listing))
    return listing


@router.patch("/{listing_id}/quantity", response_model=ListingRead)
def update_listing_quantity(
    listing_id: int,
    update: ListingQuantityUpdate,
    session: SessionDep,
    current: CurrentOrgDep,
    events: EventsDep,
):
    _require_grocery(current)
    listing = _owned_listing(session, listing_id, current)

    ledger = ListingGroupLedger(session)
    with group_transaction(session, listing.group_id):
        group = ledger.lock_group(listing.group_id)
        listing = ledger.get_listing(listing_id)
        old_quantity = listing.quantity
        ledger.adjust_quantity(
            listing,
            group,
            update.new_quantity,
            max_quantity=get_settings().max_listing_quantity,
        )

    session.refresh(listing)
    payload = listing_payload(listing)
    payload["old_quantity"] = old_quantity
    events.emit(EventType.LISTING_UPDATED, payload)
    return listing


@router.delete("/{listing_id}", status_code=204)
def delete_listing(
    listing_id: int,
    session: SessionDep,
    current: CurrentOrgDep,
    events: EventsDep,
):
    _require_grocery(current)
    listing = _owned_listing(session, listing_id, current)

    ledger = ListingGroupLedger(session)
    with group_transaction(session, listing.group_id):
        group = ledger.lock_group(listing.group_id)
        listing = ledger.get_listing(listing_id)
        result = ledger.release_on_delete(listing, group)

    events.emit(
        EventType.LISTING_DELETED,
        {"listing_id": result.removed_listing_id, "group_deleted": result.group_deleted},
    )
    return Response(status_code=204)


@router.post("/update-expired", response_model=ExpiredCount)
def update_expired_listings(session: SessionDep, events: EventsDep):
    """
    Sweep open listings past their expiry date into the expired status.
    """
    expired = expire_open_listings(session)
    for listing in expired:
        events.emit(EventType.LISTING_UPDATED, listing_payload(listing))
    return ExpiredCount(message=f"{len(expired)} listings marked as expired", count=len(expired))
