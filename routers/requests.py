from typing import Annotated, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlmodel import select

from config import get_settings
from db import SessionDep
from errors import LedgerNotFoundError, LedgerValidationError
from events import EventSink, EventType, get_event_sink
from ledger import ListingGroupLedger, ReservationMeta, group_transaction
from models import (
    ACTIVE_REQUEST_STATUSES,
    Listing,
    Organization,
    OrganizationType,
    PickupRequest,
    RequestStatus,
    utcnow,
)
from schemas import PickupRequestCreate, PickupRequestRead
from .inventory import inventory_payload
from .listings import listing_payload
from .organizations import AdminDep, CurrentOrgDep, require_verified

router = APIRouter(tags=["requests"])

EventsDep = Annotated[EventSink, Depends(get_event_sink)]


def request_payload(pickup: PickupRequest, previous_status: Optional[RequestStatus] = None) -> dict:
    payload = PickupRequestRead.model_validate(pickup).model_dump(mode="json")
    if previous_status is not None:
        payload["previous_status"] = previous_status.value
    return payload


def _get_request(session: SessionDep, request_id: int) -> PickupRequest:
    pickup = session.get(PickupRequest, request_id)
    if pickup is None:
        raise HTTPException(status_code=404, detail="Pickup request not found")
    return pickup


def _grocery_request(session: SessionDep, request_id: int, current: Organization) -> PickupRequest:
    if current.type != OrganizationType.GROCERY:
        raise HTTPException(status_code=403, detail="Only grocery stores can manage pickup requests")
    pickup = _get_request(session, request_id)
    if pickup.grocery_id != current.id:
        raise HTTPException(status_code=404, detail="Pickup request not found")
    return pickup


def _ngo_request(session: SessionDep, request_id: int, current: Organization) -> PickupRequest:
    if current.type != OrganizationType.NGO:
        raise HTTPException(status_code=403, detail="Only NGOs can cancel pickup requests")
    pickup = _get_request(session, request_id)
    if pickup.ngo_id != current.id:
        raise HTTPException(status_code=404, detail="Pickup request not found")
    return pickup


def _group_id_for(session: SessionDep, pickup: PickupRequest) -> Optional[int]:
    if pickup.listing_id is None:
        return None
    listing = session.get(Listing, pickup.listing_id)
    return listing.group_id if listing else None


def _advance(
    session: SessionDep,
    pickup: PickupRequest,
    expected: RequestStatus,
    new_status: RequestStatus,
    error: str,
) -> RequestStatus:
    """Status-only step of the request lifecycle; quantities don't move."""
    with group_transaction(session, _group_id_for(session, pickup)):
        session.refresh(pickup)
        if pickup.status != expected:
            raise LedgerValidationError(f"{error}. Current status: {pickup.status.value}")
        now = utcnow()
        pickup.status = new_status
        if new_status == RequestStatus.APPROVED:
            pickup.approved_at = now
        elif new_status == RequestStatus.READY:
            pickup.marked_ready_at = now
        pickup.updated_at = now
        session.add(pickup)
    session.refresh(pickup)
    return expected


def _release(
    session: SessionDep,
    pickup: PickupRequest,
    allowed: tuple,
    new_status: RequestStatus,
    events: EventSink,
) -> PickupRequest:
    """Cancel or reject, handing the reserved quantity back to the group."""
    ledger = ListingGroupLedger(session)
    group_id = _group_id_for(session, pickup)
    with group_transaction(session, group_id):
        group = ledger.lock_group(group_id)
        session.refresh(pickup)
        if pickup.status not in allowed:
            verb = "cancel" if new_status == RequestStatus.CANCELLED else "reject"
            raise LedgerValidationError(
                f"Cannot {verb} request with status: {pickup.status.value}"
            )
        previous = pickup.status
        shard = ledger.get_listing(pickup.listing_id) if pickup.listing_id is not None else None
        merge = ledger.release_request(pickup, shard, group, new_status)

    session.refresh(pickup)
    events.emit(EventType.REQUEST_STATUS_CHANGED, request_payload(pickup, previous))
    if merge is not None:
        session.refresh(merge.listing)
        events.emit(EventType.LISTING_UPDATED, listing_payload(merge.listing))
        if merge.merged:
            events.emit(EventType.LISTING_DELETED, {"listing_id": merge.removed_listing_id})
    return pickup


@router.post("/", response_model=PickupRequestRead, status_code=201)
def create_request(
    request_data: PickupRequestCreate,
    session: SessionDep,
    current: CurrentOrgDep,
    events: EventsDep,
):
    """
    Request a pickup of part or all of an open listing. The claimed
    quantity is reserved right away, splitting the listing if needed.
    """
    require_verified(current, OrganizationType.NGO, "create pickup requests")

    listing = session.get(Listing, request_data.listing_id)
    if listing is None:
        raise HTTPException(status_code=404, detail="Listing not found")

    ledger = ListingGroupLedger(session)
    with group_transaction(session, listing.group_id):
        group = ledger.lock_group(listing.group_id)
        source = ledger.get_listing(request_data.listing_id)
        reserved, pickup = ledger.reserve(
            source,
            group,
            request_data.requested_quantity,
            ReservationMeta(
                ngo_id=current.id,
                pickup_date=request_data.pickup_date,
                pickup_time=request_data.pickup_time,
                notes=request_data.notes,
            ),
        )
        split = reserved is not source

    session.refresh(pickup)
    events.emit(EventType.REQUEST_CREATED, request_payload(pickup))
    if split:
        events.emit(
            EventType.LISTING_SPLIT,
            {"source": listing_payload(source), "reserved": listing_payload(reserved)},
        )
    else:
        events.emit(EventType.LISTING_UPDATED, listing_payload(reserved))
    return pickup


@router.get("/", response_model=List[PickupRequestRead])
def list_requests(
    session: SessionDep,
    admin: AdminDep,
    status: Optional[RequestStatus] = None,
):
    """All pickup requests, newest first. Admin only."""
    query = select(PickupRequest)
    if status is not None:
        query = query.where(PickupRequest.status == status)
    return session.exec(
        query.order_by(PickupRequest.requested_at.desc(), PickupRequest.id.desc())
    ).all()


@router.get("/ngo/my", response_model=List[PickupRequestRead])
def my_ngo_requests(
    session: SessionDep,
    current: CurrentOrgDep,
    status: Optional[RequestStatus] = None,
):
    if current.type != OrganizationType.NGO:
        raise HTTPException(status_code=403, detail="Only NGOs can view their pickup requests")
    query = select(PickupRequest).where(PickupRequest.ngo_id == current.id)
    if status is not None:
        query = query.where(PickupRequest.status == status)
    return session.exec(
        query.order_by(PickupRequest.requested_at.desc(), PickupRequest.id.desc())
    ).all()


@router.get("/grocery/my", response_model=List[PickupRequestRead])
def my_grocery_requests(
    session: SessionDep,
    current: CurrentOrgDep,
    status: Optional[RequestStatus] = None,
):
    if current.type != OrganizationType.GROCERY:
        raise HTTPException(status_code=403, detail="Only grocery stores can view incoming requests")
    query = select(PickupRequest).where(PickupRequest.grocery_id == current.id)
    if status is not None:
        query = query.where(PickupRequest.status == status)
    return session.exec(
        query.order_by(PickupRequest.requested_at.desc(), PickupRequest.id.desc())
    ).all()


@router.get("/{request_id}", response_model=PickupRequestRead)
def get_request(request_id: int, session: SessionDep, current: CurrentOrgDep):
    pickup = _get_request(session, request_id)
    if current.type != OrganizationType.ADMIN and current.id not in (
        pickup.ngo_id,
        pickup.grocery_id,
    ):
        raise HTTPException(status_code=404, detail="Pickup request not found")
    return pickup


@router.put("/{request_id}/approve", response_model=PickupRequestRead)
def approve_request(
    request_id: int,
    session: SessionDep,
    current: CurrentOrgDep,
    events: EventsDep,
):
    pickup = _grocery_request(session, request_id, current)
    previous = _advance(
        session,
        pickup,
        RequestStatus.PENDING,
        RequestStatus.APPROVED,
        "Only pending requests can be approved",
    )
    events.emit(EventType.REQUEST_STATUS_CHANGED, request_payload(pickup, previous))
    return pickup


@router.put("/{request_id}/ready", response_model=PickupRequestRead)
def mark_ready(
    request_id: int,
    session: SessionDep,
    current: CurrentOrgDep,
    events: EventsDep,
):
    pickup = _grocery_request(session, request_id, current)
    previous = _advance(
        session,
        pickup,
        RequestStatus.APPROVED,
        RequestStatus.READY,
        "Can only mark approved requests as ready",
    )
    events.emit(EventType.REQUEST_STATUS_CHANGED, request_payload(pickup, previous))
    return pickup


@router.put("/{request_id}/complete", response_model=PickupRequestRead)
def complete_request(
    request_id: int,
    session: SessionDep,
    current: CurrentOrgDep,
    events: EventsDep,
):
    """
    Confirm the handover of a ready request. Either party may confirm.
    """
    pickup = _get_request(session, request_id)
    if current.id not in (pickup.ngo_id, pickup.grocery_id):
        raise HTTPException(status_code=404, detail="Pickup request not found")

    ledger = ListingGroupLedger(session)
    group_id = _group_id_for(session, pickup)
    with group_transaction(session, group_id):
        group = ledger.lock_group(group_id)
        session.refresh(pickup)
        if pickup.status != RequestStatus.READY:
            raise LedgerValidationError(
                f"Can only complete requests that are ready. Current status: {pickup.status.value}"
            )
        if pickup.listing_id is None:
            raise LedgerNotFoundError("Reserved listing not found")
        shard = ledger.get_listing(pickup.listing_id)
        result = ledger.complete_pickup(
            shard,
            group,
            pickup,
            shelf_days=get_settings().inventory_shelf_days,
        )

    session.refresh(pickup)
    session.refresh(result.inventory_item)
    events.emit(
        EventType.REQUEST_STATUS_CHANGED,
        request_payload(pickup, RequestStatus.READY),
    )
    events.emit(
        EventType.LISTING_DELETED,
        {"listing_id": result.removed_listing_id, "group_deleted": result.group_deleted},
    )
    events.emit(EventType.INVENTORY_ITEM_ADDED, inventory_payload(result.inventory_item))
    return pickup


@router.put("/{request_id}/reject", response_model=PickupRequestRead)
def reject_request(
    request_id: int,
    session: SessionDep,
    current: CurrentOrgDep,
    events: EventsDep,
):
    pickup = _grocery_request(session, request_id, current)
    return _release(session, pickup, (RequestStatus.PENDING,), RequestStatus.REJECTED, events)


@router.put("/{request_id}/cancel", response_model=PickupRequestRead)
def cancel_request(
    request_id: int,
    session: SessionDep,
    current: CurrentOrgDep,
    events: EventsDep,
):
    pickup = _ngo_request(session, request_id, current)
    return _release(session, pickup, ACTIVE_REQUEST_STATUSES, RequestStatus.CANCELLED, events)
