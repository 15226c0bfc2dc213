from typing import List, Optional

from fastapi import APIRouter, HTTPException
from sqlmodel import select

from db import SessionDep
from models import InventoryItem, InventoryStatus, OrganizationType, utc_today, utcnow
from schemas import ExpiredCount, InventoryItemRead
from .organizations import CurrentOrgDep

router = APIRouter(tags=["inventory"])


def inventory_payload(item: InventoryItem) -> dict:
    return InventoryItemRead.model_validate(item).model_dump(mode="json")


def _require_ngo(current) -> None:
    if current.type != OrganizationType.NGO:
        raise HTTPException(status_code=403, detail="Only NGOs have an inventory")


@router.get("/my", response_model=List[InventoryItemRead])
def my_inventory(
    session: SessionDep,
    current: CurrentOrgDep,
    status: Optional[InventoryStatus] = None,
):
    """
    List the caller's received items, most recent first.
    """
    _require_ngo(current)
    query = select(InventoryItem).where(InventoryItem.ngo_id == current.id)
    if status is not None:
        query = query.where(InventoryItem.status == status)
    return session.exec(
        query.order_by(InventoryItem.received_at.desc(), InventoryItem.id.desc())
    ).all()


@router.put("/{item_id}/distribute", response_model=InventoryItemRead)
def distribute_item(item_id: int, session: SessionDep, current: CurrentOrgDep):
    _require_ngo(current)
    item = session.get(InventoryItem, item_id)
    if item is None or item.ngo_id != current.id:
        raise HTTPException(status_code=404, detail="Inventory item not found")
    if item.status != InventoryStatus.ACTIVE:
        raise HTTPException(status_code=400, detail="Can only distribute active items")

    now = utcnow()
    item.status = InventoryStatus.DISTRIBUTED
    item.distributed_at = now
    item.updated_at = now
    session.add(item)
    session.commit()
    session.refresh(item)
    return item


@router.post("/update-expired", response_model=ExpiredCount)
def update_expired_items(session: SessionDep, current: CurrentOrgDep):
    _require_ngo(current)
    expired = session.exec(
        select(InventoryItem).where(
            InventoryItem.ngo_id == current.id,
            InventoryItem.status == InventoryStatus.ACTIVE,
            InventoryItem.expiry_date < utc_today(),
        )
    ).all()

    now = utcnow()
    for item in expired:
        item.status = InventoryStatus.EXPIRED
        item.updated_at = now
        session.add(item)
    session.commit()

    return ExpiredCount(message=f"{len(expired)} items marked as expired", count=len(expired))
