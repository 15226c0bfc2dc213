"""
Quantity bookkeeping for listing groups.

A ListingGroup is one donation batch. Its quantity is spread over shards
(Listing rows): open shards hold what NGOs can still request, reserved
shards hold what a live pickup request has claimed. Every operation here
moves quantity between the group's running totals so that

    total_available + total_reserved + total_completed == original_quantity

holds after each one, and the shard quantities agree with those totals.

Mutations are expected to run inside ``group_transaction`` so that two
requests against the same group never interleave.
"""

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, time, timedelta
from typing import Dict, Iterator, List, Optional, Tuple

from sqlalchemy import func
from sqlmodel import Session, select

from errors import InvariantViolation, LedgerNotFoundError, LedgerValidationError
from models import (
    InventoryItem,
    Listing,
    ListingGroup,
    ListingStatus,
    PickupRequest,
    RequestStatus,
    SplitReason,
    utc_today,
    utcnow,
)

logger = logging.getLogger(__name__)

_group_locks: Dict[Optional[int], threading.Lock] = {}
# session.info key for groups deleted by the running transaction
_DELETED_GROUPS = "ledger_deleted_groups"
_registry_lock = threading.Lock()


def _lock_for(group_id: Optional[int]) -> threading.Lock:
    with _registry_lock:
        lock = _group_locks.get(group_id)
        if lock is None:
            lock = _group_locks[group_id] = threading.Lock()
        return lock


def _forget_group(group_id: Optional[int]) -> None:
    with _registry_lock:
        _group_locks.pop(group_id, None)


@contextmanager
def group_transaction(session: Session, group_id: Optional[int]) -> Iterator[Session]:
    """
    Run one ledger operation for a group.

    Holds the group's lock for the whole read-modify-write, commits when the
    block finishes and rolls back on any exception. Locks of groups the
    transaction deleted are dropped once the delete is committed.
    """
    with _lock_for(group_id):
        try:
            yield session
            session.commit()
        except Exception:
            session.info.pop(_DELETED_GROUPS, None)
            session.rollback()
            raise
        for deleted_id in session.info.pop(_DELETED_GROUPS, ()):
            _forget_group(deleted_id)


@dataclass
class ReservationMeta:
    ngo_id: int
    pickup_date: date
    pickup_time: str = ""
    notes: Optional[str] = None


@dataclass
class MergeResult:
    # the open shard now holding the released quantity
    listing: Listing
    merged: bool
    removed_listing_id: Optional[int] = None


@dataclass
class CompletionResult:
    inventory_item: InventoryItem
    removed_listing_id: int
    group_deleted: bool


@dataclass
class ReleaseResult:
    removed_listing_id: int
    group_deleted: bool


class ListingGroupLedger:
    def __init__(self, session: Session):
        self.session = session

    # ----- Reads -----

    def lock_group(self, group_id: Optional[int]) -> Optional[ListingGroup]:
        """Re-read a group row, taking a row lock where the database has one."""
        if group_id is None:
            return None
        statement = (
            select(ListingGroup)
            .where(ListingGroup.id == group_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return self.session.exec(statement).first()

    def get_listing(self, listing_id: int) -> Listing:
        listing = self.session.get(Listing, listing_id, populate_existing=True)
        if listing is None:
            raise LedgerNotFoundError("Listing not found")
        return listing

    def shards(self, group_id: int) -> List[Listing]:
        return list(
            self.session.exec(
                select(Listing).where(Listing.group_id == group_id).order_by(Listing.id)
            ).all()
        )

    def open_siblings(self, shard: Listing) -> List[Listing]:
        """Open shards of the same group, lowest id first."""
        return list(
            self.session.exec(
                select(Listing)
                .where(
                    Listing.group_id == shard.group_id,
                    Listing.id != shard.id,
                    Listing.status == ListingStatus.OPEN,
                )
                .order_by(Listing.id)
            ).all()
        )

    def count_shards(self, group_id: int) -> int:
        return self.session.exec(
            select(func.count()).select_from(Listing).where(Listing.group_id == group_id)
        ).one()

    def _delete_group(self, group: ListingGroup) -> None:
        self.session.delete(group)
        self.session.flush()
        self.session.info.setdefault(_DELETED_GROUPS, set()).add(group.id)

    # ----- Invariants -----

    def check_conservation(self, group: ListingGroup) -> None:
        totals = (group.total_available, group.total_reserved, group.total_completed)
        if min(totals) < 0 or sum(totals) != group.original_quantity:
            logger.error(
                "Group %s out of balance: available=%s reserved=%s completed=%s original=%s",
                group.id,
                *totals,
                group.original_quantity,
            )
            raise InvariantViolation(
                f"Quantity conservation violated for listing group {group.id}"
            )

        available = reserved = 0
        for shard in self.shards(group.id):
            if shard.quantity < 0:
                raise InvariantViolation(f"Listing {shard.id} has negative quantity")
            if shard.status == ListingStatus.RESERVED:
                reserved += shard.quantity
            else:
                available += shard.quantity
        if (available, reserved) != (group.total_available, group.total_reserved):
            logger.error(
                "Group %s shards disagree with totals: shards=(%s, %s) totals=(%s, %s)",
                group.id,
                available,
                reserved,
                group.total_available,
                group.total_reserved,
            )
            raise InvariantViolation(
                f"Listings of group {group.id} do not match its totals"
            )

    # ----- Operations -----

    def create_group(
        self,
        grocery_id: int,
        *,
        product_name: str,
        category: str,
        unit: str,
        quantity: int,
        description: str = "",
        image_url: Optional[str] = None,
        expiry_date: Optional[date] = None,
        pickup_time_start: Optional[time] = None,
        pickup_time_end: Optional[time] = None,
    ) -> Tuple[ListingGroup, Listing]:
        """Open a new batch with a single open shard holding all of it."""
        if quantity <= 0:
            raise LedgerValidationError("Quantity must be greater than zero")

        category = category.upper()
        descriptive = dict(
            product_name=product_name,
            category=category,
            unit=unit,
            description=description,
            image_url=image_url,
            expiry_date=expiry_date,
            pickup_time_start=pickup_time_start,
            pickup_time_end=pickup_time_end,
        )
        group = ListingGroup(
            grocery_id=grocery_id,
            original_quantity=quantity,
            total_available=quantity,
            **descriptive,
        )
        self.session.add(group)
        self.session.flush()

        listing = Listing(
            group_id=group.id,
            grocery_id=grocery_id,
            quantity=quantity,
            status=ListingStatus.OPEN,
            split_reason=SplitReason.NEW_LISTING,
            **descriptive,
        )
        self.session.add(listing)
        self.session.flush()

        group.original_listing_id = listing.id
        self.session.add(group)
        self.check_conservation(group)
        logger.info("Created listing group %s with %s %s", group.id, quantity, unit)
        return group, listing

    def reserve(
        self,
        source: Listing,
        group: Optional[ListingGroup],
        requested_quantity: int,
        meta: ReservationMeta,
        today: Optional[date] = None,
    ) -> Tuple[Listing, PickupRequest]:
        """
        Claim part or all of an open shard for a new pending request.

        Asking for the whole shard flips it to reserved. Asking for less
        splits a new reserved shard off it and leaves the rest open.
        Nothing is written unless every check passes.
        """
        today = today or utc_today()

        if source.status != ListingStatus.OPEN:
            raise LedgerValidationError("Listing is not available")
        if requested_quantity <= 0:
            raise LedgerValidationError("Requested quantity must be greater than zero")
        if requested_quantity > source.quantity:
            raise LedgerValidationError(
                f"Requested quantity exceeds available quantity ({source.quantity})"
            )
        if group is None or source.group_id != group.id:
            raise LedgerValidationError("Listing has no associated group")
        if meta.pickup_date < today:
            raise LedgerValidationError("Pickup date cannot be in the past")
        if source.expiry_date is not None and meta.pickup_date > source.expiry_date:
            raise LedgerValidationError(
                f"Pickup date cannot be after expiry date ({source.expiry_date.isoformat()})"
            )
        if requested_quantity > group.total_available:
            raise InvariantViolation(
                f"Listing {source.id} offers more than group {group.id} has available"
            )

        now = utcnow()
        request = PickupRequest(
            ngo_id=meta.ngo_id,
            grocery_id=source.grocery_id,
            requested_quantity=requested_quantity,
            status=RequestStatus.PENDING,
            pickup_date=meta.pickup_date,
            pickup_time=meta.pickup_time,
            notes=meta.notes,
            listing_title=source.product_name,
            listing_category=source.category,
            requested_at=now,
            updated_at=now,
        )
        self.session.add(request)
        self.session.flush()

        if requested_quantity == source.quantity:
            source.status = ListingStatus.RESERVED
            source.related_request_id = request.id
            source.updated_at = now
            reserved = source
        else:
            reserved = Listing(
                group_id=group.id,
                grocery_id=source.grocery_id,
                product_name=source.product_name,
                category=source.category,
                quantity=requested_quantity,
                unit=source.unit,
                description=source.description,
                image_url=source.image_url,
                expiry_date=source.expiry_date,
                pickup_time_start=source.pickup_time_start,
                pickup_time_end=source.pickup_time_end,
                status=ListingStatus.RESERVED,
                split_reason=SplitReason.PARTIAL_REQUEST,
                related_request_id=request.id,
                split_from_listing_id=source.id,
                split_index=self.count_shards(group.id),
                created_at=now,
                updated_at=now,
            )
            source.quantity -= requested_quantity
            source.updated_at = now
            self.session.add(reserved)
        self.session.add(source)
        self.session.flush()

        request.listing_id = reserved.id
        self.session.add(request)

        group.total_available -= requested_quantity
        group.total_reserved += requested_quantity
        group.updated_at = now
        self.session.add(group)
        self.session.flush()
        self.check_conservation(group)

        if reserved is source:
            logger.info("Reserved all of listing %s for request %s", source.id, request.id)
        else:
            logger.info(
                "Split %s off listing %s into listing %s for request %s",
                requested_quantity,
                source.id,
                reserved.id,
                request.id,
            )
        return reserved, request

    def detach_request(self, request: PickupRequest) -> None:
        """
        First phase of releasing a shard: drop the request's reference to it
        and flush, so the shard can then be deleted without a dangling key.
        """
        request.listing_id = None
        request.updated_at = utcnow()
        self.session.add(request)
        self.session.flush()

    def merge_on_cancel(self, shard: Listing, group: Optional[ListingGroup]) -> MergeResult:
        """
        Hand a reserved shard's quantity back to the available pool.

        The lowest-id open sibling absorbs it and the shard is deleted; with
        no open sibling the shard itself is reopened. The owning request must
        already be detached.
        """
        if shard.status != ListingStatus.RESERVED:
            raise LedgerValidationError("Listing is not reserved")

        now = utcnow()
        quantity = shard.quantity
        siblings = self.open_siblings(shard) if group is not None else []

        if siblings:
            target = siblings[0]
            target.quantity += quantity
            target.split_reason = SplitReason.MERGE
            target.updated_at = now
            self.session.add(target)
            removed_id = shard.id
            self.session.delete(shard)
            result = MergeResult(listing=target, merged=True, removed_listing_id=removed_id)
            logger.info("Merged %s from listing %s into listing %s", quantity, removed_id, target.id)
        else:
            shard.status = ListingStatus.OPEN
            shard.related_request_id = None
            shard.split_reason = SplitReason.CANCEL_RESTORE
            shard.updated_at = now
            self.session.add(shard)
            result = MergeResult(listing=shard, merged=False)
            logger.info("Restored listing %s to open with %s", shard.id, quantity)

        if group is not None:
            group.total_reserved -= quantity
            group.total_available += quantity
            group.updated_at = now
            self.session.add(group)
        self.session.flush()
        if group is not None:
            self.check_conservation(group)
        return result

    def release_request(
        self,
        request: PickupRequest,
        shard: Optional[Listing],
        group: Optional[ListingGroup],
        status: RequestStatus,
    ) -> Optional[MergeResult]:
        """Cancel or reject a live request and give its quantity back."""
        now = utcnow()
        request.status = status
        if status == RequestStatus.CANCELLED:
            request.cancelled_at = now
        else:
            request.rejected_at = now
        self.detach_request(request)
        if shard is None:
            return None
        return self.merge_on_cancel(shard, group)

    def complete_pickup(
        self,
        shard: Listing,
        group: Optional[ListingGroup],
        request: PickupRequest,
        shelf_days: int = 7,
    ) -> CompletionResult:
        """
        Record a handover: the shard's quantity moves from reserved to
        completed, lands in the NGO's inventory and the shard goes away.

        The request is detached and flushed before the shard is deleted.
        The group is deleted once it has no shards left and is fully
        consumed.
        """
        if request.status != RequestStatus.READY:
            raise LedgerValidationError("Can only complete requests that are ready")
        if shard.status != ListingStatus.RESERVED or shard.related_request_id != request.id:
            raise InvariantViolation(
                f"Listing {shard.id} is not reserved for request {request.id}"
            )
        if shard.quantity != request.requested_quantity:
            raise InvariantViolation(
                f"Listing {shard.id} holds {shard.quantity}, "
                f"request {request.id} claims {request.requested_quantity}"
            )

        now = utcnow()
        quantity = shard.quantity

        request.status = RequestStatus.COMPLETED
        request.completed_at = now
        self.detach_request(request)

        inventory_item = InventoryItem(
            ngo_id=request.ngo_id,
            pickup_request_id=request.id,
            product_name=shard.product_name,
            category=shard.category,
            quantity=quantity,
            unit=shard.unit,
            expiry_date=shard.expiry_date or (now.date() + timedelta(days=shelf_days)),
            received_at=now,
            updated_at=now,
        )
        self.session.add(inventory_item)

        removed_id = shard.id
        self.session.delete(shard)
        self.session.flush()

        group_deleted = False
        if group is not None:
            group.total_reserved -= quantity
            group.total_completed += quantity
            if group.total_completed >= group.original_quantity:
                group.is_fully_consumed = True
            group.updated_at = now
            self.session.add(group)
            self.session.flush()
            self.check_conservation(group)

            if group.is_fully_consumed and self.count_shards(group.id) == 0:
                logger.info("Listing group %s fully consumed, deleting", group.id)
                self._delete_group(group)
                group_deleted = True

        logger.info("Completed request %s for %s from listing %s", request.id, quantity, removed_id)
        return CompletionResult(
            inventory_item=inventory_item,
            removed_listing_id=removed_id,
            group_deleted=group_deleted,
        )

    def release_on_delete(self, shard: Listing, group: Optional[ListingGroup]) -> ReleaseResult:
        """
        Delete a shard nobody has claimed. Its quantity leaves the batch, so
        it comes off both the available total and the batch size.
        """
        if shard.status == ListingStatus.RESERVED:
            raise LedgerValidationError(
                "Cannot delete a reserved listing; wait until its pickup request "
                "is completed or cancelled"
            )

        quantity = shard.quantity
        removed_id = shard.id
        self.session.delete(shard)
        self.session.flush()

        if group is None:
            return ReleaseResult(removed_listing_id=removed_id, group_deleted=False)

        group.total_available -= quantity
        group.original_quantity -= quantity
        group.is_fully_consumed = group.total_completed >= group.original_quantity
        group.updated_at = utcnow()
        self.session.add(group)
        self.session.flush()
        self.check_conservation(group)

        if self.count_shards(group.id) == 0:
            logger.info("Listing group %s has no listings left, deleting", group.id)
            self._delete_group(group)
            return ReleaseResult(removed_listing_id=removed_id, group_deleted=True)
        return ReleaseResult(removed_listing_id=removed_id, group_deleted=False)

    def adjust_quantity(
        self,
        shard: Listing,
        group: Optional[ListingGroup],
        new_quantity: int,
        max_quantity: Optional[int] = None,
    ) -> int:
        """Set an open shard's quantity; returns the applied delta."""
        if shard.status != ListingStatus.OPEN:
            raise LedgerValidationError("Only open listings can change quantity")
        if new_quantity <= 0:
            raise LedgerValidationError("Quantity must be greater than zero")
        if max_quantity is not None and new_quantity > max_quantity:
            raise LedgerValidationError(f"Quantity cannot exceed {max_quantity}")

        now = utcnow()
        delta = new_quantity - shard.quantity
        shard.quantity = new_quantity
        shard.updated_at = now
        self.session.add(shard)

        if group is not None:
            group.total_available += delta
            group.original_quantity += delta
            group.is_fully_consumed = group.total_completed >= group.original_quantity
            group.updated_at = now
            self.session.add(group)
            self.session.flush()
            self.check_conservation(group)
        return delta


def expire_open_listings(session: Session, today: Optional[date] = None) -> List[Listing]:
    """
    Mark open listings past their expiry date as expired.

    Group totals are untouched: expired quantity still counts as available,
    it just can't be requested any more.
    """
    today = today or utc_today()
    candidates = session.exec(
        select(Listing.id, Listing.group_id)
        .where(Listing.status == ListingStatus.OPEN, Listing.expiry_date < today)
        .order_by(Listing.id)
    ).all()

    ledger = ListingGroupLedger(session)
    expired: List[Listing] = []
    for listing_id, group_id in candidates:
        with group_transaction(session, group_id):
            ledger.lock_group(group_id)
            listing = session.get(Listing, listing_id, populate_existing=True)
            if listing is None or listing.status != ListingStatus.OPEN:
                continue
            listing.status = ListingStatus.EXPIRED
            listing.updated_at = utcnow()
            session.add(listing)
            expired.append(listing)
    if expired:
        logger.info("Expired %s listings", len(expired))
    return expired
