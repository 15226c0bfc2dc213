import random
import threading

import pytest
from sqlmodel import Session, SQLModel, create_engine, select

from conftest import days_from_today, make_organization
from errors import InvariantViolation, LedgerValidationError
from ledger import (
    ListingGroupLedger,
    ReservationMeta,
    _group_locks,
    expire_open_listings,
    group_transaction,
)
from models import (
    ACTIVE_REQUEST_STATUSES,
    Listing,
    ListingGroup,
    ListingStatus,
    OrganizationType,
    PickupRequest,
    RequestStatus,
    SplitReason,
)


@pytest.fixture
def ledger(session):
    return ListingGroupLedger(session)


@pytest.fixture
def batch(session, ledger, grocery):
    group, listing = ledger.create_group(
        grocery.id,
        product_name="Sourdough",
        category="bakery",
        unit="loaves",
        quantity=10,
        expiry_date=days_from_today(3),
    )
    session.commit()
    return group, listing


def meta(ngo, days=0):
    return ReservationMeta(ngo_id=ngo.id, pickup_date=days_from_today(days), pickup_time="10:00")


def totals(group):
    return group.total_available, group.total_reserved, group.total_completed


def ready(request):
    request.status = RequestStatus.READY
    return request


def test_create_group_opens_single_listing(ledger, batch):
    group, listing = batch

    assert totals(group) == (10, 0, 0)
    assert group.original_quantity == 10
    assert group.original_listing_id == listing.id
    assert group.category == "BAKERY"
    assert listing.status == ListingStatus.OPEN
    assert listing.split_reason == SplitReason.NEW_LISTING
    assert [shard.id for shard in ledger.shards(group.id)] == [listing.id]


def test_create_group_rejects_non_positive_quantity(ledger, grocery):
    with pytest.raises(LedgerValidationError):
        ledger.create_group(grocery.id, product_name="Milk", category="dairy", unit="l", quantity=0)


def test_full_reservation_flips_listing(ledger, batch, ngo):
    group, listing = batch

    reserved, request = ledger.reserve(listing, group, 10, meta(ngo))

    assert reserved is listing
    assert listing.status == ListingStatus.RESERVED
    assert listing.related_request_id == request.id
    assert request.listing_id == listing.id
    assert request.status == RequestStatus.PENDING
    assert len(ledger.shards(group.id)) == 1
    assert totals(group) == (0, 10, 0)


def test_partial_reservation_splits_listing(ledger, batch, ngo):
    group, listing = batch

    reserved, request = ledger.reserve(listing, group, 4, meta(ngo))

    assert reserved.id != listing.id
    assert reserved.quantity == 4
    assert reserved.status == ListingStatus.RESERVED
    assert reserved.split_reason == SplitReason.PARTIAL_REQUEST
    assert reserved.split_from_listing_id == listing.id
    assert reserved.related_request_id == request.id
    assert reserved.expiry_date == listing.expiry_date
    assert reserved.unit == "loaves"
    assert listing.quantity == 6
    assert listing.status == ListingStatus.OPEN
    assert request.listing_id == reserved.id
    assert request.requested_quantity == 4
    assert request.listing_title == "Sourdough"
    assert request.listing_category == "BAKERY"
    assert totals(group) == (6, 4, 0)


def test_rejected_reservation_changes_nothing(session, ledger, batch, ngo):
    group, listing = batch

    with pytest.raises(LedgerValidationError, match="exceeds available quantity"):
        ledger.reserve(listing, group, 11, meta(ngo))

    assert totals(group) == (10, 0, 0)
    assert listing.quantity == 10
    assert listing.status == ListingStatus.OPEN
    assert len(ledger.shards(group.id)) == 1
    assert session.exec(select(PickupRequest)).all() == []


@pytest.mark.parametrize("quantity", [0, -3])
def test_reservation_needs_positive_quantity(ledger, batch, ngo, quantity):
    group, listing = batch
    with pytest.raises(LedgerValidationError):
        ledger.reserve(listing, group, quantity, meta(ngo))


def test_reservation_needs_open_listing(ledger, batch, ngo):
    group, listing = batch
    ledger.reserve(listing, group, 10, meta(ngo))

    with pytest.raises(LedgerValidationError, match="not available"):
        ledger.reserve(listing, group, 1, meta(ngo))


def test_pickup_date_must_be_within_today_and_expiry(ledger, batch, ngo):
    group, listing = batch

    with pytest.raises(LedgerValidationError, match="in the past"):
        ledger.reserve(listing, group, 1, meta(ngo, days=-1))
    with pytest.raises(LedgerValidationError, match="after expiry date"):
        ledger.reserve(listing, group, 1, meta(ngo, days=4))

    ledger.reserve(listing, group, 1, meta(ngo, days=3))
    assert totals(group) == (9, 1, 0)


def test_reservation_needs_group(session, ledger, grocery, ngo):
    legacy = Listing(grocery_id=grocery.id, product_name="Apples", category="PRODUCE", quantity=5, unit="kg")
    session.add(legacy)
    session.flush()

    with pytest.raises(LedgerValidationError, match="no associated group"):
        ledger.reserve(legacy, None, 2, meta(ngo))


def test_cancel_merges_into_open_sibling(session, ledger, batch, ngo):
    group, listing = batch
    reserved, request = ledger.reserve(listing, group, 4, meta(ngo))
    reserved_id = reserved.id

    result = ledger.release_request(request, reserved, group, RequestStatus.CANCELLED)

    assert result.merged
    assert result.listing is listing
    assert result.removed_listing_id == reserved_id
    assert listing.quantity == 10
    assert listing.split_reason == SplitReason.MERGE
    assert session.get(Listing, reserved_id) is None
    assert request.status == RequestStatus.CANCELLED
    assert request.cancelled_at is not None
    assert request.listing_id is None
    assert totals(group) == (10, 0, 0)


def test_cancel_restores_listing_without_open_sibling(ledger, batch, ngo):
    group, listing = batch
    partial, partial_request = ledger.reserve(listing, group, 4, meta(ngo))
    ledger.reserve(listing, group, 6, meta(ngo))

    result = ledger.release_request(partial_request, partial, group, RequestStatus.REJECTED)

    assert not result.merged
    assert result.listing is partial
    assert partial.status == ListingStatus.OPEN
    assert partial.quantity == 4
    assert partial.related_request_id is None
    assert partial.split_reason == SplitReason.CANCEL_RESTORE
    assert partial_request.status == RequestStatus.REJECTED
    assert partial_request.rejected_at is not None
    assert len(ledger.shards(group.id)) == 2
    assert totals(group) == (4, 6, 0)


def test_merge_picks_lowest_id_open_sibling(session, ledger, batch, grocery, ngo):
    group, listing = batch
    reserved, request = ledger.reserve(listing, group, 4, meta(ngo))
    # a second open listing, as left behind by older data
    extra = Listing(
        group_id=group.id,
        grocery_id=grocery.id,
        product_name="Sourdough",
        category="BAKERY",
        quantity=0,
        unit="loaves",
    )
    session.add(extra)
    session.flush()

    result = ledger.release_request(request, reserved, group, RequestStatus.CANCELLED)

    assert result.listing is listing
    assert listing.quantity == 10
    assert extra.quantity == 0


def test_merge_needs_reserved_listing(ledger, batch):
    group, listing = batch
    with pytest.raises(LedgerValidationError):
        ledger.merge_on_cancel(listing, group)


def test_complete_pickup_moves_quantity_to_completed(session, ledger, batch, ngo):
    group, listing = batch
    reserved, request = ledger.reserve(listing, group, 4, meta(ngo))
    reserved_id = reserved.id

    result = ledger.complete_pickup(reserved, group, ready(request))

    assert not result.group_deleted
    assert result.removed_listing_id == reserved_id
    assert session.get(Listing, reserved_id) is None
    assert request.status == RequestStatus.COMPLETED
    assert request.listing_id is None
    assert request.completed_at is not None
    assert totals(group) == (6, 0, 4)
    assert not group.is_fully_consumed

    item = result.inventory_item
    assert item.ngo_id == ngo.id
    assert item.pickup_request_id == request.id
    assert item.quantity == 4
    assert item.product_name == "Sourdough"
    assert item.expiry_date == days_from_today(3)


def test_complete_last_listing_deletes_consumed_group(session, ledger, batch, ngo):
    group, listing = batch
    group_id = group.id
    reserved, request = ledger.reserve(listing, group, 10, meta(ngo))

    result = ledger.complete_pickup(reserved, group, ready(request))

    assert result.group_deleted
    assert session.get(ListingGroup, group_id) is None


def test_complete_pickup_needs_ready_request(ledger, batch, ngo):
    group, listing = batch
    reserved, request = ledger.reserve(listing, group, 4, meta(ngo))

    with pytest.raises(LedgerValidationError, match="ready"):
        ledger.complete_pickup(reserved, group, request)
    assert totals(group) == (6, 4, 0)


def test_inventory_expiry_falls_back_to_shelf_days(ledger, grocery, ngo):
    group, listing = ledger.create_group(
        grocery.id, product_name="Rice", category="pantry", unit="kg", quantity=3
    )
    reserved, request = ledger.reserve(listing, group, 3, meta(ngo))

    result = ledger.complete_pickup(reserved, group, ready(request), shelf_days=5)

    assert result.inventory_item.expiry_date == days_from_today(5)


def test_release_on_delete_shrinks_batch(ledger, batch, ngo):
    group, listing = batch
    ledger.reserve(listing, group, 4, meta(ngo))

    result = ledger.release_on_delete(listing, group)

    assert not result.group_deleted
    assert totals(group) == (0, 4, 0)
    assert group.original_quantity == 4
    assert len(ledger.shards(group.id)) == 1


def test_release_on_delete_refuses_reserved_listing(ledger, batch, ngo):
    group, listing = batch
    reserved, _ = ledger.reserve(listing, group, 4, meta(ngo))

    with pytest.raises(LedgerValidationError, match="reserved listing"):
        ledger.release_on_delete(reserved, group)
    assert totals(group) == (6, 4, 0)


def test_release_on_delete_of_last_listing_deletes_group(session, ledger, batch):
    group, listing = batch
    group_id = group.id

    result = ledger.release_on_delete(listing, group)

    assert result.group_deleted
    assert session.get(ListingGroup, group_id) is None


def test_adjust_quantity_updates_totals(ledger, batch):
    group, listing = batch

    assert ledger.adjust_quantity(listing, group, 15) == 5
    assert listing.quantity == 15
    assert totals(group) == (15, 0, 0)
    assert group.original_quantity == 15

    assert ledger.adjust_quantity(listing, group, 2) == -13
    assert totals(group) == (2, 0, 0)
    assert group.original_quantity == 2


def test_adjust_quantity_guards(ledger, batch, ngo):
    group, listing = batch

    with pytest.raises(LedgerValidationError):
        ledger.adjust_quantity(listing, group, 0)
    with pytest.raises(LedgerValidationError):
        ledger.adjust_quantity(listing, group, 101, max_quantity=100)

    reserved, _ = ledger.reserve(listing, group, 4, meta(ngo))
    with pytest.raises(LedgerValidationError, match="open listings"):
        ledger.adjust_quantity(reserved, group, 3)


def test_check_conservation_reports_imbalance(ledger, batch):
    group, _ = batch
    group.total_available += 1

    with pytest.raises(InvariantViolation):
        ledger.check_conservation(group)


def test_check_conservation_compares_listings_with_totals(ledger, batch):
    group, listing = batch
    listing.quantity = 7

    with pytest.raises(InvariantViolation):
        ledger.check_conservation(group)


def test_group_transaction_rolls_back_on_error(session, ledger, batch, ngo):
    group, listing = batch

    with pytest.raises(RuntimeError):
        with group_transaction(session, group.id):
            ledger.reserve(listing, group, 4, meta(ngo))
            raise RuntimeError("boom")

    assert totals(group) == (10, 0, 0)
    assert listing.quantity == 10
    assert len(ledger.shards(group.id)) == 1
    assert session.exec(select(PickupRequest)).all() == []


def test_group_transaction_commits(session, ledger, batch, ngo):
    group, listing = batch

    with group_transaction(session, group.id):
        ledger.reserve(listing, group, 4, meta(ngo))

    session.expire_all()
    assert totals(session.get(ListingGroup, group.id)) == (6, 4, 0)


def test_expire_open_listings(session, ledger, grocery, ngo):
    group, listing = ledger.create_group(
        grocery.id,
        product_name="Yogurt",
        category="dairy",
        unit="cups",
        quantity=8,
        expiry_date=days_from_today(-1),
    )
    fresh_group, fresh = ledger.create_group(
        grocery.id, product_name="Cheese", category="dairy", unit="blocks", quantity=2
    )
    session.commit()

    expired = expire_open_listings(session)

    assert [item.id for item in expired] == [listing.id]
    session.refresh(listing)
    session.refresh(fresh)
    assert listing.status == ListingStatus.EXPIRED
    assert fresh.status == ListingStatus.OPEN
    # expiry leaves the totals alone
    assert totals(session.get(ListingGroup, group.id)) == (8, 0, 0)
    ledger.check_conservation(session.get(ListingGroup, group.id))

    with pytest.raises(LedgerValidationError):
        ledger.reserve(listing, session.get(ListingGroup, group.id), 1, meta(ngo))


def test_walkthrough_of_a_ten_unit_batch(session, ledger, batch, ngo):
    group, s0 = batch
    group_id = group.id

    s1, r1 = ledger.reserve(s0, group, 4, meta(ngo))
    assert (s0.quantity, s0.status) == (6, ListingStatus.OPEN)
    assert totals(group) == (6, 4, 0)

    same, r0 = ledger.reserve(s0, group, 6, meta(ngo))
    assert same is s0
    assert (s0.quantity, s0.status) == (6, ListingStatus.RESERVED)
    assert totals(group) == (0, 10, 0)

    ledger.release_request(r1, s1, group, RequestStatus.CANCELLED)
    assert (s1.quantity, s1.status) == (4, ListingStatus.OPEN)
    assert totals(group) == (4, 6, 0)

    result = ledger.complete_pickup(s0, group, ready(r0))
    assert not result.group_deleted
    assert totals(group) == (4, 0, 6)
    assert [shard.id for shard in ledger.shards(group_id)] == [s1.id]

    s1_again, r2 = ledger.reserve(s1, group, 4, meta(ngo))
    assert s1_again is s1
    result = ledger.complete_pickup(s1, group, ready(r2))
    assert totals(group) == (0, 0, 10)
    assert group.is_fully_consumed
    assert result.group_deleted
    assert session.get(ListingGroup, group_id) is None


def test_random_operations_conserve_quantity(session, ledger, grocery, ngo):
    rng = random.Random(20240611)
    group, _ = ledger.create_group(
        grocery.id, product_name="Oranges", category="produce", unit="kg", quantity=50
    )
    live = []

    for _ in range(300):
        shards = ledger.shards(group.id)
        open_shards = [shard for shard in shards if shard.status == ListingStatus.OPEN]
        live = [request for request in live if request.status in ACTIVE_REQUEST_STATUSES]
        op = rng.choice(["reserve", "reserve", "cancel", "complete", "adjust", "delete"])

        if op == "reserve" and open_shards:
            source = rng.choice(open_shards)
            _, request = ledger.reserve(source, group, rng.randint(1, source.quantity), meta(ngo))
            live.append(request)
        elif op == "cancel" and live:
            request = rng.choice(live)
            shard = session.get(Listing, request.listing_id)
            ledger.release_request(request, shard, group, RequestStatus.CANCELLED)
        elif op == "complete" and live:
            request = rng.choice(live)
            shard = session.get(Listing, request.listing_id)
            if ledger.complete_pickup(shard, group, ready(request)).group_deleted:
                break
        elif op == "adjust" and open_shards:
            ledger.adjust_quantity(rng.choice(open_shards), group, rng.randint(1, 30))
        elif op == "delete" and open_shards:
            if ledger.release_on_delete(rng.choice(open_shards), group).group_deleted:
                break

        assert sum(totals(group)) == group.original_quantity
        assert min(totals(group)) >= 0
        ledger.check_conservation(group)


def test_concurrent_reservations_never_oversell(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'ledger.db'}", connect_args={"check_same_thread": False}
    )
    SQLModel.metadata.create_all(engine)
    with Session(engine) as session:
        store = make_organization(session, OrganizationType.GROCERY, "Busy Grocer")
        food_bank = make_organization(session, OrganizationType.NGO, "Busy Food Bank")
        group, listing = ListingGroupLedger(session).create_group(
            store.id,
            product_name="Apples",
            category="produce",
            unit="kg",
            quantity=10,
            expiry_date=days_from_today(3),
        )
        session.commit()
        group_id, listing_id, ngo_id = group.id, listing.id, food_bank.id

    start = threading.Barrier(8)
    reserved, refused, failures = [], [], []

    def claim():
        with Session(engine) as session:
            ledger = ListingGroupLedger(session)
            start.wait()
            try:
                with group_transaction(session, group_id):
                    group = ledger.lock_group(group_id)
                    source = ledger.get_listing(listing_id)
                    _, request = ledger.reserve(
                        source,
                        group,
                        3,
                        ReservationMeta(ngo_id=ngo_id, pickup_date=days_from_today(1)),
                    )
                    request_id = request.id
                reserved.append(request_id)
            except LedgerValidationError:
                refused.append(True)
            except Exception as exc:
                failures.append(exc)

    workers = [threading.Thread(target=claim) for _ in range(8)]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join()

    assert failures == []
    assert len(reserved) == 3
    assert len(refused) == 5

    with Session(engine) as session:
        ledger = ListingGroupLedger(session)
        group = session.get(ListingGroup, group_id)
        assert totals(group) == (1, 9, 0)
        ledger.check_conservation(group)
        assert sorted(shard.quantity for shard in ledger.shards(group_id)) == [1, 3, 3, 3]
        assert len(session.exec(select(PickupRequest)).all()) == 3
    engine.dispose()


def test_deleted_group_drops_its_lock(session, ledger, batch):
    group, listing = batch
    group_id, listing_id = group.id, listing.id

    with pytest.raises(RuntimeError):
        with group_transaction(session, group_id):
            ledger.release_on_delete(ledger.get_listing(listing_id), ledger.lock_group(group_id))
            raise RuntimeError("boom")
    assert group_id in _group_locks
    assert session.get(ListingGroup, group_id) is not None

    with group_transaction(session, group_id):
        result = ledger.release_on_delete(
            ledger.get_listing(listing_id), ledger.lock_group(group_id)
        )

    assert result.group_deleted
    assert group_id not in _group_locks
    assert session.get(ListingGroup, group_id) is None
