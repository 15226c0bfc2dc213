from datetime import date, datetime, time, timezone
from enum import Enum
from typing import Optional

from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def utc_today() -> date:
    return utcnow().date()


class OrganizationType(str, Enum):
    GROCERY = "grocery"
    NGO = "ngo"
    ADMIN = "admin"


class VerificationStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ListingStatus(str, Enum):
    OPEN = "open"
    RESERVED = "reserved"
    EXPIRED = "expired"


class SplitReason(str, Enum):
    NEW_LISTING = "new_listing"
    PARTIAL_REQUEST = "partial_request"
    MERGE = "merge"
    CANCEL_RESTORE = "cancel_restore"


class RequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    READY = "ready"
    COMPLETED = "completed"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


ACTIVE_REQUEST_STATUSES = (
    RequestStatus.PENDING,
    RequestStatus.APPROVED,
    RequestStatus.READY,
)


class InventoryStatus(str, Enum):
    ACTIVE = "active"
    DISTRIBUTED = "distributed"
    EXPIRED = "expired"


class Organization(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    email: str = Field(index=True, unique=True)
    type: OrganizationType
    phone: str = ""
    address: str = ""
    location: str = ""
    verified: bool = False
    verification_status: VerificationStatus = VerificationStatus.PENDING

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class ListingGroup(SQLModel, table=True):
    """One donation batch; its shards are the Listing rows pointing at it."""

    id: Optional[int] = Field(default=None, primary_key=True)
    # set once the first shard has an id
    original_listing_id: Optional[int] = None
    grocery_id: int = Field(foreign_key="organization.id", index=True)

    product_name: str
    category: str
    unit: str
    description: str = ""
    image_url: Optional[str] = None
    expiry_date: Optional[date] = None
    pickup_time_start: Optional[time] = None
    pickup_time_end: Optional[time] = None

    # batch size; grocery corrections (quantity edits, deletes) move it
    original_quantity: int
    total_available: int = 0
    total_reserved: int = 0
    total_completed: int = 0
    is_fully_consumed: bool = False

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Listing(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    group_id: Optional[int] = Field(
        default=None, foreign_key="listinggroup.id", index=True
    )
    grocery_id: int = Field(foreign_key="organization.id", index=True)

    product_name: str
    category: str
    quantity: int
    unit: str
    description: str = ""
    image_url: Optional[str] = None
    expiry_date: Optional[date] = None
    pickup_time_start: Optional[time] = None
    pickup_time_end: Optional[time] = None

    status: ListingStatus = Field(default=ListingStatus.OPEN, index=True)
    split_reason: SplitReason = SplitReason.NEW_LISTING
    related_request_id: Optional[int] = None
    split_from_listing_id: Optional[int] = None
    split_index: int = 0

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class PickupRequest(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    ngo_id: int = Field(foreign_key="organization.id", index=True)
    grocery_id: int = Field(foreign_key="organization.id", index=True)
    # cleared before the reserved shard is deleted or handed back
    listing_id: Optional[int] = Field(default=None, foreign_key="listing.id")

    requested_quantity: int
    status: RequestStatus = Field(default=RequestStatus.PENDING, index=True)
    pickup_date: date
    pickup_time: str = ""
    notes: Optional[str] = None

    listing_title: str = ""
    listing_category: str = ""

    requested_at: datetime = Field(default_factory=utcnow)
    approved_at: Optional[datetime] = None
    marked_ready_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utcnow)


class InventoryItem(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    ngo_id: int = Field(foreign_key="organization.id", index=True)
    pickup_request_id: int = Field(foreign_key="pickuprequest.id")

    product_name: str
    category: str
    quantity: int
    unit: str
    expiry_date: date
    status: InventoryStatus = InventoryStatus.ACTIVE

    received_at: datetime = Field(default_factory=utcnow)
    distributed_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utcnow)
