from datetime import date, datetime, time
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from models import (
    InventoryStatus,
    ListingStatus,
    OrganizationType,
    RequestStatus,
    SplitReason,
    VerificationStatus,
)


class OrganizationCreate(BaseModel):
    name: str = Field(min_length=1)
    email: EmailStr
    type: Literal["grocery", "ngo"]
    phone: str = ""
    address: str = ""
    location: str = ""


class OrganizationUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    phone: Optional[str] = None
    address: Optional[str] = None
    location: Optional[str] = None


class OrganizationRead(BaseModel):
    id: int
    name: str
    email: str
    type: OrganizationType
    phone: str
    address: str
    location: str
    verified: bool
    verification_status: VerificationStatus
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ListingCreate(BaseModel):
    title: str = Field(min_length=1)
    description: str = ""
    category: str = Field(min_length=1)
    quantity: int = Field(gt=0)
    unit: str = Field(min_length=1)
    expiry_date: Optional[date] = None
    pickup_time_start: Optional[time] = None
    pickup_time_end: Optional[time] = None
    image_url: Optional[str] = None


class ListingQuantityUpdate(BaseModel):
    new_quantity: int = Field(gt=0)


class ListingRead(BaseModel):
    id: int
    group_id: Optional[int]
    grocery_id: int
    product_name: str
    category: str
    quantity: int
    unit: str
    description: str
    image_url: Optional[str]
    expiry_date: Optional[date]
    pickup_time_start: Optional[time]
    pickup_time_end: Optional[time]
    status: ListingStatus
    split_reason: SplitReason
    related_request_id: Optional[int]
    split_from_listing_id: Optional[int]
    split_index: int
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ListingGroupRead(BaseModel):
    id: int
    original_listing_id: Optional[int]
    grocery_id: int
    product_name: str
    category: str
    unit: str
    original_quantity: int
    total_available: int
    total_reserved: int
    total_completed: int
    is_fully_consumed: bool
    created_at: datetime
    listings: List[ListingRead] = []

    model_config = ConfigDict(from_attributes=True)


class PickupRequestCreate(BaseModel):
    listing_id: int
    requested_quantity: int = Field(gt=0)
    pickup_date: date
    pickup_time: str = ""
    notes: Optional[str] = None


class PickupRequestRead(BaseModel):
    id: int
    ngo_id: int
    grocery_id: int
    listing_id: Optional[int]
    requested_quantity: int
    status: RequestStatus
    pickup_date: date
    pickup_time: str
    notes: Optional[str]
    listing_title: str
    listing_category: str
    requested_at: datetime
    approved_at: Optional[datetime]
    marked_ready_at: Optional[datetime]
    completed_at: Optional[datetime]
    cancelled_at: Optional[datetime]
    rejected_at: Optional[datetime]

    model_config = ConfigDict(from_attributes=True)


class InventoryItemRead(BaseModel):
    id: int
    ngo_id: int
    pickup_request_id: int
    product_name: str
    category: str
    quantity: int
    unit: str
    expiry_date: date
    status: InventoryStatus
    received_at: datetime
    distributed_at: Optional[datetime]

    model_config = ConfigDict(from_attributes=True)


class ExpiredCount(BaseModel):
    message: str
    count: int
