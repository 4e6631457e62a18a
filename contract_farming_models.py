"""
Data models for the Contract Farming marketplace

Python attributes are snake_case; the document store keeps the camelCase
field names used by the web client (farmerId, cropName, availableQuantity ...),
mapped through field aliases.
"""
from typing import List, Optional, Dict
from datetime import date, datetime, timezone
from enum import Enum
from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Principal role, stored as the userType field"""
    PRODUCER = "farmer"
    PURCHASER = "buyer"


class CropCategory(str, Enum):
    """Closed set of crop categories"""
    VEGETABLES = "Vegetables"
    FRUITS = "Fruits"
    GRAINS = "Grains"
    DAIRY = "Dairy"
    POULTRY = "Poultry"


class ContractStatus(str, Enum):
    """Contract lifecycle states"""
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (ContractStatus.COMPLETED, ContractStatus.CANCELLED)


class _Record(BaseModel):
    model_config = ConfigDict(populate_by_name=True, allow_inf_nan=False)


class Principal(_Record):
    """Resolved identity with its profile"""
    id: str = Field(..., description="Identity provider principal id (users document id)")
    full_name: str = Field(..., alias="fullName", description="Display name")
    email: str = Field(..., description="Sign-in email, immutable")
    role: Role = Field(..., alias="userType", description="farmer or buyer, immutable")
    location: Optional[str] = Field(None, description="City, State")
    phone: Optional[str] = Field(None, description="Contact number")
    created_at: datetime = Field(default_factory=utcnow, alias="createdAt")
    updated_at: Optional[datetime] = Field(None, alias="updatedAt")


class ProfileUpdate(_Record):
    """Mutable profile fields; email and role are rejected"""
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    full_name: Optional[str] = Field(None, alias="fullName", min_length=1)
    location: Optional[str] = None
    phone: Optional[str] = None

    @field_validator("full_name")
    @classmethod
    def full_name_not_cleared(cls, value: Optional[str]) -> str:
        # location and phone may be cleared with null, the display name may not
        if value is None:
            raise ValueError("fullName cannot be null")
        return value


class ListingDraft(_Record):
    """Fields a producer supplies when publishing a listing"""
    crop_name: str = Field(..., alias="cropName", min_length=1)
    crop_category: CropCategory = Field(..., alias="cropCategory")
    available_quantity: float = Field(..., alias="availableQuantity", ge=0, description="Quantity available")
    unit: str = Field("kg", description="Unit of measurement (mass)")
    min_price: float = Field(..., alias="minPrice", gt=0, description="Minimum acceptable price per unit")
    description: str = ""
    location: str = ""
    harvest_date: date = Field(..., alias="harvestDate")


class Listing(ListingDraft):
    """Published listing"""
    id: Optional[str] = Field(None, description="Listing ID (document id, set on create)")
    farmer_id: str = Field(..., alias="farmerId")
    farmer_name: str = Field(..., alias="farmerName")
    created_at: datetime = Field(default_factory=utcnow, alias="createdAt")


class Contract(_Record):
    """Bilateral agreement derived from a listing"""
    id: Optional[str] = Field(None, description="Contract ID (document id, set on create)")
    listing_id: str = Field(..., alias="listingId")
    farmer_id: str = Field(..., alias="farmerId")
    farmer_name: str = Field(..., alias="farmerName")
    buyer_id: str = Field(..., alias="buyerId")
    buyer_name: str = Field(..., alias="buyerName")
    crop_name: str = Field(..., alias="cropName")
    quantity: float = Field(..., gt=0, description="Agreed quantity")
    price: float = Field(..., gt=0, description="Agreed price per unit")
    status: ContractStatus = ContractStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow, alias="createdAt")
    delivery_date: datetime = Field(..., alias="deliveryDate")
    updated_at: Optional[datetime] = Field(None, alias="updatedAt")
    reserved_quantity: float = Field(0, alias="reservedQuantity", ge=0,
                                     description="Quantity held against the listing")

    @computed_field(alias="totalValue")
    @property
    def total_value(self) -> float:
        return self.quantity * self.price

    def party_role(self, principal_id: str) -> Optional[Role]:
        """Role the principal plays in this contract, None for outsiders"""
        if principal_id == self.farmer_id:
            return Role.PRODUCER
        if principal_id == self.buyer_id:
            return Role.PURCHASER
        return None


class ContractDashboard(BaseModel):
    """Per-principal contract overview"""
    principal_id: str
    role: Role
    counts: Dict[ContractStatus, int]
    contracts: Dict[ContractStatus, List[Contract]]
