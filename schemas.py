"""
Database Schemas for the Second-hand Marketplace

Each Pydantic model below maps to a MongoDB collection using the lowercase
class name as the collection name (e.g., CartItem -> "cartitem").

These schemas are used for validation at your API boundaries and to keep
collections consistent.
"""
from enum import Enum
from typing import List, Optional, Dict, Any
from pydantic import BaseModel, Field, EmailStr


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------
class Role(str, Enum):
    buyer = "buyer"
    seller = "seller"
    admin = "admin"


class ProductStatus(str, Enum):
    draft = "draft"
    available = "available"
    pending = "pending"
    sold = "sold"


class OrderStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    shipped = "shipped"
    delivered = "delivered"
    cancelled = "cancelled"


class Condition(str, Enum):
    new = "new"
    like_new = "like_new"
    good = "good"
    fair = "fair"
    poor = "poor"


# values offered by the old edit form
LEGACY_CONDITIONS = {
    "brand_new": Condition.new,
    "excellent": Condition.like_new,
    "vintage": Condition.good,
}


def normalize_condition(value: Optional[str]) -> Condition:
    if not value:
        return Condition.good
    if value in LEGACY_CONDITIONS:
        return LEGACY_CONDITIONS[value]
    return Condition(value)


class PaymentMethod(str, Enum):
    cash_on_delivery = "cash_on_delivery"
    gcash = "gcash"
    card = "card"
    bank_transfer = "bank_transfer"


# ---------------------------------------------------------------------------
# Core Users and Roles
# ---------------------------------------------------------------------------
class User(BaseModel):
    email: EmailStr
    full_name: str
    role: Role = Role.buyer
    phone: Optional[str] = None
    address: Optional[str] = None


class Category(BaseModel):
    name: str


# ---------------------------------------------------------------------------
# Products and Listings
# ---------------------------------------------------------------------------
class Product(BaseModel):
    seller_id: str = Field(..., description="Reference to user._id")
    title: str
    description: str
    price: float = Field(..., ge=0)
    quantity: int = Field(1, ge=0)
    category_id: Optional[str] = None
    condition: Condition = Condition.good
    brand: Optional[str] = None
    size: Optional[str] = None
    image_url: Optional[str] = None
    additional_images: List[str] = Field(default_factory=list, max_length=4)
    status: ProductStatus = ProductStatus.available


# ---------------------------------------------------------------------------
# Cart and Orders
# ---------------------------------------------------------------------------
class CartItem(BaseModel):
    user_id: str
    product_id: str
    quantity: int = Field(1, ge=1)
    size: str = "N/A"


class Order(BaseModel):
    buyer_id: str
    seller_id: str
    total_amount: float = Field(..., ge=0)
    payment_method: PaymentMethod
    payment_details: Dict[str, str] = Field(default_factory=dict)
    shipping_address: str
    shipping_phone: str
    notes: Optional[str] = None
    status: OrderStatus = OrderStatus.pending


class OrderItem(BaseModel):
    order_id: str
    product_id: str
    quantity: int = Field(..., ge=1)
    price_at_purchase: float = Field(..., ge=0)


class CheckoutLog(BaseModel):
    """Journal of one seller group of a checkout; used to undo partial writes."""
    checkout_id: str
    buyer_id: str
    seller_id: str
    state: str = Field("in_progress", description="in_progress | committed | compensated | failed")
    order_id: Optional[str] = None
    order_item_ids: List[str] = Field(default_factory=list)
    product_ids: List[str] = Field(default_factory=list)
    previous_status: Dict[str, str] = Field(default_factory=dict)
    cart_item_ids: List[str] = Field(default_factory=list)
    error: Optional[str] = None


# ---------------------------------------------------------------------------
# Platform Settings & Logs
# ---------------------------------------------------------------------------
class Settings(BaseModel):
    commission_percent: float = Field(10.0, ge=0, le=100)
    payments: Dict[str, bool] = Field(default_factory=lambda: {
        "cash_on_delivery": True,
        "gcash": True,
        "card": True,
        "bank_transfer": True,
    })


class AuditLog(BaseModel):
    actor_id: Optional[str] = None
    action: str
    resource_type: str
    resource_id: Optional[str] = None
    metadata: Dict[str, Any] = {}
