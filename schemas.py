"""
Database Schemas for the Storefront backend

Each Pydantic model represents a MongoDB collection. The collection name is the
lowercase of the class name (e.g., Coupon -> "coupon", GamificationProfile ->
"gamificationprofile").

Ids referencing other documents (user_id, product_id, seller_id, ...) are
stored as ObjectIds by the services; the models declare them as strings for
validation of incoming payloads.
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

ORDER_STATUSES = ["pending", "confirmed", "processing", "shipped", "delivered", "cancelled"]
PAYMENT_STATUSES = ["pending", "paid", "failed", "refunded"]
DISCOUNT_TYPES = ["percentage", "fixed", "bogo", "free_shipping"]
COUPON_STATUSES = ["active", "inactive", "expired"]
NOTIFICATION_TYPES = ["order", "promotion", "system"]
ROLES = ["user", "seller", "admin"]
LOYALTY_TIERS = ["Bronze", "Silver", "Gold"]


class User(BaseModel):
    """
    Users collection schema
    Collection: "user"
    Auth, loyalty and password reset fields live on the same document.
    """
    name: str = Field(..., description="Full name")
    email: str = Field(..., description="Lower-cased, unique")
    password: str = Field(..., description="bcrypt hash")
    role: Literal["user", "seller", "admin"] = "user"
    phone: Optional[str] = None
    avatar: Optional[str] = None
    login_attempts: int = Field(0, ge=0)
    lock_until: Optional[datetime] = None
    reset_password_otp: Optional[str] = None
    reset_password_expires: Optional[datetime] = None
    reset_password_attempts: int = Field(0, ge=0)
    two_factor_enabled: bool = False
    two_factor_secret: Optional[str] = Field(None, description="base32 TOTP secret")
    loyalty_points: int = Field(0, ge=0)
    loyalty_tier: Literal["Bronze", "Silver", "Gold"] = "Bronze"
    total_points_earned: int = Field(0, ge=0)


class ProductVariant(BaseModel):
    name: str
    options: List[str]


class ProductSpecification(BaseModel):
    key: str
    value: str


class Product(BaseModel):
    """
    Products collection schema
    Collection: "product"
    """
    title: str = Field(..., description="Product title")
    description: str = Field(..., description="Short description")
    long_description: Optional[str] = None
    price: float = Field(..., ge=0, description="Unit price")
    discount_price: Optional[float] = Field(None, ge=0)
    category_id: str = Field(..., description="Owning category id")
    seller_id: Optional[str] = Field(None, description="User who sells the product")
    images: List[str] = Field(default_factory=list)
    thumbnail: Optional[str] = None
    brand: Optional[str] = None
    stock: int = Field(0, ge=0, description="Units in stock")
    rating: float = Field(0, ge=0, le=5)
    sold_count: int = Field(0, ge=0)
    sku: Optional[str] = None
    weight: Optional[float] = Field(None, ge=0, description="kg")
    variants: List[ProductVariant] = Field(default_factory=list)
    specifications: List[ProductSpecification] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    is_featured: bool = False
    is_active: bool = True
    stock_status: Literal["in-stock", "out-of-stock", "pre-order"] = "in-stock"
    view_count: int = Field(0, ge=0)


class CartItem(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1, le=999)
    price: float = Field(..., ge=0)


class Cart(BaseModel):
    """
    Shopping cart schema (one per user)
    Collection: "cart"
    """
    user_id: str
    role: str = "user"
    items: List[CartItem] = Field(default_factory=list)
    total_price: float = Field(0, ge=0)


class StatusHistory(BaseModel):
    status: Literal["pending", "confirmed", "processing", "shipped", "delivered", "cancelled"]
    timestamp: datetime
    note: Optional[str] = None
    updated_by: Optional[str] = None


class OrderItem(BaseModel):
    product_id: str
    quantity: int = Field(..., gt=0)
    price: float = Field(..., ge=0)
    product_name: Optional[str] = Field(None, description="Name at time of order")
    product_image: Optional[str] = Field(None, description="Image at time of order")


class ShippingAddress(BaseModel):
    full_name: str
    address_line: str
    city: str
    state: str
    postal_code: str
    country: str
    phone: str


class Order(BaseModel):
    """
    Orders collection schema
    Collection: "order"
    """
    user_id: str
    items: List[OrderItem]
    total_amount: float = Field(..., ge=0)
    subtotal: float = Field(0, ge=0)
    discount: float = Field(0, ge=0)
    shipping_cost: float = Field(0, ge=0)
    tax: float = Field(0, ge=0)
    applied_coupon: Optional[str] = None
    coupon_code: Optional[str] = None
    payment_status: Literal["pending", "paid", "failed", "refunded"] = "pending"
    order_status: Literal["pending", "confirmed", "processing", "shipped", "delivered", "cancelled"] = "pending"
    shipping_address: ShippingAddress
    billing_address: Optional[dict] = None
    tracking_number: Optional[str] = None
    courier_service: Optional[str] = None
    status_history: List[StatusHistory] = Field(default_factory=list)
    payment_method: Optional[str] = None
    payment_transaction_id: Optional[str] = None
    customer_notes: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_email: Optional[str] = None


class Coupon(BaseModel):
    """
    Coupons collection schema
    Collection: "coupon"
    usage_limit 0 means unlimited; empty allow-lists mean "everyone".
    """
    code: str = Field(..., description="Upper-cased, unique")
    description: str
    discount_type: Literal["percentage", "fixed", "bogo", "free_shipping"]
    discount_value: float = Field(..., ge=0)
    cost_in_points: Optional[int] = Field(None, ge=0)
    min_purchase_amount: float = Field(0, ge=0)
    max_discount_amount: Optional[float] = Field(None, ge=0)
    valid_from: datetime
    valid_until: datetime
    usage_limit: int = Field(0, ge=0)
    usage_limit_per_user: int = Field(1, ge=0)
    used_count: int = Field(0, ge=0)
    used_by: List[str] = Field(default_factory=list)
    status: Literal["active", "inactive", "expired"] = "active"
    is_active: bool = True
    applicable_categories: List[str] = Field(default_factory=list)
    applicable_products: List[str] = Field(default_factory=list)
    applicable_users: List[str] = Field(default_factory=list)
    first_time_user_only: bool = False
    created_by: Optional[str] = None
    notes: Optional[str] = None


class Notification(BaseModel):
    """
    Notifications collection schema
    Collection: "notification"
    """
    user_id: str
    message: str
    type: Literal["order", "promotion", "system"] = "order"
    read: bool = False


class WishlistItem(BaseModel):
    product_id: str
    is_bought: bool = False
    bought_by: Optional[str] = Field(None, description="Name of whoever bought it")
    added_at: datetime


class Wishlist(BaseModel):
    """
    Wishlists collection schema
    Collection: "wishlist"
    """
    user_id: str
    name: str = "My Wishlist"
    privacy: Literal["private", "public"] = "private"
    share_token: str
    items: List[WishlistItem] = Field(default_factory=list)


class GamificationProfile(BaseModel):
    """
    Collection: "gamificationprofile"
    """
    user_id: str
    points: int = 0
    lifetime_points: int = 0
    current_streak: int = 0
    highest_streak: int = 0
    last_check_in: Optional[datetime] = None
    last_spin_date: Optional[datetime] = None
    last_scratch_date: Optional[datetime] = None


class GamificationActivity(BaseModel):
    """
    Collection: "gamificationactivity"
    """
    user_id: str
    action: str = Field(..., description="won|reached|scratched")
    details: str = Field(..., description="e.g. 50 Points")
    type: str = Field(..., description="SPIN|SCRATCH|CHECKIN")
