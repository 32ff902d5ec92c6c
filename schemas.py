"""
Database Schemas for the apparel store

Each collection model maps to a MongoDB collection (lowercased class name).
Documents are stored with snake_case keys exactly as `model_dump()` emits them.

Collections:
- user
- product
- cart
- order
- message
- admin_activity

The second half of the module holds the request bodies accepted by the API.
"""
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

SizeName = Literal["XS", "S", "M", "L", "XL", "XXL", "3XL"]
ProductCategory = Literal["men", "women", "kids", "accessories"]
SubCategory = Literal[
    "t-shirts", "shirts", "pants", "jeans", "dresses",
    "skirts", "jackets", "sweaters", "hoodies", "shorts",
    "activewear", "underwear", "socks", "accessories",
]
DisplayPage = Literal["home", "featured", "new-arrivals", "best-sellers", "sale"]
Role = Literal["user", "admin", "vendor"]

PaymentMethod = Literal["credit_card", "debit_card", "paypal", "cod", "bkash", "nagad"]
PaymentStatus = Literal["pending", "paid", "failed"]
OrderStatus = Literal["pending", "processing", "shipped", "delivered", "cancelled"]

MOBILE_WALLETS = ("bkash", "nagad")
ORDER_STATUSES = ("pending", "processing", "shipped", "delivered", "cancelled")
CANCELLABLE_STATUSES = ("pending", "processing")
# forward-only; delivered and cancelled are final
STATUS_TRANSITIONS: Dict[str, Tuple[str, ...]] = {
    "pending": ("processing", "shipped", "delivered", "cancelled"),
    "processing": ("shipped", "delivered", "cancelled"),
    "shipped": ("delivered",),
    "delivered": (),
    "cancelled": (),
}

HEX_COLOR_PATTERN = r"^#([A-Fa-f0-9]{6}|[A-Fa-f0-9]{3})$"


def effective_price(product: Dict[str, Any]) -> Optional[float]:
    """Price a product sells at: ``sale_price`` when set, else ``base_price``.

    Returns ``None`` when the chosen value is missing, not a number, or
    negative. Used for carts, orders and listings alike.
    """
    price = product.get("sale_price")
    if price is None:
        price = product.get("base_price")
    if isinstance(price, bool) or not isinstance(price, (int, float)) or price < 0:
        return None
    return float(price)


# ---------- Catalog ----------

class Color(BaseModel):
    name: str = Field(..., min_length=1, description="Color name, e.g. Red")
    hex_code: str = Field(..., pattern=HEX_COLOR_PATTERN, description="#RGB or #RRGGBB")


class ProductImage(BaseModel):
    url: str = Field(..., min_length=1)
    alt: Optional[str] = None

    @field_validator("url")
    @classmethod
    def _uploads_path(cls, v: str) -> str:
        # bare file names refer to the product uploads folder
        if v.startswith("/uploads/") or v.startswith("http"):
            return v
        return f"/uploads/products/{v}"


class SizeStock(BaseModel):
    name: SizeName
    quantity: int = Field(..., ge=0, description="Units in stock")


class ColorVariant(BaseModel):
    color: Color
    images: List[ProductImage] = Field(..., min_length=1)
    sizes: List[SizeStock] = Field(..., min_length=1)

    @model_validator(mode="after")
    def _unique_sizes(self):
        names = [s.name for s in self.sizes]
        if len(names) != len(set(names)):
            raise ValueError(f"Color variant {self.color.name!r} lists a size more than once")
        return self


class ProductMetadata(BaseModel):
    is_new_arrival: bool = False
    is_best_seller: bool = False
    is_sale: bool = False
    sale_percentage: Optional[float] = Field(None, ge=0, le=100)


class Review(BaseModel):
    user: str
    rating: int = Field(..., ge=1, le=5)
    review: str = ""
    images: List[str] = Field(default_factory=list)
    created_at: datetime


class ProductBase(BaseModel):
    name: str = Field(..., min_length=1)
    description: str
    category: ProductCategory
    sub_category: SubCategory
    brand: str
    base_price: float = Field(..., ge=0)
    sale_price: Optional[float] = Field(None, ge=0)
    color_variants: List[ColorVariant] = Field(..., min_length=1)
    features: List[str] = Field(default_factory=list)
    material: str
    care_instructions: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    display_page: Optional[DisplayPage] = None
    is_active: bool = True
    metadata: ProductMetadata = Field(default_factory=ProductMetadata)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, v: str) -> str:
        return v.strip()

    @model_validator(mode="after")
    def _unique_colors(self):
        names = [cv.color.name for cv in self.color_variants]
        if len(names) != len(set(names)):
            raise ValueError("Each color variant must have a distinct color name")
        return self


class Product(ProductBase):
    """
    Products collection schema
    Collection name: "product"
    """
    ratings: List[Review] = Field(default_factory=list)
    average_rating: float = 0
    total_reviews: int = 0
    created_by: Optional[str] = None


# ---------- Cart / Order line items ----------

class ColorSnapshot(BaseModel):
    color: Color
    images: List[ProductImage] = Field(default_factory=list)


class LineSize(BaseModel):
    name: SizeName
    quantity: int = Field(..., ge=1)


class CartItem(BaseModel):
    product: str
    color_variant: ColorSnapshot
    size: LineSize
    price: float = Field(..., ge=0)


class Cart(BaseModel):
    """
    Carts collection schema, one per user
    Collection name: "cart"
    """
    user: str
    items: List[CartItem] = Field(default_factory=list)
    total_items: int = 0
    total_amount: float = 0


class OrderItem(CartItem):
    quantity: int = Field(..., ge=1)


class ShippingAddress(BaseModel):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None


class PaymentDetails(BaseModel):
    payment_number: Optional[str] = None
    transaction_id: Optional[str] = None
    card_last_four: Optional[str] = None
    card_type: Optional[str] = None


class Order(BaseModel):
    """
    Orders collection schema
    Collection name: "order"
    """
    user: str
    items: List[OrderItem] = Field(..., min_length=1)
    total_amount: float = Field(..., ge=0)
    shipping_address: Optional[ShippingAddress] = None
    payment_method: PaymentMethod
    payment_details: Optional[PaymentDetails] = None
    payment_status: PaymentStatus = "pending"
    status: OrderStatus = "pending"
    tracking_number: Optional[str] = None
    notes: Optional[str] = None
    deleted_at: Optional[datetime] = None


# ---------- Users ----------

class LegacyCartEntry(BaseModel):
    product: str
    quantity: int = Field(1, ge=1)


class User(BaseModel):
    """
    Users collection schema
    Collection name: "user"
    """
    name: str = Field(..., min_length=1, description="Full name")
    email: EmailStr = Field(..., description="Email address, lower-cased")
    password_hash: str = Field(..., description="BCrypt password hash")
    phone: Optional[str] = None
    address: Optional[ShippingAddress] = None
    wishlist: List[str] = Field(default_factory=list)
    cart: List[LegacyCartEntry] = Field(default_factory=list)
    role: Role = "user"
    is_email_verified: bool = False
    last_login: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    @field_validator("email")
    @classmethod
    def _lower_email(cls, v: str) -> str:
        return v.strip().lower()


# ---------- Messages / admin activity ----------

MessageStatus = Literal["new", "read", "replied", "closed"]
MessagePriority = Literal["low", "medium", "high"]
MessageCategory = Literal["general", "order", "product", "payment", "shipping", "other"]
ActivityAction = Literal["create", "update", "delete", "view", "other"]
ActivityEntity = Literal["product", "order", "user", "message", "other"]


class Message(BaseModel):
    """
    Customer messages to the store
    Collection name: "message"
    """
    user: str
    subject: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)
    status: MessageStatus = "new"
    reply: Optional[str] = None
    replied_by: Optional[str] = None
    replied_at: Optional[datetime] = None
    priority: MessagePriority = "medium"
    category: MessageCategory = "general"
    order_reference: Optional[str] = None
    deleted_at: Optional[datetime] = None


class AdminActivity(BaseModel):
    """
    Audit trail of admin writes
    Collection name: "admin_activity"
    """
    admin: str
    action: ActivityAction
    entity_type: ActivityEntity
    entity_id: str
    details: Dict[str, Any] = Field(default_factory=dict)
    ip: Optional[str] = None
    user_agent: Optional[str] = None


# ---------- Request bodies ----------

class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)
    phone: Optional[str] = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class ProfileUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(None, min_length=1)
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    address: Optional[ShippingAddress] = None


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=6)


class AdminUserUpdateRequest(ProfileUpdateRequest):
    is_email_verified: Optional[bool] = None
    role: Optional[Role] = None


class ProductCreateRequest(ProductBase):
    pass


class ProductUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    category: Optional[ProductCategory] = None
    sub_category: Optional[SubCategory] = None
    brand: Optional[str] = None
    base_price: Optional[float] = Field(None, ge=0)
    sale_price: Optional[float] = Field(None, ge=0)
    color_variants: Optional[List[ColorVariant]] = Field(None, min_length=1)
    features: Optional[List[str]] = None
    material: Optional[str] = None
    care_instructions: Optional[List[str]] = None
    tags: Optional[List[str]] = None
    display_page: Optional[DisplayPage] = None
    is_active: Optional[bool] = None
    metadata: Optional[ProductMetadata] = None


class ReviewRequest(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    review: str = ""
    images: List[str] = Field(default_factory=list)


class InventoryUpdateRequest(BaseModel):
    color: str = Field(..., min_length=1)
    size: SizeName
    quantity: int = Field(..., ge=0)


class CartItemKey(BaseModel):
    product_id: str
    color: str = Field(..., min_length=1, description="Color variant name")
    size: SizeName


class CartItemRequest(CartItemKey):
    quantity: int = Field(1, ge=1)


class LineItemRequest(CartItemKey):
    quantity: int = Field(..., ge=1)


class OrderCreateRequest(BaseModel):
    items: List[LineItemRequest] = Field(..., min_length=1)
    shipping_address: Optional[ShippingAddress] = None
    payment_method: PaymentMethod
    payment_details: Optional[PaymentDetails] = None
    notes: Optional[str] = None


class OrderStatusRequest(BaseModel):
    status: str
    tracking_number: Optional[str] = None
    notes: Optional[str] = None


class BulkProductUpdate(ProductUpdateRequest):
    id: Optional[str] = Field(None, description="Product to update")


class BulkProductUpdateRequest(BaseModel):
    products: List[BulkProductUpdate]


class MessageCreateRequest(BaseModel):
    subject: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)
    priority: MessagePriority = "medium"
    category: MessageCategory = "general"
    order_reference: Optional[str] = None

    @field_validator("subject", "content")
    @classmethod
    def _strip(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v


class MessageReplyRequest(BaseModel):
    reply: str = Field(..., min_length=1)
