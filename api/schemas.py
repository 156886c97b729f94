"""
Pydantic schemas for API request/response models.
"""
from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, Dict, List, Optional
from uuid import UUID

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    PlainSerializer,
    computed_field,
    field_validator,
    model_validator,
)

from core.catalog import ProductCategory, ProductDetails, discounted_price, stock_status
from core.commands import (
    MAX_NOTES_LENGTH,
    CustomerDetails,
    LineItem,
    PlaceOrder,
    RefundPayment,
    UpdateOrderStatus,
    VerifyPayment,
)
from core.state import FulfillmentStatus

# Amounts stay Decimal in Python and are rendered as JSON numbers for the storefront
Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class Address(BaseModel):
    """Shipping address."""

    street: str = Field(..., min_length=5, max_length=200)
    city: str = Field(..., min_length=2, max_length=50)
    state: str = Field(..., min_length=2, max_length=50)
    country: str = Field(default="India")
    pincode: str = Field(..., pattern=r"^\d{6}$", description="6-digit pincode")
    landmark: Optional[str] = None

    @field_validator("street", "city", "state", "country", "landmark")
    @classmethod
    def strip_whitespace(cls, v: Optional[str]) -> Optional[str]:
        return v.strip() if isinstance(v, str) else v


class UserDetails(BaseModel):
    """Customer contact details."""

    name: str = Field(..., min_length=2, max_length=100)
    email: str = Field(..., pattern=EMAIL_PATTERN, max_length=254)
    phone: str = Field(..., pattern=r"^[6-9]\d{9}$", description="10-digit Indian phone number")
    address: Address

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        return v.strip()

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        return v.strip().lower()


class OrderItemIn(BaseModel):
    """One cart line as sent by the storefront."""

    model_config = ConfigDict(populate_by_name=True)

    product_id: str = Field(..., min_length=1, alias="productId")
    name: str = Field(..., min_length=1)
    color: str = Field(..., min_length=1)
    size: str = Field(..., min_length=1)
    quantity: int = Field(..., gt=0)
    price: Decimal = Field(..., gt=0, description="Unit price in major units")
    image: Optional[str] = None

    def to_line_item(self) -> LineItem:
        return LineItem(
            product_id=self.product_id,
            name=self.name,
            quantity=self.quantity,
            unit_price=self.price,
            color=self.color,
            size=self.size,
            image=self.image,
        )


class CreateOrderRequest(BaseModel):
    """Request schema for placing an order."""

    model_config = ConfigDict(
        populate_by_name=True,
        extra="forbid",
        json_schema_extra={
            "examples": [
                {
                    "amount": 900,
                    "currency": "INR",
                    "items": [
                        {
                            "productId": "tee-001",
                            "name": "Classic Tee",
                            "color": "black",
                            "size": "M",
                            "quantity": 2,
                            "price": 450,
                        }
                    ],
                    "userDetails": {
                        "name": "Asha Rao",
                        "email": "asha@example.com",
                        "phone": "9876543210",
                        "address": {
                            "street": "12 MG Road",
                            "city": "Bengaluru",
                            "state": "Karnataka",
                            "pincode": "560001",
                        },
                    },
                }
            ]
        },
    )

    amount: Decimal = Field(..., gt=0, description="Cart subtotal in major units")
    currency: str = Field(default="INR")
    items: List[OrderItemIn] = Field(..., min_length=1)
    user_details: UserDetails = Field(..., alias="userDetails")

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        if v.upper() != "INR":
            raise ValueError("Currency must be INR")
        return v.upper()

    def to_command(self, client_info: Optional[Dict[str, Any]] = None) -> PlaceOrder:
        details = self.user_details
        return PlaceOrder(
            amount=self.amount,
            items=tuple(item.to_line_item() for item in self.items),
            customer=CustomerDetails(
                name=details.name,
                email=details.email,
                phone=details.phone,
                address=details.address.model_dump(),
            ),
            currency=self.currency,
            client_info=client_info or {},
        )


class CreateOrderResponse(BaseModel):
    """Response schema for order placement."""

    success: bool = True
    message: str = "Order created successfully"
    remote_order_ref: str = Field(..., description="Gateway order id the checkout pays against")
    internal_order_id: UUID
    order_number: str
    total_amount: Money = Field(..., description="Total in major units")
    amount_minor: int = Field(..., description="Total in minor units, as sent to the gateway")
    currency: str
    receipt: Optional[str] = None
    key_id: str = Field(..., description="Public gateway key for the checkout widget")


class VerifyPaymentRequest(BaseModel):
    """Client verification callback after checkout."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    remote_order_id: str = Field(..., min_length=1, alias="razorpay_order_id")
    remote_payment_id: str = Field(..., min_length=1, alias="razorpay_payment_id")
    signature: str = Field(..., min_length=1, alias="razorpay_signature")

    def to_command(self) -> VerifyPayment:
        return VerifyPayment(
            remote_order_id=self.remote_order_id,
            remote_payment_id=self.remote_payment_id,
            signature=self.signature,
        )


class VerifyPaymentResponse(BaseModel):
    success: bool = True
    message: str = "Payment verified successfully"
    internal_order_id: UUID
    payment_id: str
    order_number: str


class UpdateOrderStatusRequest(BaseModel):
    """Admin fulfillment status change. Only these fields can be written."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    status: FulfillmentStatus
    notes: Optional[str] = Field(default=None, max_length=MAX_NOTES_LENGTH)
    tracking_number: Optional[str] = Field(default=None, alias="trackingNumber")
    carrier: Optional[str] = None

    @model_validator(mode="after")
    def require_tracking_when_shipped(self) -> "UpdateOrderStatusRequest":
        if self.status == FulfillmentStatus.SHIPPED and not self.tracking_number:
            raise ValueError("Tracking number is required when status is shipped")
        return self

    def to_command(self) -> UpdateOrderStatus:
        return UpdateOrderStatus(
            status=self.status,
            notes=self.notes,
            tracking_number=self.tracking_number,
            carrier=self.carrier,
        )


class RefundRequest(BaseModel):
    """Request schema for refunding a payment."""

    model_config = ConfigDict(
        extra="forbid",
        json_schema_extra={
            "examples": [
                {"amount": 500, "reason": "requested_by_customer"},
                {"reason": "duplicate"},
            ]
        }
    )

    amount: Optional[Decimal] = Field(
        default=None, gt=0, description="Partial refund amount in major units (full refund if omitted)"
    )
    reason: Optional[str] = Field(default=None, max_length=255)

    def to_command(self) -> RefundPayment:
        return RefundPayment(amount=self.amount, reason=self.reason)


class RefundResponse(BaseModel):
    """Response schema for refund."""

    success: bool = True
    message: str = "Refund initiated successfully"
    refund_id: str = Field(..., description="Gateway refund id")
    amount: Money = Field(..., description="Refunded amount in major units")
    order_id: UUID
    status: str = Field(..., description="Gateway refund status")


class OrderItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    product_id: str
    name: str
    color: Optional[str] = None
    size: Optional[str] = None
    quantity: int
    unit_price: Money
    line_total: Money
    image: Optional[str] = None


class OrderOut(BaseModel):
    """Order view returned by lookup and admin endpoints."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    order_number: str
    gateway_order_id: str
    gateway_payment_id: Optional[str] = None
    customer_name: str
    customer_email: str
    customer_phone: str
    shipping_address: Dict[str, Any]
    currency: str
    subtotal: Money
    shipping_charges: Money
    tax_amount: Money
    discount_amount: Money
    total_amount: Money
    payment_status: str
    status: str
    carrier: Optional[str] = None
    tracking_number: Optional[str] = None
    estimated_delivery: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    items: List[OrderItemOut] = Field(default_factory=list)


class OrderNoteOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    note: str
    added_by: str
    reference: Optional[str] = None
    created_at: Optional[datetime] = None


class PaymentStatusResponse(BaseModel):
    """Payment status as seen by the storefront."""

    order_id: UUID
    order_number: str
    payment_status: str
    status: str
    total_amount: Money
    currency: str


class PaymentDetailsResponse(BaseModel):
    """Local order state next to the gateway's view of its payment."""

    order_id: UUID
    order_number: str
    payment_status: str
    status: str
    payment_id: Optional[str] = None
    gateway_status: Optional[str] = None
    gateway_amount_minor: Optional[int] = None
    method: Optional[str] = None
    error_description: Optional[str] = None


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class OrderListResponse(BaseModel):
    orders: List[OrderOut]
    pagination: Pagination
    summary: Dict[str, Any]


class WebhookAnomalyOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    event_type: str
    entity_id: Optional[str] = None
    reason: str
    created_at: Optional[datetime] = None


class ProductColorIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    hex: Optional[str] = Field(default=None, pattern=r"^#[0-9A-Fa-f]{6}$")
    available: bool = True


class ProductSizeIn(BaseModel):
    size: str = Field(..., min_length=1, max_length=10)
    available: bool = True
    stock: int = Field(default=0, ge=0)


class ProductImageIn(BaseModel):
    """An already-hosted image; uploads happen outside this service."""

    model_config = ConfigDict(populate_by_name=True)

    url: str = Field(..., min_length=1)
    alt: Optional[str] = None
    is_primary: bool = Field(default=False, alias="isPrimary")


class ProductCreateRequest(BaseModel):
    """Admin request to add a product to the catalog."""

    model_config = ConfigDict(
        populate_by_name=True,
        extra="forbid",
        json_schema_extra={
            "examples": [
                {
                    "name": "Classic Tee",
                    "description": "Heavyweight cotton tee",
                    "price": 450,
                    "category": "tshirts",
                    "colors": [{"name": "Black", "hex": "#000000"}],
                    "sizes": [{"size": "M", "stock": 20}, {"size": "L", "stock": 5}],
                }
            ]
        },
    )

    name: str = Field(..., min_length=1, max_length=200)
    description: str = Field(..., min_length=1)
    price: Decimal = Field(..., ge=0)
    original_price: Optional[Decimal] = Field(default=None, ge=0, alias="originalPrice")
    discount: Decimal = Field(default=Decimal("0"), ge=0, le=100)
    category: ProductCategory
    subcategory: Optional[str] = None
    material: Optional[str] = None
    colors: List[ProductColorIn] = Field(default_factory=list)
    sizes: List[ProductSizeIn] = Field(default_factory=list)
    images: List[ProductImageIn] = Field(default_factory=list)
    care_instructions: List[str] = Field(default_factory=list, alias="careInstructions")
    features: List[str] = Field(default_factory=list)
    low_stock_threshold: int = Field(default=10, ge=0, alias="lowStockThreshold")
    is_active: bool = Field(default=True, alias="isActive")
    is_featured: bool = Field(default=False, alias="isFeatured")
    is_new: bool = Field(default=False, alias="isNew")

    def to_details(self) -> ProductDetails:
        return ProductDetails(
            name=self.name,
            description=self.description,
            price=self.price,
            category=self.category,
            original_price=self.original_price,
            discount=self.discount,
            subcategory=self.subcategory,
            material=self.material,
            colors=tuple(color.model_dump() for color in self.colors),
            sizes=tuple(size.model_dump() for size in self.sizes),
            images=tuple(image.model_dump() for image in self.images),
            care_instructions=tuple(self.care_instructions),
            features=tuple(self.features),
            low_stock_threshold=self.low_stock_threshold,
            is_active=self.is_active,
            is_featured=self.is_featured,
            is_new=self.is_new,
        )


# Columns that may be cleared with an explicit null on update
NULLABLE_PRODUCT_FIELDS = frozenset({"original_price", "subcategory", "material"})


class ProductUpdateRequest(BaseModel):
    """Partial product update; only the fields sent are changed."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, min_length=1)
    price: Optional[Decimal] = Field(default=None, ge=0)
    original_price: Optional[Decimal] = Field(default=None, ge=0, alias="originalPrice")
    discount: Optional[Decimal] = Field(default=None, ge=0, le=100)
    category: Optional[ProductCategory] = None
    subcategory: Optional[str] = None
    material: Optional[str] = None
    colors: Optional[List[ProductColorIn]] = None
    sizes: Optional[List[ProductSizeIn]] = None
    images: Optional[List[ProductImageIn]] = None
    care_instructions: Optional[List[str]] = Field(default=None, alias="careInstructions")
    features: Optional[List[str]] = None
    low_stock_threshold: Optional[int] = Field(default=None, ge=0, alias="lowStockThreshold")
    is_active: Optional[bool] = Field(default=None, alias="isActive")
    is_featured: Optional[bool] = Field(default=None, alias="isFeatured")
    is_new: Optional[bool] = Field(default=None, alias="isNew")

    @model_validator(mode="after")
    def reject_nulls(self) -> "ProductUpdateRequest":
        cleared = [
            name
            for name in self.model_fields_set - NULLABLE_PRODUCT_FIELDS
            if getattr(self, name) is None
        ]
        if cleared:
            raise ValueError(f"Fields cannot be null: {', '.join(sorted(cleared))}")
        return self

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class ProductOut(BaseModel):
    """Catalog entry as shown to admins."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    slug: str
    description: str
    price: Money
    original_price: Optional[Money] = None
    discount: Money
    category: str
    subcategory: Optional[str] = None
    material: Optional[str] = None
    colors: List[Dict[str, Any]] = Field(default_factory=list)
    sizes: List[Dict[str, Any]] = Field(default_factory=list)
    variants: List[Dict[str, Any]] = Field(default_factory=list)
    images: List[Dict[str, Any]] = Field(default_factory=list)
    care_instructions: List[str] = Field(default_factory=list)
    features: List[str] = Field(default_factory=list)
    stock: int
    low_stock_threshold: int
    is_active: bool
    is_featured: bool
    is_new: bool
    meta_title: Optional[str] = None
    meta_description: Optional[str] = None
    keywords: List[str] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @computed_field
    @property
    def discounted_price(self) -> Money:
        return discounted_price(self.price, self.discount)

    @computed_field
    @property
    def stock_status(self) -> str:
        return stock_status(self.stock, self.low_stock_threshold).value


class ProductListResponse(BaseModel):
    products: List[ProductOut]
    pagination: Pagination


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")
