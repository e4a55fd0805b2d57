"""Data models for the gateway's HTTP surface."""

from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, Field


class CheckoutItem(BaseModel):
    """One cart line submitted to checkout."""

    product_id: str = Field(
        validation_alias=AliasChoices("productId", "product2Id", "product_id"),
        serialization_alias="productId",
        min_length=1,
    )
    quantity: int = Field(ge=1)
    unit_price: float = Field(
        validation_alias=AliasChoices("unitPrice", "unit_price"),
        serialization_alias="unitPrice",
        ge=0,
    )

    @property
    def line_total(self) -> float:
        return self.quantity * self.unit_price


class CheckoutRequest(BaseModel):
    """Checkout request body."""

    contact_id: Optional[str] = Field(default=None, alias="contactId")
    account_id: Optional[str] = Field(default=None, alias="accountId")
    items: List[CheckoutItem] = Field(min_length=1)
    payment_method: Optional[str] = Field(default=None, alias="paymentMethod")
    total: Optional[float] = None

    class Config:
        populate_by_name = True

    @property
    def order_total(self) -> float:
        """Submitted total, or the sum of the line totals when omitted."""
        if self.total is not None:
            return self.total
        return sum(item.line_total for item in self.items)


class CheckoutResult(BaseModel):
    """Outcome of a checkout whose order was activated."""

    success: bool = True
    order_id: str = Field(alias="orderId")
    order_number: Optional[str] = Field(default=None, alias="orderNumber")
    tracking_number: str = Field(alias="trackingNumber")
    carrier: str
    estimated_delivery: str = Field(alias="estimatedDelivery")
    shipping_status: str = Field(alias="shippingStatus")
    points_earned: int = Field(default=0, alias="pointsEarned")

    class Config:
        populate_by_name = True


class Product(BaseModel):
    """Storefront product shape."""

    id: str
    name: str
    brand: str = "Unknown"
    category: str = "uncategorized"
    price: float = 0
    currency: str = "USD"
    description: str = ""
    short_description: str = Field(default="", alias="shortDescription")
    image_url: str = Field(default="", alias="imageUrl")
    images: List[str] = Field(default_factory=list)
    attributes: Dict[str, Any] = Field(default_factory=dict)
    rating: float = 0
    review_count: int = Field(default=0, alias="reviewCount")
    in_stock: bool = Field(default=True, alias="inStock")

    class Config:
        populate_by_name = True


class ProductPage(BaseModel):
    """One page of catalog results."""

    products: List[Product] = Field(default_factory=list)
    total: int = 0
    offset: int = 0
    limit: int = 0
    source: str = "salesforce"


class PriceInfo(BaseModel):
    price: float = 0
    currency: str = "USD"


class ContactRequest(BaseModel):
    """Body of a contact creation request."""

    email: str = Field(min_length=1)
    first_name: Optional[str] = Field(default=None, alias="firstName")
    last_name: Optional[str] = Field(default=None, alias="lastName")
    merkury_id: Optional[str] = Field(default=None, alias="merkuryId")
    demo_profile: Optional[str] = Field(default=None, alias="demoProfile")
    lead_source: Optional[str] = Field(default=None, alias="leadSource")
    beauty_fields: Dict[str, Any] = Field(default_factory=dict, alias="beautyFields")

    class Config:
        populate_by_name = True


class DemoContact(BaseModel):
    id: str
    first_name: Optional[str] = Field(default=None, alias="firstName")
    last_name: Optional[str] = Field(default=None, alias="lastName")
    email: Optional[str] = None
    demo_profile: Optional[str] = Field(default=None, alias="demoProfile")
    merkury_id: Optional[str] = Field(default=None, alias="merkuryId")

    class Config:
        populate_by_name = True


class UploadRequest(BaseModel):
    """Base64 file upload to ContentVersion."""

    image_base64: str = Field(alias="imageBase64", min_length=1)
    file_name: str = Field(alias="fileName", min_length=1)
    title: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    token: Optional[str] = None

    class Config:
        populate_by_name = True
