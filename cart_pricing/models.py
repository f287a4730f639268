from datetime import datetime, timezone
from typing import Annotated, List, Literal, Optional, Union
from uuid import uuid4

from pydantic import AfterValidator, BaseModel, Field, TypeAdapter, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # naive timestamps are stored as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def new_id() -> str:
    return uuid4().hex


UtcDatetime = Annotated[datetime, AfterValidator(as_utc)]

DiscountType = Literal["percentage", "fixed"]
ApplicableTo = Literal["all", "category", "product"]
OfferType = Literal["flash_sale", "bogo", "category_discount", "product_discount", "bundle", "free_shipping"]


# ---------------------------
# Catalog & Cart
# ---------------------------

class Product(BaseModel):
    id: str = Field(default_factory=new_id)
    title: str = ""
    price: int = Field(ge=0)  # cents
    category: Optional[str] = None
    stock: int = Field(default=0, ge=0)


class CartLine(BaseModel):
    productId: str
    quantity: int = Field(gt=0)
    unitPrice: int = Field(ge=0)
    category: Optional[str] = None

    @property
    def lineTotal(self) -> int:
        return self.unitPrice * self.quantity


class Cart(BaseModel):
    userId: str
    items: List[CartLine] = Field(default_factory=list)
    couponCode: Optional[str] = None
    discountAmount: int = Field(default=0, ge=0)


# ---------------------------
# Offers
# ---------------------------

class OfferBase(BaseModel):
    id: str = Field(default_factory=new_id)
    title: str
    description: Optional[str] = None
    discountType: DiscountType = "fixed"
    discountValue: float = Field(default=0, ge=0)
    minPurchaseAmount: Optional[int] = Field(default=None, ge=0)
    maxDiscountAmount: Optional[int] = Field(default=None, ge=0)

    validFrom: UtcDatetime = Field(default_factory=utcnow)
    validUntil: UtcDatetime

    isActive: bool = True
    priority: int = 0  # higher first
    usageCount: int = Field(default=0, ge=0)
    createdAt: UtcDatetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def check_discount_and_window(self):
        if self.discountType == "percentage" and self.discountValue > 100:
            raise ValueError("Percentage discount cannot exceed 100%")
        if self.validFrom >= self.validUntil:
            raise ValueError("Valid from date must be before valid until date")
        return self


class FlashSaleOffer(OfferBase):
    offerType: Literal["flash_sale"]
    discountType: DiscountType
    discountValue: float = Field(ge=0)
    flashSaleStart: UtcDatetime
    flashSaleEnd: UtcDatetime
    applicableProducts: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_flash_window(self):
        if self.flashSaleStart >= self.flashSaleEnd:
            raise ValueError("Flash sale start date must be before end date")
        return self


class BogoOffer(OfferBase):
    offerType: Literal["bogo"]
    bogoBuyQuantity: int = Field(ge=1)
    bogoGetQuantity: int = Field(ge=1)
    bogoProductId: str


class CategoryDiscountOffer(OfferBase):
    offerType: Literal["category_discount"]
    discountType: DiscountType
    discountValue: float = Field(ge=0)
    applicableCategories: List[str] = Field(min_length=1)


class ProductDiscountOffer(OfferBase):
    offerType: Literal["product_discount"]
    discountType: DiscountType
    discountValue: float = Field(ge=0)
    applicableProducts: List[str] = Field(min_length=1)


class BundleItem(BaseModel):
    productId: str
    quantity: int = Field(ge=1)


class BundleOffer(OfferBase):
    offerType: Literal["bundle"]
    bundleProducts: List[BundleItem] = Field(min_length=2)
    bundlePrice: int = Field(gt=0)

    @field_validator("bundleProducts")
    @classmethod
    def distinct_products(cls, value: List[BundleItem]) -> List[BundleItem]:
        ids = [item.productId for item in value]
        if len(set(ids)) != len(ids):
            raise ValueError("Bundle products must be distinct")
        return value


class FreeShippingOffer(OfferBase):
    offerType: Literal["free_shipping"]
    freeShippingMinAmount: int = Field(ge=0)


Offer = Annotated[
    Union[FlashSaleOffer, BogoOffer, CategoryDiscountOffer, ProductDiscountOffer, BundleOffer, FreeShippingOffer],
    Field(discriminator="offerType"),
]

_offer_adapter = TypeAdapter(Offer)


def parse_offer(data: dict) -> Offer:
    return _offer_adapter.validate_python(data)


# ---------------------------
# Coupons
# ---------------------------

class CouponUsage(BaseModel):
    userId: str
    orderId: str
    usedAt: UtcDatetime = Field(default_factory=utcnow)


class Coupon(BaseModel):
    id: str = Field(default_factory=new_id)
    code: str = Field(min_length=1)
    description: Optional[str] = None
    discountType: DiscountType
    discountValue: float = Field(ge=0)
    minPurchaseAmount: Optional[int] = Field(default=None, ge=0)
    maxDiscountAmount: Optional[int] = Field(default=None, ge=0)

    validFrom: UtcDatetime = Field(default_factory=utcnow)
    validUntil: UtcDatetime

    usageLimit: Optional[int] = Field(default=None, ge=1)
    usageLimitPerUser: Optional[int] = Field(default=None, ge=1)

    applicableTo: ApplicableTo = "all"
    applicableCategories: List[str] = Field(default_factory=list)
    applicableProducts: List[str] = Field(default_factory=list)

    isActive: bool = True
    usageCount: int = Field(default=0, ge=0)
    usageHistory: List[CouponUsage] = Field(default_factory=list)
    createdAt: UtcDatetime = Field(default_factory=utcnow)

    @field_validator("code")
    @classmethod
    def normalize_code(cls, value: str) -> str:
        return value.strip().upper()

    @model_validator(mode="after")
    def check_discount_and_window(self):
        if self.discountType == "percentage" and self.discountValue > 100:
            raise ValueError("Percentage discount cannot exceed 100%")
        if self.validFrom >= self.validUntil:
            raise ValueError("Valid from date must be before valid until date")
        return self


# ---------------------------
# Results
# ---------------------------

class OfferMatch(BaseModel):
    applicable: bool
    discountAmount: int = 0
    description: str = ""


class AppliedOffer(BaseModel):
    offerId: str
    offerType: OfferType
    title: str
    description: str
    discountAmount: int


class OfferApplicationResult(BaseModel):
    applicableOffers: List[AppliedOffer] = Field(default_factory=list)
    totalDiscount: int = 0
    freeShipping: bool = False


class CouponValidationResult(BaseModel):
    isValid: bool
    coupon: Optional[Coupon] = None
    discountAmount: int = 0
    error: Optional[str] = None


class CartPricingResult(BaseModel):
    subtotal: int
    offerDiscount: int
    couponDiscount: int
    totalDiscount: int
    total: int
    freeShipping: bool
    applicableOffers: List[AppliedOffer] = Field(default_factory=list)
    couponCode: Optional[str] = None


# ---------------------------
# Requests
# ---------------------------

class ApplyOffersRequest(BaseModel):
    items: List[CartLine]


class PriceCartRequest(BaseModel):
    items: List[CartLine]
    couponCode: Optional[str] = None
    userId: Optional[str] = None


class ValidateCouponRequest(BaseModel):
    code: str
    userId: Optional[str] = None
    items: List[CartLine]
    totalAmount: Optional[int] = Field(default=None, ge=0)


class RedeemCouponRequest(BaseModel):
    userId: str
    orderId: str


class AddToCartRequest(BaseModel):
    productId: str
    quantity: int = Field(gt=0)


class UpdateCartItemRequest(BaseModel):
    quantity: int = Field(gt=0)


class ApplyCouponRequest(BaseModel):
    code: str


class CheckoutRequest(BaseModel):
    orderId: str = Field(default_factory=new_id)


class CartResponse(BaseModel):
    cart: Cart
    pricing: CartPricingResult
