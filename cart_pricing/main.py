import logging
from typing import Any, Dict, List, Optional

from fastapi import Body, FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from . import config
from .cart import CartService
from .errors import ConflictError, NotFoundError, PricingError
from .logic import compute_subtotal
from .models import (
    AddToCartRequest,
    ApplyCouponRequest,
    ApplyOffersRequest,
    CartPricingResult,
    CartResponse,
    CheckoutRequest,
    Coupon,
    CouponValidationResult,
    OfferApplicationResult,
    PriceCartRequest,
    Product,
    RedeemCouponRequest,
    UpdateCartItemRequest,
    ValidateCouponRequest,
    parse_offer,
    utcnow,
)
from .offers import rank_offers
from .pricing import PricingEngine
from .storage import CARTS_DB, CATALOG, COUPONS_DB, OFFERS_DB

config.configure_logging()
logger = logging.getLogger(__name__)

engine = PricingEngine(CATALOG, OFFERS_DB, COUPONS_DB)
cart_service = CartService(engine, CARTS_DB)

app = FastAPI(title="Cart Pricing Service")


# ---------------------------
# Error mapping
# ---------------------------

@app.exception_handler(PricingError)
async def handle_pricing_error(request: Request, exc: PricingError):
    if isinstance(exc, NotFoundError):
        status_code = 404
    elif isinstance(exc, ConflictError):
        status_code = 409
    else:
        status_code = 400
    return JSONResponse(status_code=status_code, content={"detail": exc.message, "code": exc.code})


def _unprocessable(exc: ValidationError) -> HTTPException:
    return HTTPException(status_code=422, detail=jsonable_encoder(exc.errors(include_context=False)))


def _check_products_exist(product_ids: List[str]) -> None:
    if len(CATALOG.get_products_by_ids(product_ids)) != len(set(product_ids)):
        raise HTTPException(status_code=400, detail="Some products do not exist")


def _offer_product_ids(data: Dict[str, Any]) -> List[str]:
    ids = list(data.get("applicableProducts") or [])
    ids.extend(item["productId"] for item in data.get("bundleProducts") or [])
    if data.get("bogoProductId"):
        ids.append(data["bogoProductId"])
    return ids


@app.get("/health")
def health_check():
    return {"status": "ok"}


# ---------------------------
# Products
# ---------------------------

@app.post("/products", response_model=Product, status_code=201)
def create_product(product: Product):
    return CATALOG.add(product)


@app.get("/products/{product_id}", response_model=Product)
def get_product(product_id: str):
    product = CATALOG.get_product(product_id)
    if product is None:
        raise HTTPException(status_code=404, detail="Product not found")
    return product


# ---------------------------
# Offers
# ---------------------------

@app.post("/offers", status_code=201)
def create_offer(payload: Dict[str, Any] = Body(...)):
    try:
        offer = parse_offer(payload)
    except ValidationError as exc:
        raise _unprocessable(exc)

    _check_products_exist(_offer_product_ids(offer.model_dump()))
    logger.info("Created %s offer %s", offer.offerType, offer.id)
    return OFFERS_DB.add(offer)


@app.get("/offers")
def list_offers(
    offerType: Optional[str] = None,
    isActive: Optional[bool] = None,
    category: Optional[str] = None,
    productId: Optional[str] = None,
):
    return OFFERS_DB.list_offers(offer_type=offerType, is_active=isActive, category=category, product_id=productId)


@app.get("/offers/active")
def active_offers():
    return rank_offers(OFFERS_DB.get_active_offers(utcnow()))


@app.post("/offers/apply", response_model=OfferApplicationResult)
def apply_offers(payload: ApplyOffersRequest):
    return engine.apply_offers(payload.items, compute_subtotal(payload.items))


@app.get("/offers/{offer_id}")
def get_offer(offer_id: str):
    offer = OFFERS_DB.get(offer_id)
    if offer is None:
        raise HTTPException(status_code=404, detail="Offer not found")
    return offer


@app.patch("/offers/{offer_id}")
def update_offer(offer_id: str, changes: Dict[str, Any] = Body(...)):
    offer = OFFERS_DB.get(offer_id)
    if offer is None:
        raise HTTPException(status_code=404, detail="Offer not found")
    if changes.get("offerType", offer.offerType) != offer.offerType:
        raise HTTPException(status_code=400, detail="Offer type cannot be changed")

    editable = {k: v for k, v in changes.items() if k not in OFFERS_DB.PROTECTED_FIELDS}
    try:
        preview = parse_offer({**offer.model_dump(), **editable})
    except ValidationError as exc:
        raise _unprocessable(exc)
    _check_products_exist(_offer_product_ids(preview.model_dump()))

    updated = OFFERS_DB.update_fields(offer_id, editable)
    if updated is None:
        raise HTTPException(status_code=404, detail="Offer not found")
    return updated


@app.delete("/offers/{offer_id}", status_code=204)
def delete_offer(offer_id: str):
    if not OFFERS_DB.delete(offer_id):
        raise HTTPException(status_code=404, detail="Offer not found")


# ---------------------------
# Coupons
# ---------------------------

@app.post("/coupons", response_model=Coupon, status_code=201)
def create_coupon(coupon: Coupon):
    if coupon.applicableTo == "product":
        _check_products_exist(coupon.applicableProducts)
    coupon = coupon.model_copy(update={"usageCount": 0, "usageHistory": []})
    logger.info("Created coupon %s", coupon.code)
    return COUPONS_DB.add(coupon)


@app.get("/coupons", response_model=List[Coupon])
def list_coupons(isActive: Optional[bool] = None):
    return COUPONS_DB.list_coupons(is_active=isActive)


@app.get("/coupons/code/{code}", response_model=Coupon)
def get_coupon_by_code(code: str):
    coupon = COUPONS_DB.get_by_code(code)
    if coupon is None:
        raise HTTPException(status_code=404, detail="Coupon not found")
    return coupon


@app.post("/coupons/validate", response_model=CouponValidationResult)
def validate_coupon(payload: ValidateCouponRequest):
    total = payload.totalAmount if payload.totalAmount is not None else compute_subtotal(payload.items)
    return engine.validate_coupon(payload.code, payload.userId, payload.items, total)


@app.post("/coupons/{code}/redeem", response_model=Coupon)
def redeem_coupon(code: str, payload: RedeemCouponRequest):
    return engine.redeem_coupon(code, payload.userId, payload.orderId)


@app.patch("/coupons/{code}", response_model=Coupon)
def update_coupon(code: str, changes: Dict[str, Any] = Body(...)):
    coupon = COUPONS_DB.get_by_code(code)
    if coupon is None:
        raise HTTPException(status_code=404, detail="Coupon not found")

    editable = {k: v for k, v in changes.items() if k not in COUPONS_DB.PROTECTED_FIELDS}
    try:
        preview = Coupon.model_validate({**coupon.model_dump(), **editable})
    except ValidationError as exc:
        raise _unprocessable(exc)
    if preview.applicableTo == "product":
        _check_products_exist(preview.applicableProducts)

    # usage counters are re-read from the store at write time
    updated = COUPONS_DB.update_fields(code, editable)
    if updated is None:
        raise HTTPException(status_code=404, detail="Coupon not found")
    return updated


@app.delete("/coupons/{code}", status_code=204)
def delete_coupon(code: str):
    if not COUPONS_DB.delete(code):
        raise HTTPException(status_code=404, detail="Coupon not found")


# ---------------------------
# Pricing & Cart
# ---------------------------

@app.post("/pricing/cart", response_model=CartPricingResult)
def price_cart(payload: PriceCartRequest):
    return engine.price_cart(payload.items, payload.couponCode, payload.userId)


def _cart_response(user_id: str) -> CartResponse:
    cart, pricing = cart_service.get_cart_pricing(user_id)
    return CartResponse(cart=cart, pricing=pricing)


@app.get("/cart/{user_id}", response_model=CartResponse)
def get_cart(user_id: str):
    return _cart_response(user_id)


@app.post("/cart/{user_id}/items", response_model=CartResponse)
def add_to_cart(user_id: str, payload: AddToCartRequest):
    cart_service.add_item(user_id, payload.productId, payload.quantity)
    return _cart_response(user_id)


@app.patch("/cart/{user_id}/items/{product_id}", response_model=CartResponse)
def update_cart_item(user_id: str, product_id: str, payload: UpdateCartItemRequest):
    cart_service.update_item(user_id, product_id, payload.quantity)
    return _cart_response(user_id)


@app.delete("/cart/{user_id}/items/{product_id}", response_model=CartResponse)
def remove_from_cart(user_id: str, product_id: str):
    cart_service.remove_item(user_id, product_id)
    return _cart_response(user_id)


@app.delete("/cart/{user_id}", response_model=CartResponse)
def clear_cart(user_id: str):
    cart_service.clear_cart(user_id)
    return _cart_response(user_id)


@app.post("/cart/{user_id}/coupon", response_model=CartResponse)
def apply_coupon(user_id: str, payload: ApplyCouponRequest):
    cart_service.apply_coupon(user_id, payload.code)
    return _cart_response(user_id)


@app.delete("/cart/{user_id}/coupon", response_model=CartResponse)
def remove_coupon(user_id: str):
    cart_service.remove_coupon(user_id)
    return _cart_response(user_id)


@app.post("/cart/{user_id}/checkout", response_model=CartPricingResult)
def checkout(user_id: str, payload: CheckoutRequest):
    return cart_service.checkout(user_id, payload.orderId)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "cart_pricing.main:app",
        host=config.HOST,
        port=config.PORT,
        reload=False,
    )
