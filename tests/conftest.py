from datetime import datetime, timedelta, timezone

import pytest

from cart_pricing.cart import CartService
from cart_pricing.models import CartLine, Coupon, Product, parse_offer
from cart_pricing.pricing import PricingEngine
from cart_pricing.storage import CartRepository, CouponRepository, OfferRepository, ProductCatalog

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def catalog():
    catalog = ProductCatalog()
    catalog.add(Product(id="laptop", title="Dev Laptop", price=10000, category="Electronics", stock=10))
    catalog.add(Product(id="shirt", title="Cotton T-Shirt", price=5000, category="Clothing", stock=10))
    catalog.add(Product(id="cable", title="USB Cable", price=2000, category="Electronics", stock=10))
    return catalog


@pytest.fixture
def offers():
    return OfferRepository()


@pytest.fixture
def coupons():
    return CouponRepository()


@pytest.fixture
def engine(catalog, offers, coupons):
    return PricingEngine(catalog, offers, coupons)


@pytest.fixture
def cart_service(engine):
    return CartService(engine, CartRepository())


@pytest.fixture
def make_offer(offers):
    """Builds an offer valid around NOW and stores it."""
    def _make(offer_type, **fields):
        data = {
            "title": f"{offer_type} offer",
            "offerType": offer_type,
            "validFrom": NOW - timedelta(days=30),
            "validUntil": NOW + timedelta(days=30),
        }
        data.update(fields)
        return offers.add(parse_offer(data))
    return _make


@pytest.fixture
def make_coupon(coupons):
    def _make(code="SAVE20", **fields):
        data = {
            "code": code,
            "discountType": "percentage",
            "discountValue": 20,
            "validFrom": NOW - timedelta(days=30),
            "validUntil": NOW + timedelta(days=30),
        }
        data.update(fields)
        return coupons.add(Coupon(**data))
    return _make


@pytest.fixture
def line():
    def _line(product_id, quantity, unit_price, category=None):
        return CartLine(productId=product_id, quantity=quantity, unitPrice=unit_price, category=category)
    return _line
