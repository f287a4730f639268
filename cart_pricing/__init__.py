from .cart import CartService
from .pricing import PricingEngine

__all__ = ["CartService", "PricingEngine"]
