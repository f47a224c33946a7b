from .base_handler import BaseSubscriptionHandler
from .checkout_handler import CheckoutHandler
from .payment_handler import PaymentHandler
from .subscription_handler import SubscriptionHandler

__all__ = ["BaseSubscriptionHandler", "CheckoutHandler", "PaymentHandler", "SubscriptionHandler"]
