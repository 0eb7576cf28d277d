# Payment gateways
#
# Each gateway authenticates its own inbound events and maps them to the
# shared SubscriptionGrant / GiftPurchase instructions:
# - stripe:    hosted card checkout, SDK signature verification
# - cryptopay: crypto invoices, HMAC keyed by SHA256(api token)
# - tribute:   external channel subscriptions, HMAC keyed by the API key

from .base import PaymentGateway, VerifiedEvent, CheckoutSession
from .stripe_gateway import StripeGateway
from .crypto_pay import CryptoPayGateway
from .tribute import TributeGateway, period_to_days

__all__ = [
    'PaymentGateway',
    'VerifiedEvent',
    'CheckoutSession',
    'StripeGateway',
    'CryptoPayGateway',
    'TributeGateway',
    'period_to_days',
]
