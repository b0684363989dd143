"""External integrations: Stripe gateway and webhook handling."""
from .stripe_client import CircuitBreaker, GatewayIntent, LineItem, StripeGateway

__all__ = ["CircuitBreaker", "GatewayIntent", "LineItem", "StripeGateway"]
