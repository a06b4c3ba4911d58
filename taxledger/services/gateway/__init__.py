"""Payment gateway package."""

from taxledger.services.gateway.paystack import (
    PaymentGatewayInterface,
    PaystackGateway,
    parse_verify_data,
)

__all__ = ["PaymentGatewayInterface", "PaystackGateway", "parse_verify_data"]
