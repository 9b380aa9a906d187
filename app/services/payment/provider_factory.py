# app/services/payment/provider_factory.py
import logging
from typing import List, Optional

import stripe

from app.core.config import settings
from .provider_interface import PaymentProviderInterface, TicketLedger
from .providers.paypal_client import PayPalClient
from .providers.paypal_provider import PayPalConfig, PayPalProvider
from .providers.stripe_provider import StripeConfig, StripeProvider, build_stripe_client

logger = logging.getLogger(__name__)


class PaymentProviderFactory:
    """
    Factory for payment provider adapters.

    Holds one config and one API client per configured provider. Adapters
    are cheap and are built per unit of work, bound to the ledger that will
    receive their confirmations.
    """

    def __init__(
        self,
        stripe_config: Optional[StripeConfig] = None,
        paypal_config: Optional[PayPalConfig] = None,
        stripe_client: Optional[stripe.StripeClient] = None,
        paypal_client: Optional[PayPalClient] = None,
    ):
        self.stripe_config = stripe_config
        self.paypal_config = paypal_config
        self._stripe_client = stripe_client
        self._paypal_client = paypal_client

        if stripe_config and self._stripe_client is None:
            self._stripe_client = build_stripe_client(stripe_config)
        if paypal_config and self._paypal_client is None:
            self._paypal_client = PayPalClient(
                paypal_config.client_id,
                paypal_config.secret,
                paypal_config.api_base,
            )

    @classmethod
    def from_settings(cls, config=settings) -> "PaymentProviderFactory":
        """Build the factory from environment configuration."""
        stripe_config = None
        if config.STRIPE_SECRET_KEY and config.STRIPE_WEBHOOK_SECRET:
            stripe_config = StripeConfig(
                secret_key=config.STRIPE_SECRET_KEY,
                webhook_secret=config.STRIPE_WEBHOOK_SECRET,
                success_url=config.STRIPE_SUCCESS_URL,
                cancel_url=config.STRIPE_CANCEL_URL,
                currency=config.CURRENCY,
                payment_methods=list(config.STRIPE_PAYMENT_METHODS),
                max_retries=config.STRIPE_MAX_NETWORK_RETRIES,
            )
            logger.info("Stripe payment provider initialized")
        else:
            logger.warning("Stripe provider not initialized: missing environment variables")

        paypal_config = None
        if config.PAYPAL_ENABLED and config.PAYPAL_CLIENT_ID and config.PAYPAL_SECRET:
            paypal_config = PayPalConfig(
                client_id=config.PAYPAL_CLIENT_ID,
                secret=config.PAYPAL_SECRET,
                api_base=config.PAYPAL_API_BASE,
                success_url=config.PAYPAL_SUCCESS_URL,
                cancel_url=config.PAYPAL_CANCEL_URL,
                currency=config.CURRENCY,
                brand_name=config.PAYPAL_BRAND_NAME,
                webhook_id=config.PAYPAL_WEBHOOK_ID,
            )
            logger.info(f"PayPal payment provider initialized ({config.PAYPAL_MODE})")
        elif config.PAYPAL_ENABLED:
            logger.warning("PayPal enabled but PAYPAL_CLIENT_ID/PAYPAL_SECRET are missing")

        return cls(stripe_config=stripe_config, paypal_config=paypal_config)

    @property
    def paypal_client(self) -> Optional[PayPalClient]:
        return self._paypal_client

    def is_provider_available(self, code: str) -> bool:
        if code == "stripe":
            return self.stripe_config is not None
        if code == "paypal":
            return self.paypal_config is not None
        return False

    def list_available_providers(self) -> List[str]:
        return [code for code in ("stripe", "paypal") if self.is_provider_available(code)]

    def get_provider(self, code: str, ledger: TicketLedger) -> PaymentProviderInterface:
        """
        Get a payment provider adapter bound to ``ledger``.

        Raises:
            ValueError: If provider is not available
        """
        if code == "stripe" and self.stripe_config:
            return StripeProvider(self.stripe_config, ledger, self._stripe_client)
        if code == "paypal" and self.paypal_config:
            return PayPalProvider(self.paypal_config, ledger, self._paypal_client)
        raise ValueError(f"Payment provider '{code}' is not available")


# Global factory instance (singleton pattern)
_factory_instance: Optional[PaymentProviderFactory] = None


def get_payment_provider_factory() -> PaymentProviderFactory:
    """Get the global payment provider factory instance."""
    global _factory_instance
    if _factory_instance is None:
        _factory_instance = PaymentProviderFactory.from_settings()
    return _factory_instance
