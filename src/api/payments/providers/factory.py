from typing import Dict, Union

from src.api.payments.providers.base import BasePaymentProvider
from src.api.payments.providers.bkash import BkashProvider
from src.api.payments.providers.nagad import NagadProvider
from src.config.constants import Gateway


class PaymentFactory:
    _providers: Dict[Gateway, BasePaymentProvider] = {}

    @classmethod
    def get_provider(cls, gateway: Union[Gateway, str]) -> BasePaymentProvider:
        gateway = resolve_gateway(gateway)
        if gateway not in cls._providers:
            if gateway == Gateway.BKASH:
                cls._providers[gateway] = BkashProvider()
            elif gateway == Gateway.NAGAD:
                cls._providers[gateway] = NagadProvider()

        return cls._providers[gateway]

    @classmethod
    def register(cls, gateway: Gateway, provider: BasePaymentProvider) -> None:
        cls._providers[gateway] = provider

    @classmethod
    def reset(cls) -> None:
        cls._providers.clear()


def resolve_gateway(value: Union[Gateway, str]) -> Gateway:
    """Accept enum members, stored values ("NAGAD_AUTO") or URL slugs ("nagad")."""
    if isinstance(value, Gateway):
        return value
    normalized = str(value).strip().upper()
    for gateway in Gateway:
        if normalized in (gateway.value, gateway.name):
            return gateway
    raise ValueError(f"Unknown payment gateway: {value}")


def gateway_slug(gateway: Gateway) -> str:
    """URL form of a gateway ("bkash", "nagad")."""
    return gateway.name.lower()
