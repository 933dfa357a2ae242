"""Routes raw webhook deliveries to the component that owns the provider."""

from collections.abc import Mapping

from clinicpay.common.errors import NotFoundError
from clinicpay.services.orchestrator.service import PaymentOrchestrator
from clinicpay.services.webhooks.instagram import PROVIDER as INSTAGRAM
from clinicpay.services.webhooks.instagram import InstagramIngress
from clinicpay.services.webhooks.results import ApplyResult, status_code_for

__all__ = ["WebhookDispatcher", "status_code_for"]


class WebhookDispatcher:
    """Payment providers go to the orchestrator; Instagram to its ingress."""

    def __init__(
        self,
        orchestrator: PaymentOrchestrator,
        instagram: InstagramIngress,
        payment_providers: set[str] | None = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.instagram = instagram
        self.payment_providers = set(payment_providers or orchestrator.providers)

    def dispatch(
        self, provider: str, raw_body: bytes, headers: Mapping[str, str], correlation_id: str
    ) -> ApplyResult:
        provider = provider.lower()
        if provider == INSTAGRAM:
            return self.instagram.handle(raw_body, headers, correlation_id)
        if provider in self.payment_providers:
            return self.orchestrator.apply_payment_event(provider, raw_body, headers, correlation_id)
        raise NotFoundError(f"Unknown webhook provider {provider}")
