"""
Error taxonomy shared by checkout, webhook and refund flows, plus the
customer-facing messages they surface.

Business-rule failures are returned as typed results where the caller renders
them directly (refunds); checkout raises these exceptions and main.py turns
them into JSON error responses.
"""
from __future__ import annotations

from typing import Optional

# ── User-facing messages ─────────────────────────────────────────────────────

MSG_LOGIN_REQUIRED = "Faça login para continuar."
MSG_INVALID_ORDER = "Pedido inválido."
MSG_ORDER_NOT_FOUND = "Pedido não encontrado."
MSG_EMPTY_CART = "Carrinho vazio."
MSG_INVALID_CART = "Carrinho inválido."
MSG_INVALID_VARIANTS = "Variantes inválidas."
MSG_VARIANT_MISMATCH = "Variante não pertence ao tipo de ingresso informado."
MSG_SOLD_OUT = "Ingressos esgotados para o setor {sector}."
MSG_PAYMENTS_UNAVAILABLE = "Pagamentos indisponíveis no momento. Tente novamente mais tarde."
MSG_CHECKOUT_FAILED = "Não foi possível iniciar o pagamento. Tente novamente."
MSG_SESSION_WITHOUT_URL = "Sessão de checkout sem URL."

MSG_NOT_PAID = "Pedido não está pago."
MSG_EVENT_STARTED = "O evento já ocorreu ou está em andamento."
MSG_DISPUTED = "O pagamento está em disputa no cartão; reembolso automático é bloqueado."
MSG_DISPUTED_AT_REFUND = "O pagamento está em disputa; não é possível reembolsar automaticamente."
MSG_REFUND_FAILED = "Falha ao processar reembolso. Tente novamente."
MSG_FINALIZE_FAILED = "Falha ao finalizar reembolso."
MSG_REFUNDED_CONTACT_SUPPORT = (
    "O valor foi estornado no cartão, mas ocorreu uma falha ao registrar no "
    "sistema. Contate o suporte com o número do pedido."
)


class BoxOfficeError(Exception):
    """Base class; ``message`` is safe to show to the customer."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class CartValidationError(BoxOfficeError):
    """Malformed cart, unknown/mismatched variant, empty cart, sold out."""


class AuthError(BoxOfficeError):
    """No authenticated session."""


class OrderNotFoundError(BoxOfficeError):
    """Order missing or owned by someone else (never distinguished)."""


# ── Payment provider ─────────────────────────────────────────────────────────

class PaymentProviderError(BoxOfficeError):
    def __init__(self, message: str, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.code = code


class ProviderUnavailableError(PaymentProviderError):
    """No provider credentials configured."""


class ProviderDisputeError(PaymentProviderError):
    """The charge is under dispute; refunds must not be attempted or recorded."""


class ProviderAlreadyProcessed(PaymentProviderError):
    """The provider already refunded the charge – finalize locally."""


class ProviderTransientError(PaymentProviderError):
    """Any other provider failure; safe to retry."""


_DISPUTE_CODES = frozenset({"charge_disputed"})
_ALREADY_PROCESSED_CODES = frozenset({"charge_already_refunded", "refund_already_exists"})


def classify_provider_code(code: Optional[str]) -> type[PaymentProviderError]:
    """Map a provider error code onto the taxonomy above."""
    if code in _DISPUTE_CODES:
        return ProviderDisputeError
    if code in _ALREADY_PROCESSED_CODES:
        return ProviderAlreadyProcessed
    return ProviderTransientError
