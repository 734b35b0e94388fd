class SettlementServiceError(Exception):
    """Base class for errors raised by the settlement service."""


class SessionNotFound(SettlementServiceError):
    pass


class AttemptNotFound(SettlementServiceError):
    pass


class TariffNotFound(SettlementServiceError):
    """No tariff rule matches; callers pick their own fallback."""

    def __init__(self, category, billing_unit, template_id=None):
        self.category = category
        self.billing_unit = billing_unit
        self.template_id = template_id
        super().__init__(
            f"No tariff for category={category} unit={getattr(billing_unit, 'value', billing_unit)} "
            f"template={template_id}"
        )


class InvalidTransition(SettlementServiceError):
    def __init__(self, current, action):
        self.current = current
        self.action = action
        super().__init__(f"Cannot {action} while attempt is {getattr(current, 'value', current)}")


class ProviderError(SettlementServiceError):
    """The payment provider could not create or report on a reference."""


class SettlementError(SettlementServiceError):
    """Writing the settlement or closing the session failed; nothing was released."""
