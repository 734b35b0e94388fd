import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional

from parking_settlement.errors import TariffNotFound
from parking_settlement.models import BillingUnit, as_utc
from parking_settlement.tariffs import (
    CENTS, ZERO, FeeBasis, FeeBreakdown, billable_units, compute_fee, resolve_tariff
)

logger = logging.getLogger(__name__)


@dataclass
class ExitAmount:
    amount: Decimal
    basis: FeeBasis
    breakdown: Optional[FeeBreakdown] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def needs_review(self):
        return bool(self.warnings) or bool(self.breakdown and self.breakdown.needs_review)


class ReservationOverstayAdjuster:
    """Bills only the time a vehicle stays past its reservation window."""

    def __init__(self, fallback_hourly_rate: Decimal):
        self.fallback_hourly_rate = Decimal(fallback_hourly_rate)

    def compute_exit_amount(self, session, reservation, now: datetime, rules=(),
                            template_id: Optional[int] = None) -> ExitAmount:
        return self._bill_past(
            session, as_utc(reservation.window_end), f"reservation {reservation.code}", now, rules, template_id
        )

    def compute_past_deadline(self, session, now: datetime, rules=(),
                              template_id: Optional[int] = None) -> ExitAmount:
        """Same billing against the session's own deadline, for sessions whose booking row is gone."""
        return self._bill_past(
            session, as_utc(session.deadline), f"deadline of session {session.id}", now, rules, template_id
        )

    def _bill_past(self, session, window_end, label, now, rules, template_id):
        now = as_utc(now)

        if now <= window_end:
            logger.info(f"Session {session.id} exits inside {label} window; nothing owed")
            return ExitAmount(amount=ZERO, basis=FeeBasis.WITHIN_WINDOW)

        excess = now - window_end
        try:
            rule = resolve_tariff(rules, session.vehicle_category, BillingUnit.HOURLY, template_id)
        except TariffNotFound as e:
            units = billable_units(excess, timedelta(hours=1))
            amount = (self.fallback_hourly_rate * units).quantize(CENTS)
            logger.warning(
                f"{e}; billing {units}h overstay on {label} "
                f"at fallback rate {self.fallback_hourly_rate}"
            )
            breakdown = FeeBreakdown(
                fee=amount,
                computed_fee=amount,
                agreed_price=ZERO,
                units=units,
                unit_price=self.fallback_hourly_rate.quantize(CENTS),
                billing_unit=BillingUnit.HOURLY,
            )
            return ExitAmount(amount=amount, basis=FeeBasis.RESERVATION_OVERSTAY, breakdown=breakdown)

        # the prepaid reservation is not a floor for the excess
        breakdown = compute_fee(rule, excess)
        logger.info(
            f"Overstay past {label}: {excess}; {breakdown.units}h billed = {breakdown.fee}"
        )
        return ExitAmount(amount=breakdown.fee, basis=FeeBasis.RESERVATION_OVERSTAY, breakdown=breakdown)
