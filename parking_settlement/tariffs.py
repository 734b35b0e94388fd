"""
Tariff resolution and fee calculation.

Resolution picks one rule out of a parking's catalog; calculation turns that
rule and an elapsed duration into an amount. Both are pure: the catalog is
handed in, usually through ``TariffCatalogCache``.
"""
import enum
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Awaitable, Dict, Iterable, List, Optional, Tuple

from parking_settlement.errors import TariffNotFound
from parking_settlement.models import BillingUnit, as_utc

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")
ZERO = Decimal("0.00")

# monthly is a fixed 30-day unit, not a calendar month
UNIT_LENGTHS = {
    BillingUnit.HOURLY: timedelta(hours=1),
    BillingUnit.DAILY: timedelta(hours=24),
    BillingUnit.WEEKLY: timedelta(hours=24 * 7),
    BillingUnit.MONTHLY: timedelta(hours=24 * 30),
}

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class FeeBasis(str, enum.Enum):
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    RESERVATION_OVERSTAY = "reservation_overstay"
    WITHIN_WINDOW = "within_window"
    EXEMPT = "exempt"


@dataclass(frozen=True)
class TariffRuleView:
    """Detached copy of a tariff row, safe to keep in a cache."""

    id: int
    template_id: Optional[int]
    vehicle_category: str
    billing_unit: BillingUnit
    base_price: Decimal
    incremental_price: Decimal = ZERO
    effective_from: Optional[datetime] = None

    @classmethod
    def from_row(cls, row):
        return cls(
            id=row.id,
            template_id=row.template_id,
            vehicle_category=row.vehicle_category,
            billing_unit=BillingUnit(row.billing_unit),
            base_price=Decimal(row.base_price),
            incremental_price=Decimal(row.incremental_price or 0),
            effective_from=as_utc(row.effective_from),
        )


@dataclass
class FeeBreakdown:
    fee: Decimal
    computed_fee: Decimal
    agreed_price: Decimal
    units: int
    unit_price: Decimal
    billing_unit: BillingUnit
    rule_id: Optional[int] = None
    needs_review: bool = False


def _precedence(rule):
    effective = as_utc(rule.effective_from) or _EPOCH
    return (-effective.timestamp(), rule.id)


def resolve_tariff(rules: Iterable, category: str, billing_unit: BillingUnit,
                   template_id: Optional[int] = None):
    """
    Pick the rule for a vehicle category and billing unit.

    A rule owned by the spot's template wins over the category fallback. Among
    candidates of equal specificity the latest effective rule wins, then the
    lowest id. Nothing is substituted when no rule matches.
    """
    candidates = [r for r in rules if BillingUnit(r.billing_unit) == billing_unit]

    if template_id is not None:
        exact = [r for r in candidates if r.template_id == template_id]
        if exact:
            return min(exact, key=_precedence)

    by_category = [r for r in candidates if r.vehicle_category == category]
    if by_category:
        # generic rules (no template) before another template's rule
        return min(by_category, key=lambda r: (r.template_id is not None,) + _precedence(r))

    raise TariffNotFound(category, billing_unit, template_id)


def billable_units(elapsed: timedelta, unit_length: timedelta) -> int:
    if elapsed < timedelta(0):
        elapsed = timedelta(0)
    return max(1, -(-elapsed // unit_length))


def compute_fee(rule, elapsed: timedelta, agreed_price: Optional[Decimal] = None) -> FeeBreakdown:
    """
    Price ``elapsed`` under ``rule``.

    Every unit bills at least once. Hourly charges the base price for the
    first hour and the incremental price for each hour after it; the other
    units multiply the base price. ``agreed_price`` is a floor.
    """
    unit = BillingUnit(rule.billing_unit)
    if unit not in UNIT_LENGTHS:
        raise ValueError(f"{unit.value} is not a time-priced billing unit")

    units = billable_units(elapsed, UNIT_LENGTHS[unit])
    base = Decimal(rule.base_price)

    if unit == BillingUnit.HOURLY:
        increment = Decimal(rule.incremental_price or 0)
        computed = base if units == 1 else base + increment * (units - 1)
    else:
        computed = base * units
    computed = computed.quantize(CENTS)

    agreed = Decimal(agreed_price or 0).quantize(CENTS)
    fee = max(computed, agreed)

    breakdown = FeeBreakdown(
        fee=fee,
        computed_fee=computed,
        agreed_price=agreed,
        units=units,
        unit_price=base.quantize(CENTS),
        billing_unit=unit,
        rule_id=getattr(rule, "id", None),
    )
    if fee == ZERO:
        breakdown.needs_review = True
        logger.warning(f"Zero fee computed from tariff {breakdown.rule_id} with no agreed price; flag for review")

    return breakdown


class TariffCatalogCache:
    """
    Read-through cache of tariff catalogs keyed by parking id.

    The owner decides the TTL; a TTL of zero disables caching.
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[int, Tuple[float, List[TariffRuleView]]] = {}

    async def get(self, parking_id: int, loader: Callable[[], Awaitable[List[TariffRuleView]]]):
        now = self._clock()
        cached = self._entries.get(parking_id)
        if cached and now - cached[0] < self.ttl_seconds:
            return cached[1]

        rules = await loader()
        self._entries[parking_id] = (now, rules)
        logger.info(f"Loaded {len(rules)} tariff rules for parking {parking_id}")
        return rules

    def invalidate(self, parking_id: Optional[int] = None):
        if parking_id is None:
            self._entries.clear()
        else:
            self._entries.pop(parking_id, None)
