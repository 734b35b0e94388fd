"""
Exit state machine.

One exit attempt moves through::

    fee_computed -> method_selected -> awaiting_external_confirmation | ready_to_settle
                 -> settled | aborted

Sessions covered by a subscription, or leaving inside their reservation
window, close directly without an attempt. The fee is computed once per
attempt and reused when the operator switches methods.
"""
import asyncio
import logging
import weakref
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from parking_settlement import crud
from parking_settlement.config import SettlementServiceCFG
from parking_settlement.errors import (
    AttemptNotFound, InvalidTransition, ProviderError, SessionNotFound, TariffNotFound
)
from parking_settlement.models import (
    AttemptStatus, BillingUnit, PaymentMethod, as_utc, utcnow
)
from parking_settlement.overstay import ExitAmount, ReservationOverstayAdjuster
from parking_settlement.services import ProviderStatus
from parking_settlement.settlement import SettlementCommitter
from parking_settlement.tariffs import (
    UNIT_LENGTHS, ZERO, FeeBasis, TariffCatalogCache, TariffRuleView, compute_fee, resolve_tariff
)

logger = logging.getLogger(__name__)
integrity_logger = logging.getLogger("parking_settlement.integrity")

TERMINAL_STATES = (AttemptStatus.SETTLED, AttemptStatus.ABORTED)


class RetryPolicy:
    """Bounded retries for provider calls; only ``ProviderError`` is retried."""

    def __init__(self, max_attempts: int = 3, delay_seconds: float = 0.0):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.delay_seconds = delay_seconds

    async def run(self, operation, *args):
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await operation(*args)
            except ProviderError as e:
                logger.warning(f"Provider call failed ({attempt}/{self.max_attempts}): {e}")
                if attempt == self.max_attempts:
                    raise
                if self.delay_seconds:
                    await asyncio.sleep(self.delay_seconds)


@dataclass
class ExitQuote:
    session_id: int
    license_plate: str
    amount: Decimal
    basis: FeeBasis
    status: AttemptStatus
    attempt_id: Optional[int] = None
    units: Optional[int] = None
    unit_price: Optional[Decimal] = None
    agreed_price: Optional[Decimal] = None
    needs_review: bool = False
    warnings: List[str] = field(default_factory=list)
    resumed: bool = False


@dataclass
class AttemptResult:
    session_id: int
    attempt_id: int
    status: AttemptStatus
    amount: Decimal
    basis: str
    method: Optional[PaymentMethod] = None
    external_reference: Optional[str] = None
    checkout_url: Optional[str] = None
    qr_data: Optional[str] = None
    expires_at: Optional[datetime] = None
    transfer_details: Optional[dict] = None
    settlement_id: Optional[int] = None


class ExitOrchestrator:

    def __init__(self, gateway, tariff_cache: TariffCatalogCache, adjuster: ReservationOverstayAdjuster,
                 committer: SettlementCommitter = None, retry_policy: RetryPolicy = None,
                 config: SettlementServiceCFG = None, clock: Callable[[], datetime] = utcnow):
        self.gateway = gateway
        self.tariff_cache = tariff_cache
        self.adjuster = adjuster
        self.committer = committer or SettlementCommitter()
        self.retry_policy = retry_policy or RetryPolicy()
        self.config = config or SettlementServiceCFG()
        self.clock = clock
        self._locks = weakref.WeakValueDictionary()

    @classmethod
    def from_config(cls, config: SettlementServiceCFG, gateway):
        return cls(
            gateway=gateway,
            tariff_cache=TariffCatalogCache(config.tariff_cache_ttl_seconds),
            adjuster=ReservationOverstayAdjuster(config.overstay_fallback_hourly_rate),
            retry_policy=RetryPolicy(config.provider_max_attempts, config.provider_retry_delay),
            config=config,
        )

    def _lock_for(self, session_id):
        # entries drop out once no caller holds or waits on the lock
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    # -- exposed operations -------------------------------------------------

    async def initiate_exit(self, db: AsyncSession, plate_number: str, spot_id: int = None,
                            supersede: bool = False) -> ExitQuote:
        session = await crud.get_open_session(db, plate_number, spot_id)
        if session is None:
            raise SessionNotFound(f"No open session for plate {plate_number}")

        async with self._lock_for(session.id):
            now = self.clock()
            live = await crud.get_live_attempt(db, session.id)
            if live is not None:
                live = await self._expire_if_due(db, live, now)
            if live is not None:
                if not supersede:
                    logger.info(f"Resuming attempt {live.id} for session {session.id}")
                    return self._quote_from_attempt(session, live)
                await self._abort(db, live, "superseded by a new exit attempt")

            exit_amount = await self._compute_exit_amount(db, session, now)

            if exit_amount.basis in (FeeBasis.EXEMPT, FeeBasis.WITHIN_WINDOW):
                await self.committer.close_without_payment(db, session.id, now)
                logger.info(f"Session {session.id} closed with no charge ({exit_amount.basis.value})")
                return self._quote(session, exit_amount, AttemptStatus.SETTLED)

            attempt = await crud.create_attempt(db, session.id, exit_amount.amount, exit_amount.basis.value)
            logger.info(
                f"Exit attempt {attempt.id} for {plate_number}: {exit_amount.amount} ({exit_amount.basis.value})"
            )
            return self._quote(session, exit_amount, attempt.status, attempt.id)

    async def select_payment_method(self, db: AsyncSession, session_id: int, method) -> AttemptResult:
        method = PaymentMethod(method)

        async with self._lock_for(session_id):
            attempt = await self._live_attempt(db, session_id)
            if attempt.status not in (
                AttemptStatus.FEE_COMPUTED,
                AttemptStatus.METHOD_SELECTED,
                AttemptStatus.AWAITING_EXTERNAL_CONFIRMATION,
            ):
                raise InvalidTransition(attempt.status, f"select {method.value}")

            if attempt.external_reference:
                await self._release_reference(attempt.external_reference)
                attempt = await crud.update_attempt(db, attempt, external_reference=None, expires_at=None)

            attempt = await crud.update_attempt(
                db, attempt, method=method, status=AttemptStatus.METHOD_SELECTED
            )
            logger.info(f"Attempt {attempt.id}: {method.value} selected for {attempt.amount}")

            if method == PaymentMethod.CASH:
                attempt = await crud.update_attempt(db, attempt, status=AttemptStatus.READY_TO_SETTLE)
                return await self._settle(db, attempt)
            elif method == PaymentMethod.TRANSFER:
                result = self._result(attempt)
                result.transfer_details = self.config.transfer_details()
                return result
            elif method in (PaymentMethod.QR, PaymentMethod.LINK):
                return await self._request_external_reference(db, attempt, method)
            else:
                raise ValueError(f"Unhandled payment method {method}")

    async def confirm_transfer(self, db: AsyncSession, session_id: int) -> AttemptResult:
        async with self._lock_for(session_id):
            attempt = await self._live_attempt(db, session_id)
            if attempt.method != PaymentMethod.TRANSFER or attempt.status not in (
                AttemptStatus.METHOD_SELECTED, AttemptStatus.READY_TO_SETTLE
            ):
                raise InvalidTransition(attempt.status, "confirm a transfer")

            logger.info(f"Transfer for attempt {attempt.id} confirmed by operator")
            attempt = await crud.update_attempt(db, attempt, status=AttemptStatus.READY_TO_SETTLE)
            return await self._settle(db, attempt)

    async def mark_as_paid(self, db: AsyncSession, session_id: int) -> AttemptResult:
        """Operator override for a qr/link payment seen outside the provider callback."""
        async with self._lock_for(session_id):
            attempt = await self._live_attempt(db, session_id)
            if attempt.method not in (PaymentMethod.QR, PaymentMethod.LINK) or attempt.status not in (
                AttemptStatus.AWAITING_EXTERNAL_CONFIRMATION, AttemptStatus.READY_TO_SETTLE
            ):
                raise InvalidTransition(attempt.status, "mark as paid")

            logger.info(f"Attempt {attempt.id} marked as paid by operator")
            attempt = await crud.update_attempt(db, attempt, status=AttemptStatus.READY_TO_SETTLE)
            return await self._settle(db, attempt)

    async def retry_settlement(self, db: AsyncSession, session_id: int) -> AttemptResult:
        async with self._lock_for(session_id):
            attempt = await self._live_attempt(db, session_id)
            if attempt.status != AttemptStatus.READY_TO_SETTLE:
                raise InvalidTransition(attempt.status, "retry settlement")
            return await self._settle(db, attempt)

    async def confirm_external_payment(self, db: AsyncSession, external_reference: str, outcome):
        outcome = ProviderStatus(outcome)
        attempt = await crud.get_attempt_by_reference(db, external_reference)
        if attempt is None:
            logger.warning(f"Confirmation for unknown reference {external_reference} ignored")
            return None

        async with self._lock_for(attempt.parking_session_id):
            await db.refresh(attempt)
            return await self._apply_outcome(db, attempt, outcome)

    async def poll_external_payment(self, db: AsyncSession, session_id: int) -> AttemptResult:
        async with self._lock_for(session_id):
            attempt = await self._live_attempt(db, session_id)
            if attempt.status != AttemptStatus.AWAITING_EXTERNAL_CONFIRMATION:
                raise InvalidTransition(attempt.status, "poll the provider")

            outcome = await self.gateway.poll_status(attempt.external_reference)
            return await self._apply_outcome(db, attempt, outcome)

    async def cancel_exit(self, db: AsyncSession, session_id: int):
        async with self._lock_for(session_id):
            attempt = await crud.get_live_attempt(db, session_id)
            if attempt is None:
                logger.info(f"No live exit attempt to cancel for session {session_id}")
                return None
            attempt = await self._abort(db, attempt, "cancelled by operator")
            return self._result(attempt)

    # -- fee computation ----------------------------------------------------

    async def _compute_exit_amount(self, db, session, now) -> ExitAmount:
        warnings = []
        template_id = None

        if session.spot_id is not None:
            template_id = await crud.get_template_for_spot(db, session.spot_id)
            subscription = await crud.find_active_subscription(
                db, session.license_plate, session.spot_id, now.date()
            )
            if subscription is not None:
                logger.info(f"{session.license_plate} covered by subscription {subscription.id}")
                return ExitAmount(amount=ZERO, basis=FeeBasis.EXEMPT)

        if session.billing_unit == BillingUnit.SUBSCRIPTION:
            integrity_logger.warning(
                f"Session {session.id} is billed by subscription but no active subscription "
                f"covers {session.license_plate} on spot {session.spot_id}; billing hourly"
            )
            warnings.append("subscription_missing")

        rules = await self.tariff_cache.get(
            session.parking_id, lambda: crud.get_tariff_rules(db, session.parking_id)
        )

        if session.billing_unit == BillingUnit.RESERVATION:
            reservation = await crud.find_reservation_for_session(
                db, session, timedelta(minutes=self.config.reservation_early_arrival_minutes)
            )
            if reservation is not None:
                if session.reservation_id is None:
                    await crud.link_reservation(db, session, reservation)
                return self.adjuster.compute_exit_amount(session, reservation, now, rules, template_id)

            warnings.append("reservation_missing")
            if session.deadline is not None:
                integrity_logger.warning(
                    f"Session {session.id} is billed by reservation but no reservation was found "
                    f"for {session.license_plate}; billing overstay past the session deadline"
                )
                exit_amount = self.adjuster.compute_past_deadline(session, now, rules, template_id)
                exit_amount.warnings.extend(warnings)
                return exit_amount
            integrity_logger.warning(
                f"Session {session.id} is billed by reservation but no reservation was found "
                f"for {session.license_plate}; billing hourly from entry"
            )

        unit = BillingUnit(session.billing_unit)
        if unit not in UNIT_LENGTHS:
            unit = BillingUnit.HOURLY

        try:
            rule = resolve_tariff(rules, session.vehicle_category, unit, template_id)
        except TariffNotFound as e:
            fallback_rate = self.adjuster.fallback_hourly_rate
            logger.warning(f"{e}; billing session {session.id} hourly at fallback rate {fallback_rate}")
            warnings.append("tariff_missing")
            unit = BillingUnit.HOURLY
            rule = TariffRuleView(
                id=None,
                template_id=None,
                vehicle_category=session.vehicle_category,
                billing_unit=unit,
                base_price=fallback_rate,
                incremental_price=fallback_rate,
            )

        breakdown = compute_fee(rule, now - as_utc(session.entry_timestamp), session.agreed_price)
        return ExitAmount(
            amount=breakdown.fee, basis=FeeBasis(unit.value), breakdown=breakdown, warnings=warnings
        )

    # -- transitions --------------------------------------------------------

    async def _request_external_reference(self, db, attempt, method):
        if attempt.amount < self.config.min_amount:
            raise ProviderError(f"Amount {attempt.amount} is below the provider minimum {self.config.min_amount}")
        if attempt.amount > self.config.max_amount:
            raise ProviderError(f"Amount {attempt.amount} exceeds the provider limit {self.config.max_amount}")

        session = await crud.get_session(db, attempt.parking_session_id)
        # on failure the attempt stays at method_selected with its amount
        reference = await self.retry_policy.run(
            self.gateway.create_qr_or_link, Decimal(attempt.amount), session.license_plate, method
        )

        timeout = self.config.qr_timeout_minutes if method == PaymentMethod.QR else self.config.link_timeout_minutes
        attempt = await crud.update_attempt(
            db,
            attempt,
            external_reference=reference.reference,
            expires_at=self.clock() + timedelta(minutes=timeout),
            status=AttemptStatus.AWAITING_EXTERNAL_CONFIRMATION,
        )
        result = self._result(attempt)
        result.checkout_url = reference.checkout_url
        result.qr_data = reference.qr_data
        return result

    async def _apply_outcome(self, db, attempt, outcome):
        if attempt.status in TERMINAL_STATES:
            if attempt.status == AttemptStatus.ABORTED and outcome == ProviderStatus.APPROVED:
                logger.warning(
                    f"Approved payment {attempt.external_reference} arrived for aborted attempt {attempt.id}; "
                    f"reconcile with the provider"
                )
            else:
                logger.info(f"Attempt {attempt.id} already {attempt.status.value}; {outcome.value} ignored")
            return self._result(attempt)

        if outcome == ProviderStatus.APPROVED:
            attempt = await crud.update_attempt(db, attempt, status=AttemptStatus.READY_TO_SETTLE)
            return await self._settle(db, attempt)
        elif outcome in (ProviderStatus.REJECTED, ProviderStatus.EXPIRED):
            attempt = await self._abort(db, attempt, f"provider reported {outcome.value}", notify_provider=False)
            return self._result(attempt)
        else:
            expired = await self._expire_if_due(db, attempt, self.clock())
            return self._result(expired or attempt)

    async def _settle(self, db, attempt):
        record = await self.committer.commit(
            db,
            attempt.parking_session_id,
            Decimal(attempt.amount),
            attempt.method,
            self.clock(),
            attempt_id=attempt.id,
            note=f"Exit settled via {attempt.method.value} ({attempt.basis})",
        )
        attempt = await crud.update_attempt(db, attempt, status=AttemptStatus.SETTLED)
        result = self._result(attempt)
        result.settlement_id = record.id
        return result

    async def _abort(self, db, attempt, reason, notify_provider=True):
        if notify_provider and attempt.external_reference:
            await self._release_reference(attempt.external_reference)
        logger.info(f"Attempt {attempt.id} aborted: {reason}")
        return await crud.update_attempt(db, attempt, status=AttemptStatus.ABORTED)

    async def _expire_if_due(self, db, attempt, now):
        """Returns None when the attempt was expired and aborted."""
        if attempt.status != AttemptStatus.AWAITING_EXTERNAL_CONFIRMATION or attempt.expires_at is None:
            return attempt
        if now <= as_utc(attempt.expires_at):
            return attempt
        await self._abort(db, attempt, "payment reference expired")
        return None

    async def _release_reference(self, external_reference):
        try:
            await self.gateway.cancel(external_reference)
        except ProviderError as e:
            logger.warning(f"Reference {external_reference} could not be cancelled at the provider: {e}")

    async def _live_attempt(self, db, session_id):
        attempt = await crud.get_live_attempt(db, session_id)
        if attempt is None:
            raise AttemptNotFound(f"No live exit attempt for session {session_id}")
        return attempt

    # -- results ------------------------------------------------------------

    def _quote(self, session, exit_amount, status, attempt_id=None):
        breakdown = exit_amount.breakdown
        return ExitQuote(
            session_id=session.id,
            license_plate=session.license_plate,
            amount=exit_amount.amount,
            basis=exit_amount.basis,
            status=status,
            attempt_id=attempt_id,
            units=breakdown.units if breakdown else None,
            unit_price=breakdown.unit_price if breakdown else None,
            agreed_price=breakdown.agreed_price if breakdown else None,
            needs_review=exit_amount.needs_review,
            warnings=list(exit_amount.warnings),
        )

    def _quote_from_attempt(self, session, attempt):
        return ExitQuote(
            session_id=session.id,
            license_plate=session.license_plate,
            amount=Decimal(attempt.amount),
            basis=FeeBasis(attempt.basis),
            status=attempt.status,
            attempt_id=attempt.id,
            resumed=True,
        )

    def _result(self, attempt):
        return AttemptResult(
            session_id=attempt.parking_session_id,
            attempt_id=attempt.id,
            status=attempt.status,
            amount=Decimal(attempt.amount),
            basis=attempt.basis,
            method=attempt.method,
            external_reference=attempt.external_reference,
            expires_at=as_utc(attempt.expires_at),
        )
