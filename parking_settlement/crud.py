from datetime import date, timedelta
from sqlalchemy import or_, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.exc import SQLAlchemyError
from parking_settlement.models import (
    ParkingSession, ParkingSpot, TariffRule, Reservation, ReservationStatus, Subscription,
    SubscriptionVehicle, PaymentAttempt, AttemptStatus, LIVE_ATTEMPT_STATES, SettlementRecord, SpotState, as_utc
)
from parking_settlement.tariffs import TariffRuleView
import logging

logger = logging.getLogger(__name__)


async def get_open_session(db: AsyncSession, plate_number: str, spot_id: int = None):
    logger.info(f"Searching for open session for plate: {plate_number}")

    query = select(ParkingSession).where(
        ParkingSession.license_plate == plate_number, ParkingSession.exit_timestamp.is_(None)
    )
    if spot_id is not None:
        query = query.where(ParkingSession.spot_id == spot_id)

    result = await db.execute(query.order_by(ParkingSession.entry_timestamp.desc()))
    session = result.scalars().first()

    if session is None:
        logger.warning(f"No open session found for plate: {plate_number}")
    else:
        logger.info(f"Found open session ID: {session.id} for plate: {plate_number}")

    return session


async def get_session(db: AsyncSession, session_id: int):
    result = await db.execute(
        select(ParkingSession).where(ParkingSession.id == session_id).execution_options(populate_existing=True)
    )
    return result.scalars().first()


async def get_template_for_spot(db: AsyncSession, spot_id: int):
    result = await db.execute(select(ParkingSpot.template_id).where(ParkingSpot.id == spot_id))
    return result.scalars().first()


async def set_spot_state(db: AsyncSession, spot_id: int, state: SpotState):
    try:
        await db.execute(update(ParkingSpot).where(ParkingSpot.id == spot_id).values(state=state))
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        raise e


async def get_tariff_rules(db: AsyncSession, parking_id: int):
    result = await db.execute(select(TariffRule).where(TariffRule.parking_id == parking_id))
    return [TariffRuleView.from_row(row) for row in result.scalars().all()]


async def find_reservation_for_session(db: AsyncSession, session: ParkingSession, early_arrival: timedelta):
    """
    The reservation this session was opened under: the one already linked to it,
    or an open booking for the same vehicle whose window covers the entry.
    """
    if session.reservation_id is not None:
        return await db.get(Reservation, session.reservation_id)

    entry = as_utc(session.entry_timestamp)
    query = select(Reservation).where(
        Reservation.license_plate == session.license_plate,
        Reservation.parking_id == session.parking_id,
        Reservation.status.in_([ReservationStatus.CONFIRMED, ReservationStatus.ACTIVE]),
        Reservation.window_start <= entry + early_arrival,
        Reservation.window_end >= entry,
    )
    if session.spot_id is not None:
        query = query.where(or_(Reservation.spot_id.is_(None), Reservation.spot_id == session.spot_id))

    result = await db.execute(query.order_by(Reservation.window_start.desc()))
    reservation = result.scalars().first()

    if reservation is None:
        logger.warning(f"No reservation matches session {session.id} for plate: {session.license_plate}")
    return reservation


async def link_reservation(db: AsyncSession, session: ParkingSession, reservation: Reservation):
    try:
        session.reservation_id = reservation.id
        await db.commit()
        logger.info(f"Session {session.id} linked to reservation {reservation.code}")
    except SQLAlchemyError as e:
        await db.rollback()
        raise e


async def complete_reservation(db: AsyncSession, reservation_id: int):
    try:
        await db.execute(
            update(Reservation).where(Reservation.id == reservation_id).values(status=ReservationStatus.COMPLETED)
        )
        await db.commit()
    except SQLAlchemyError as e:
        await db.rollback()
        raise e


async def find_active_subscription(db: AsyncSession, plate_number: str, spot_id: int, on_date: date):
    result = await db.execute(
        select(Subscription)
        .join(SubscriptionVehicle, SubscriptionVehicle.subscription_id == Subscription.id)
        .where(
            SubscriptionVehicle.license_plate == plate_number,
            Subscription.spot_id == spot_id,
            Subscription.starts_on <= on_date,
            Subscription.ends_on >= on_date,
        )
    )
    return result.scalars().first()


async def create_attempt(db: AsyncSession, session_id: int, amount, basis: str):
    try:
        attempt = PaymentAttempt(
            parking_session_id=session_id,
            amount=amount,
            basis=basis,
            status=AttemptStatus.FEE_COMPUTED,
        )
        db.add(attempt)
        await db.commit()
        await db.refresh(attempt)
        return attempt
    except SQLAlchemyError as e:
        await db.rollback()
        raise e


async def update_attempt(db: AsyncSession, attempt: PaymentAttempt, **values):
    try:
        for key, value in values.items():
            setattr(attempt, key, value)
        await db.commit()
        await db.refresh(attempt)
        return attempt
    except SQLAlchemyError as e:
        await db.rollback()
        raise e


async def get_live_attempt(db: AsyncSession, session_id: int):
    result = await db.execute(
        select(PaymentAttempt)
        .where(
            PaymentAttempt.parking_session_id == session_id,
            PaymentAttempt.status.in_(LIVE_ATTEMPT_STATES),
        )
        .order_by(PaymentAttempt.id.desc())
    )
    return result.scalars().first()


async def get_attempt_by_reference(db: AsyncSession, external_reference: str):
    result = await db.execute(
        select(PaymentAttempt).where(PaymentAttempt.external_reference == external_reference)
    )
    return result.scalars().first()


async def get_settlement_for_session(db: AsyncSession, session_id: int):
    result = await db.execute(
        select(SettlementRecord).where(SettlementRecord.parking_session_id == session_id)
    )
    return result.scalars().first()


async def create_settlement(db: AsyncSession, session_id: int, amount, method, settled_at,
                            attempt_id: int = None, note: str = None):
    try:
        record = SettlementRecord(
            parking_session_id=session_id,
            payment_attempt_id=attempt_id,
            amount=amount,
            method=method,
            settled_at=settled_at,
            note=note,
        )
        db.add(record)
        await db.commit()
        await db.refresh(record)
        return record
    except SQLAlchemyError as e:
        await db.rollback()
        raise e


async def close_session(db: AsyncSession, session_id: int, exit_timestamp, settlement_id: int = None):
    """Stamp the exit once; returns False when the session was already closed."""
    try:
        result = await db.execute(
            update(ParkingSession)
            .where(ParkingSession.id == session_id, ParkingSession.exit_timestamp.is_(None))
            .values(exit_timestamp=exit_timestamp, settlement_id=settlement_id)
        )
        await db.commit()
        return result.rowcount == 1
    except SQLAlchemyError as e:
        await db.rollback()
        raise e


async def get_all_payments_and_sessions(db: AsyncSession, plate_number: str):
    logger.info(f"Fetching all settlements and parking sessions for plate: {plate_number}")

    session_results = await db.execute(
        select(ParkingSession).where(ParkingSession.license_plate == plate_number)
        .order_by(ParkingSession.entry_timestamp)
    )
    sessions = session_results.scalars().all()

    if not sessions:
        logger.warning(f"No parking sessions found for plate: {plate_number}")
        return {"history": []}

    session_ids = [s.id for s in sessions]
    settlement_results = await db.execute(
        select(SettlementRecord).where(SettlementRecord.parking_session_id.in_(session_ids))
    )
    settlements = settlement_results.scalars().all()

    settlements_by_session = {s.id: [] for s in sessions}
    for record in settlements:
        settlements_by_session[record.parking_session_id].append({
            "settlement_id": record.id,
            "amount": float(record.amount),
            "method": record.method.value,
            "settled_at": record.settled_at.isoformat(),
            "note": record.note,
        })

    history = []
    for session in sessions:
        history.append({
            "session_id": session.id,
            "license_plate": session.license_plate,
            "spot_id": session.spot_id,
            "billing_unit": session.billing_unit.value,
            "entry_timestamp": session.entry_timestamp.isoformat(),
            "exit_timestamp": session.exit_timestamp.isoformat() if session.exit_timestamp else None,
            "is_active": session.is_active,
            "settlements": settlements_by_session.get(session.id, []),
        })

    return {"history": history}
