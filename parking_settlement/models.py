import enum
from datetime import datetime, timezone
from sqlalchemy import (
    Column, Integer, Numeric, String, Date, DateTime, Enum, ForeignKey, Text, UniqueConstraint
)
from parking_settlement.database import Base


def utcnow():
    return datetime.now(timezone.utc)


def as_utc(value):
    # sqlite hands back naive datetimes; everything stored is UTC
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class BillingUnit(str, enum.Enum):
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    SUBSCRIPTION = "subscription"
    RESERVATION = "reservation"


class SpotState(str, enum.Enum):
    FREE = "free"
    OCCUPIED = "occupied"
    RESERVED = "reserved"
    MAINTENANCE = "maintenance"


class PaymentMethod(str, enum.Enum):
    CASH = "cash"
    TRANSFER = "transfer"
    QR = "qr"
    LINK = "link"


class AttemptStatus(str, enum.Enum):
    FEE_COMPUTED = "fee_computed"
    METHOD_SELECTED = "method_selected"
    AWAITING_EXTERNAL_CONFIRMATION = "awaiting_external_confirmation"
    READY_TO_SETTLE = "ready_to_settle"
    SETTLED = "settled"
    ABORTED = "aborted"


LIVE_ATTEMPT_STATES = (
    AttemptStatus.FEE_COMPUTED,
    AttemptStatus.METHOD_SELECTED,
    AttemptStatus.AWAITING_EXTERNAL_CONFIRMATION,
    AttemptStatus.READY_TO_SETTLE,
)


class ReservationStatus(str, enum.Enum):
    CONFIRMED = "confirmed"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class ParkingSpot(Base):
    __tablename__ = "parking_spots"
    __table_args__ = (UniqueConstraint("parking_id", "number"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    parking_id = Column(Integer, nullable=False)
    number = Column(Integer, nullable=False)
    template_id = Column(Integer, nullable=True)
    state = Column(Enum(SpotState), nullable=False, default=SpotState.FREE)


class TariffRule(Base):
    __tablename__ = "tariff_rules"

    id = Column(Integer, primary_key=True, autoincrement=True)
    parking_id = Column(Integer, nullable=False)
    template_id = Column(Integer, nullable=True)
    vehicle_category = Column(String(30), nullable=False)
    billing_unit = Column(Enum(BillingUnit), nullable=False)
    base_price = Column(Numeric(10, 2), nullable=False)
    incremental_price = Column(Numeric(10, 2), nullable=False, default=0)
    effective_from = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class ParkingSession(Base):
    __tablename__ = "parking_sessions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    parking_id = Column(Integer, nullable=False)
    license_plate = Column(String(20), nullable=False)
    spot_id = Column(Integer, ForeignKey("parking_spots.id"), nullable=True)
    vehicle_category = Column(String(30), nullable=False)
    entry_timestamp = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    billing_unit = Column(Enum(BillingUnit), nullable=False, default=BillingUnit.HOURLY)
    agreed_price = Column(Numeric(10, 2), nullable=False, default=0)
    deadline = Column(DateTime(timezone=True), nullable=True)
    reservation_id = Column(Integer, ForeignKey("reservations.id"), nullable=True)
    exit_timestamp = Column(DateTime(timezone=True), nullable=True)
    settlement_id = Column(Integer, nullable=True)

    @property
    def is_active(self):
        return self.exit_timestamp is None


class Reservation(Base):
    __tablename__ = "reservations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String(40), nullable=False, unique=True)
    parking_id = Column(Integer, nullable=False)
    license_plate = Column(String(20), nullable=False)
    spot_id = Column(Integer, ForeignKey("parking_spots.id"), nullable=True)
    paid_amount = Column(Numeric(10, 2), nullable=False, default=0)
    window_start = Column(DateTime(timezone=True), nullable=False)
    window_end = Column(DateTime(timezone=True), nullable=False)
    status = Column(Enum(ReservationStatus), nullable=False, default=ReservationStatus.CONFIRMED)


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    parking_id = Column(Integer, nullable=False)
    spot_id = Column(Integer, ForeignKey("parking_spots.id"), nullable=False)
    starts_on = Column(Date, nullable=False)
    ends_on = Column(Date, nullable=False)


class SubscriptionVehicle(Base):
    __tablename__ = "subscription_vehicles"

    subscription_id = Column(Integer, ForeignKey("subscriptions.id"), primary_key=True)
    license_plate = Column(String(20), primary_key=True)


class PaymentAttempt(Base):
    __tablename__ = "payment_attempts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    parking_session_id = Column(Integer, ForeignKey("parking_sessions.id"), nullable=False)
    method = Column(Enum(PaymentMethod), nullable=True)
    amount = Column(Numeric(10, 2), nullable=False)
    basis = Column(String(30), nullable=False)
    status = Column(Enum(AttemptStatus), nullable=False, default=AttemptStatus.FEE_COMPUTED)
    external_reference = Column(String(100), nullable=True, unique=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class SettlementRecord(Base):
    __tablename__ = "settlement_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    # one settlement per session; a second commit collides here
    parking_session_id = Column(Integer, ForeignKey("parking_sessions.id"), nullable=False, unique=True)
    payment_attempt_id = Column(Integer, ForeignKey("payment_attempts.id"), nullable=True)
    amount = Column(Numeric(10, 2), nullable=False)
    method = Column(Enum(PaymentMethod), nullable=False)
    settled_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    note = Column(Text, nullable=True)
