from decimal import Decimal

import pytest
from sqlalchemy.exc import SQLAlchemyError

from conftest import NOW, PARKING_ID, count, open_session
from parking_settlement import crud
from parking_settlement.errors import SettlementError
from parking_settlement.models import (
    BillingUnit, ParkingSpot, PaymentMethod, Reservation, ReservationStatus, SettlementRecord, SpotState
)
from parking_settlement.settlement import SettlementCommitter

committer = SettlementCommitter()


async def boom(*args, **kwargs):
    raise SQLAlchemyError("database went away")


async def spot_state(db, spot_id):
    spot = await db.get(ParkingSpot, spot_id, populate_existing=True)
    return spot.state


@pytest.mark.asyncio
async def test_commit_writes_record_closes_session_and_frees_spot(db_session, parking):
    spot = parking["spot"]
    session = await open_session(db_session, spot_id=spot.id)

    record = await committer.commit(db_session, session.id, Decimal("650.00"), PaymentMethod.CASH, NOW)

    closed = await crud.get_session(db_session, session.id)
    assert record.amount == Decimal("650.00")
    assert closed.exit_timestamp is not None
    assert closed.settlement_id == record.id
    assert await spot_state(db_session, spot.id) == SpotState.FREE


@pytest.mark.asyncio
async def test_crash_between_record_and_close_leaves_only_an_unlinked_record(db_session, parking, monkeypatch):
    spot = parking["spot"]
    session = await open_session(db_session, spot_id=spot.id)

    monkeypatch.setattr(crud, "close_session", boom)
    with pytest.raises(SettlementError):
        await committer.commit(db_session, session.id, Decimal("650.00"), PaymentMethod.CASH, NOW)

    assert await count(db_session, SettlementRecord) == 1
    still_open = await crud.get_session(db_session, session.id)
    assert still_open.exit_timestamp is None
    assert await spot_state(db_session, spot.id) == SpotState.OCCUPIED

    monkeypatch.undo()
    record = await committer.commit(db_session, session.id, Decimal("650.00"), PaymentMethod.CASH, NOW)

    assert await count(db_session, SettlementRecord) == 1
    closed = await crud.get_session(db_session, session.id)
    assert closed.settlement_id == record.id
    assert await spot_state(db_session, spot.id) == SpotState.FREE


@pytest.mark.asyncio
async def test_record_write_failure_touches_nothing(db_session, parking, monkeypatch):
    spot = parking["spot"]
    session = await open_session(db_session, spot_id=spot.id)

    monkeypatch.setattr(crud, "create_settlement", boom)
    with pytest.raises(SettlementError):
        await committer.commit(db_session, session.id, Decimal("650.00"), PaymentMethod.CASH, NOW)

    assert await count(db_session, SettlementRecord) == 0
    assert (await crud.get_session(db_session, session.id)).exit_timestamp is None
    assert await spot_state(db_session, spot.id) == SpotState.OCCUPIED


@pytest.mark.asyncio
async def test_spot_release_failure_keeps_settlement(db_session, parking, monkeypatch):
    spot = parking["spot"]
    session = await open_session(db_session, spot_id=spot.id)

    monkeypatch.setattr(crud, "set_spot_state", boom)
    record = await committer.commit(db_session, session.id, Decimal("650.00"), PaymentMethod.CASH, NOW)

    closed = await crud.get_session(db_session, session.id)
    assert closed.settlement_id == record.id
    assert await spot_state(db_session, spot.id) == SpotState.OCCUPIED


@pytest.mark.asyncio
async def test_second_commit_is_a_no_op(db_session, parking):
    session = await open_session(db_session, spot_id=parking["spot"].id)

    first = await committer.commit(db_session, session.id, Decimal("650.00"), PaymentMethod.CASH, NOW)
    second = await committer.commit(db_session, session.id, Decimal("650.00"), PaymentMethod.CASH, NOW)

    assert first.id == second.id
    assert await count(db_session, SettlementRecord) == 1


@pytest.mark.asyncio
async def test_session_without_spot_settles(db_session, parking):
    session = await open_session(db_session, spot_id=None)

    record = await committer.commit(db_session, session.id, Decimal("200.00"), PaymentMethod.TRANSFER, NOW)

    assert record.method == PaymentMethod.TRANSFER
    assert (await crud.get_session(db_session, session.id)).exit_timestamp is not None


@pytest.mark.asyncio
async def test_close_without_payment_writes_no_record(db_session, parking):
    spot = parking["spot"]
    session = await open_session(db_session, spot_id=spot.id)

    assert await committer.close_without_payment(db_session, session.id, NOW)
    assert not await committer.close_without_payment(db_session, session.id, NOW)

    assert await count(db_session, SettlementRecord) == 0
    assert await spot_state(db_session, spot.id) == SpotState.FREE


@pytest.mark.asyncio
async def test_commit_completes_the_linked_reservation(db_session, parking):
    reservation = Reservation(code="RES-0042", parking_id=PARKING_ID, license_plate="AB123CD",
                              window_start=NOW, window_end=NOW)
    db_session.add(reservation)
    await db_session.commit()
    session = await open_session(db_session, spot_id=parking["spot"].id, billing_unit=BillingUnit.RESERVATION)
    await crud.link_reservation(db_session, session, reservation)

    await committer.commit(db_session, session.id, Decimal("350.00"), PaymentMethod.CASH, NOW)

    reservation = await db_session.get(Reservation, reservation.id, populate_existing=True)
    assert reservation.status == ReservationStatus.COMPLETED


@pytest.mark.asyncio
async def test_reservation_completion_failure_only_warns(db_session, parking, monkeypatch):
    reservation = Reservation(code="RES-0043", parking_id=PARKING_ID, license_plate="AB123CD",
                              window_start=NOW, window_end=NOW)
    db_session.add(reservation)
    await db_session.commit()
    session = await open_session(db_session, spot_id=parking["spot"].id, billing_unit=BillingUnit.RESERVATION)
    await crud.link_reservation(db_session, session, reservation)
    monkeypatch.setattr(crud, "complete_reservation", boom)

    record = await committer.commit(db_session, session.id, Decimal("350.00"), PaymentMethod.CASH, NOW)

    assert record.id is not None
    assert await spot_state(db_session, parking["spot"].id) == SpotState.FREE
