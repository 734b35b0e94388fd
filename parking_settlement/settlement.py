"""
Settlement commit.

The steps run in a fixed order so an interruption always leaves a payment
trail behind:

1. write the settlement record (money was received)
2. stamp the session's exit and link the record
3. free the spot and complete the linked reservation

Steps 1 and 2 are fatal on failure and are retried as a whole by calling
``commit`` again, which picks up an existing record instead of writing a
second one. Step 3 only logs.
"""
import logging
from datetime import datetime
from decimal import Decimal

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from parking_settlement import crud
from parking_settlement.errors import SessionNotFound, SettlementError
from parking_settlement.models import PaymentMethod, SpotState

logger = logging.getLogger(__name__)


class SettlementCommitter:

    async def commit(self, db: AsyncSession, session_id: int, amount: Decimal, method: PaymentMethod,
                     timestamp: datetime, attempt_id: int = None, note: str = None):
        record = await self._write_record(db, session_id, amount, method, timestamp, attempt_id, note)

        try:
            closed = await crud.close_session(db, session_id, timestamp, record.id)
        except SQLAlchemyError as e:
            logger.error(f"Settlement {record.id} written but session {session_id} could not be closed: {e}")
            raise SettlementError(f"Could not close session {session_id}") from e

        if not closed:
            session = await crud.get_session(db, session_id)
            if session is None or session.settlement_id != record.id:
                logger.error(
                    f"Session {session_id} was closed without settlement {record.id}; manual reconciliation needed"
                )
                raise SettlementError(f"Session {session_id} already closed by another exit")
            logger.info(f"Session {session_id} already closed with settlement {record.id}")
            return record

        logger.info(f"Session {session_id} settled: {record.amount} via {record.method.value}")
        await self._after_close(db, session_id)
        return record

    async def close_without_payment(self, db: AsyncSession, session_id: int, timestamp: datetime):
        """Close an exit that owes nothing (subscription, inside a reservation window)."""
        try:
            closed = await crud.close_session(db, session_id, timestamp)
        except SQLAlchemyError as e:
            logger.error(f"Could not close session {session_id}: {e}")
            raise SettlementError(f"Could not close session {session_id}") from e

        if not closed:
            logger.info(f"Session {session_id} was already closed")
            return False

        await self._after_close(db, session_id)
        return True

    async def _write_record(self, db, session_id, amount, method, timestamp, attempt_id, note):
        existing = await crud.get_settlement_for_session(db, session_id)
        if existing is not None:
            if existing.amount != amount or existing.method != method:
                logger.warning(
                    f"Reusing settlement {existing.id} for session {session_id} "
                    f"({existing.amount} {existing.method.value}) instead of {amount} {method.value}"
                )
            return existing

        try:
            return await crud.create_settlement(db, session_id, amount, method, timestamp, attempt_id, note)
        except IntegrityError:
            # a concurrent commit for the same session got there first
            existing = await crud.get_settlement_for_session(db, session_id)
            if existing is None:
                raise SettlementError(f"Could not write settlement for session {session_id}")
            logger.info(f"Settlement for session {session_id} already written by a concurrent commit")
            return existing
        except SQLAlchemyError as e:
            logger.error(f"Could not write settlement for session {session_id}: {e}")
            raise SettlementError(f"Could not write settlement for session {session_id}") from e

    async def _after_close(self, db, session_id):
        session = await crud.get_session(db, session_id)
        if session is None:
            raise SessionNotFound(f"Session {session_id} not found")
        # a failed step rolls back and expires the instance, so read the ids first
        spot_id, reservation_id = session.spot_id, session.reservation_id
        await self._release_spot(db, session_id, spot_id)
        await self._complete_reservation(db, session_id, reservation_id)

    async def _release_spot(self, db, session_id, spot_id):
        if spot_id is None:
            return

        try:
            await crud.set_spot_state(db, spot_id, SpotState.FREE)
            logger.info(f"Spot {spot_id} released")
        except SQLAlchemyError as e:
            logger.warning(f"Spot {spot_id} stays marked occupied after session {session_id} closed: {e}")

    async def _complete_reservation(self, db, session_id, reservation_id):
        if reservation_id is None:
            return

        try:
            await crud.complete_reservation(db, reservation_id)
            logger.info(f"Reservation {reservation_id} completed by session {session_id}")
        except SQLAlchemyError as e:
            logger.warning(f"Reservation {reservation_id} still open after session {session_id} closed: {e}")
