import uvicorn
from typing import List
from dataclasses import asdict
from fastapi import FastAPI, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from parking_settlement.config import SettlementServiceCFG
from parking_settlement.database import config, init_db, get_db
from parking_settlement.errors import (
    AttemptNotFound, InvalidTransition, ProviderError, SessionNotFound, SettlementError
)
from parking_settlement.models import PaymentMethod
from parking_settlement.orchestrator import ExitOrchestrator
from parking_settlement.schemas import (
    AttemptResponse, ExitRequest, ExitResponse, HistoryResponse, MethodRequest,
    PaymentMethodOption, WebhookRequest, ExitActionResponse
)
from fastapi import Query
from parking_settlement.crud import get_all_payments_and_sessions
from parking_settlement.services import PaymentProviderClient, map_provider_status
import logging

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

orchestrator = ExitOrchestrator.from_config(
    config, PaymentProviderClient(config.provider_url, config.provider_token)
)

app = FastAPI(title=config.title, version=config.version, description=config.description)


@app.on_event("startup")
async def on_startup():
    logger.info(f"Config in use: {config.title} {config.version}")
    await init_db()


def get_config():
    return config


def get_orchestrator():
    return orchestrator


def available_methods(cfg: SettlementServiceCFG):
    return {
        PaymentMethod.CASH: True,
        PaymentMethod.TRANSFER: cfg.transfer_enabled,
        PaymentMethod.QR: cfg.provider_enabled,
        PaymentMethod.LINK: cfg.provider_enabled,
    }


def to_http_error(error: Exception) -> HTTPException:
    if isinstance(error, (SessionNotFound, AttemptNotFound)):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, InvalidTransition):
        return HTTPException(status_code=409, detail=str(error))
    if isinstance(error, ProviderError):
        return HTTPException(status_code=502, detail=str(error))
    if isinstance(error, SettlementError):
        return HTTPException(status_code=500, detail=f"Settlement failed, retry the commit: {error}")
    logger.error(f"Unexpected error: {error}")
    return HTTPException(status_code=500, detail="Internal Server Error")


@app.post("/ps/api/v1/exits/", response_model=ExitResponse)
async def initiate_exit(request: ExitRequest, db: AsyncSession = Depends(get_db),
                        exits: ExitOrchestrator = Depends(get_orchestrator)):
    try:
        logger.info(f"Received exit request for plate: {request.plate_number}")
        quote = await exits.initiate_exit(db, request.plate_number, request.spot_id, request.supersede)
        return ExitResponse(**asdict(quote))
    except HTTPException as http_error:
        raise http_error
    except Exception as e:
        raise to_http_error(e)


@app.post("/ps/api/v1/exits/{session_id}/method", response_model=AttemptResponse)
async def select_payment_method(session_id: int, request: MethodRequest, db: AsyncSession = Depends(get_db),
                                exits: ExitOrchestrator = Depends(get_orchestrator),
                                cfg: SettlementServiceCFG = Depends(get_config)):
    try:
        if not available_methods(cfg)[request.method]:
            raise HTTPException(status_code=409, detail=f"Payment method {request.method.value} is not configured.")

        result = await exits.select_payment_method(db, session_id, request.method)
        return AttemptResponse(**asdict(result))
    except HTTPException as http_error:
        raise http_error
    except Exception as e:
        raise to_http_error(e)


@app.post("/ps/api/v1/exits/{session_id}/confirm-transfer", response_model=AttemptResponse)
async def confirm_transfer(session_id: int, db: AsyncSession = Depends(get_db),
                           exits: ExitOrchestrator = Depends(get_orchestrator)):
    try:
        return AttemptResponse(**asdict(await exits.confirm_transfer(db, session_id)))
    except HTTPException as http_error:
        raise http_error
    except Exception as e:
        raise to_http_error(e)


@app.post("/ps/api/v1/exits/{session_id}/mark-paid", response_model=AttemptResponse)
async def mark_as_paid(session_id: int, db: AsyncSession = Depends(get_db),
                       exits: ExitOrchestrator = Depends(get_orchestrator)):
    try:
        return AttemptResponse(**asdict(await exits.mark_as_paid(db, session_id)))
    except HTTPException as http_error:
        raise http_error
    except Exception as e:
        raise to_http_error(e)


@app.post("/ps/api/v1/exits/{session_id}/settle", response_model=AttemptResponse)
async def retry_settlement(session_id: int, db: AsyncSession = Depends(get_db),
                           exits: ExitOrchestrator = Depends(get_orchestrator)):
    try:
        return AttemptResponse(**asdict(await exits.retry_settlement(db, session_id)))
    except HTTPException as http_error:
        raise http_error
    except Exception as e:
        raise to_http_error(e)


@app.post("/ps/api/v1/exits/{session_id}/poll", response_model=AttemptResponse)
async def poll_payment(session_id: int, db: AsyncSession = Depends(get_db),
                       exits: ExitOrchestrator = Depends(get_orchestrator)):
    try:
        return AttemptResponse(**asdict(await exits.poll_external_payment(db, session_id)))
    except HTTPException as http_error:
        raise http_error
    except Exception as e:
        raise to_http_error(e)


@app.delete("/ps/api/v1/exits/{session_id}", response_model=ExitActionResponse)
async def cancel_exit(session_id: int, db: AsyncSession = Depends(get_db),
                      exits: ExitOrchestrator = Depends(get_orchestrator)):
    try:
        result = await exits.cancel_exit(db, session_id)
        if result is None:
            return ExitActionResponse(status="nothing_to_cancel")
        return ExitActionResponse(status="aborted", attempt=AttemptResponse(**asdict(result)))
    except HTTPException as http_error:
        raise http_error
    except Exception as e:
        raise to_http_error(e)


@app.post("/ps/api/v1/payments/webhook", response_model=ExitActionResponse)
async def payment_webhook(request: WebhookRequest, db: AsyncSession = Depends(get_db),
                          exits: ExitOrchestrator = Depends(get_orchestrator)):
    try:
        outcome = map_provider_status(request.status)
        logger.info(f"Provider reported {outcome.value} for {request.external_reference}")
        result = await exits.confirm_external_payment(db, request.external_reference, outcome)
        if result is None:
            return ExitActionResponse(status="ignored")
        return ExitActionResponse(status=result.status.value, attempt=AttemptResponse(**asdict(result)))
    except HTTPException as http_error:
        raise http_error
    except Exception as e:
        raise to_http_error(e)


@app.get("/ps/api/v1/payment-methods/", response_model=List[PaymentMethodOption])
async def list_payment_methods(cfg: SettlementServiceCFG = Depends(get_config)):
    return [PaymentMethodOption(method=m, enabled=on) for m, on in available_methods(cfg).items()]


@app.get("/ps/api/v1/history/", response_model=HistoryResponse)
async def get_payment_and_session_history(
        plate_number: str = Query(..., description="License plate number to fetch settlement and parking history."),
        db: AsyncSession = Depends(get_db)
):
    try:
        logger.info(f"Fetching history for plate: {plate_number}")
        history = await get_all_payments_and_sessions(db, plate_number)

        if not history["history"]:
            logger.warning(f"No records found for plate: {plate_number}")
            raise HTTPException(status_code=404, detail="No records found for this plate number.")

        return history
    except HTTPException as http_error:
        raise http_error
    except Exception as e:
        logger.error(f"Unexpected error while fetching history: {e}")
        raise HTTPException(status_code=500, detail="Internal Server Error")


if __name__ == "__main__":
    uvicorn.run("parking_settlement.main:app", host="0.0.0.0", port=config.port, reload=True)
