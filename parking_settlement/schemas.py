from pydantic import BaseModel
from typing import Optional, List
from datetime import datetime
from decimal import Decimal
from parking_settlement.models import AttemptStatus, PaymentMethod
from parking_settlement.tariffs import FeeBasis


class SettlementDetail(BaseModel):
    settlement_id: int
    amount: float
    method: str
    settled_at: str
    note: Optional[str] = None

class ParkingSessionDetail(BaseModel):
    session_id: int
    license_plate: str
    spot_id: Optional[int] = None
    billing_unit: str
    entry_timestamp: str
    exit_timestamp: Optional[str] = None
    is_active: bool
    settlements: List[SettlementDetail]

class HistoryResponse(BaseModel):
    history: List[ParkingSessionDetail]

class ExitRequest(BaseModel):
    plate_number: str
    spot_id: Optional[int] = None
    supersede: bool = False  # abort a live attempt instead of resuming it

class ExitResponse(BaseModel):
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
    warnings: List[str] = []
    resumed: bool = False

class MethodRequest(BaseModel):
    method: PaymentMethod

class TransferDetails(BaseModel):
    cbu: str
    alias: str
    account_holder: str
    bank: str

class AttemptResponse(BaseModel):
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
    transfer_details: Optional[TransferDetails] = None
    settlement_id: Optional[int] = None

class WebhookRequest(BaseModel):
    external_reference: str
    status: str  # raw provider status, mapped on receipt

class ExitActionResponse(BaseModel):
    status: str
    attempt: Optional[AttemptResponse] = None

class PaymentMethodOption(BaseModel):
    method: PaymentMethod
    enabled: bool
