from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional


# PaymentRecord.status
STATUS_PENDING = "pending"
STATUS_PROCESSED = "processed"
STATUS_ASSIGNED = "assigned"
STATUS_SENT = "sent"
STATUS_ERROR = "error"

# MatchCandidate.method / PaymentRecord.assignment_method
METHOD_TAX_ID = "tax_id_match"
METHOD_AMOUNT = "amount_match"
METHOD_PROVIDER = "provider_match"
METHOD_EXACT_ORDER = "exact_amount_and_provider_match"
METHOD_TOLERANCE_ORDER = "tolerance_amount_and_provider_match"

# Party.role
ROLE_EMITTER = "emitter"
ROLE_RECEIVER = "receiver"
ROLE_UNKNOWN = "unknown"


@dataclass
class Party:
    tax_id: Optional[str] = None  # 11桁・チェックサム検証済み
    legal_name: Optional[str] = None
    address: Optional[str] = None
    role: str = ROLE_UNKNOWN  # emitter|receiver|unknown

    def to_dict(self) -> Dict:
        return {
            "tax_id": self.tax_id,
            "legal_name": self.legal_name,
            "address": self.address,
            "role": self.role,
        }


@dataclass
class Provider:
    id: str
    owner_id: str
    name: str
    tax_id: Optional[str] = None
    phone: Optional[str] = None


@dataclass
class Order:
    id: str
    owner_id: str
    provider_id: str
    amount: Decimal
    status: str  # awaiting_payment|sent|paid|...
    order_number: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class PaymentRecord:
    id: str
    owner_id: str
    amount: Optional[Decimal] = None
    currency: str = "ARS"
    receipt_number: Optional[str] = None
    extracted_fields: Dict = field(default_factory=dict)
    status: str = STATUS_PENDING
    assigned_provider_id: Optional[str] = None
    assigned_order_id: Optional[str] = None
    assignment_confidence: Optional[float] = None
    assignment_method: Optional[str] = None
    processing_error: Optional[str] = None
    payment_date: Optional[str] = None
    payment_method: Optional[str] = None
    processed_at: Optional[str] = None
    sent_at: Optional[str] = None
    message_id: Optional[str] = None
    created_at: Optional[str] = None


@dataclass
class MatchCandidate:
    target_id: str
    confidence: float
    method: str
    details: Dict = field(default_factory=dict)


@dataclass
class AssignmentAttempt:
    record_id: str
    target_id: str
    target_kind: str  # provider|order
    method: str
    confidence: float
    details: Dict
    success: bool
