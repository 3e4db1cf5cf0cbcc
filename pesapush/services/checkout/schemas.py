"""Request, envelope and outcome schemas for one payment attempt."""

from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


MPESA = "MPESA"


class TransactionStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    UNKNOWN = "UNKNOWN"

    @property
    def is_terminal(self) -> bool:
        return self in (TransactionStatus.COMPLETED, TransactionStatus.FAILED)


# payment_status_description values reported by GetTransactionStatus
_DESCRIPTION_TO_STATUS = {
    "completed": TransactionStatus.COMPLETED,
    "failed": TransactionStatus.FAILED,
    "reversed": TransactionStatus.FAILED,
    "cancelled": TransactionStatus.FAILED,
    "pending": TransactionStatus.PENDING,
}


def parse_transaction_status(payload: dict[str, Any]) -> TransactionStatus:
    """Map a provider status payload onto `TransactionStatus`.

    A `status` field holding one of the enum names wins; otherwise fall back to
    `payment_status_description` (PesaPal puts the HTTP code in `status`).
    """

    raw_status = str(payload.get("status") or "").upper()
    if raw_status in TransactionStatus.__members__:
        return TransactionStatus(raw_status)
    description = str(payload.get("payment_status_description") or "").lower()
    return _DESCRIPTION_TO_STATUS.get(description, TransactionStatus.UNKNOWN)


class OutcomeKind(str, Enum):
    INVALID = "INVALID"
    PENDING_CONFIRMATION = "PENDING_CONFIRMATION"
    REDIRECT = "REDIRECT"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    TIMED_OUT = "TIMED_OUT"
    CANCELLED = "CANCELLED"


class BillingAddress(BaseModel):
    """Customer billing block sent inside the order envelope."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    email_address: str = ""
    phone_number: str = ""
    country_code: str = "KE"
    first_name: str = ""
    middle_name: str = ""
    last_name: str = ""
    line_1: str = "N/A"
    line_2: str = ""
    city: str = "Nairobi"
    state: str = ""
    postal_code: str = ""
    zip_code: str = ""

    @field_validator("line_1", "city", "country_code", mode="before")
    @classmethod
    def _blank_to_default(cls, value, info):
        if value in (None, ""):
            return cls.model_fields[info.field_name].default
        return value

    @field_validator("email_address", "phone_number", "first_name", "middle_name", "last_name",
                     "line_2", "state", "postal_code", "zip_code", mode="before")
    @classmethod
    def _none_to_blank(cls, value):
        return "" if value is None else value


class PaymentRequest(BaseModel):
    """Form input for a server-driven payment attempt; immutable once built."""

    model_config = ConfigDict(frozen=True)

    amount: Decimal = Field(gt=0)
    description: str = Field(min_length=1, max_length=100)
    email: str = ""
    phone: str = ""
    name: str = ""
    payment_method: str = MPESA
    callback_url: str | None = None

    def split_name(self) -> tuple[str, str]:
        parts = self.name.split()
        if not parts:
            return "Guest", "User"
        return parts[0], " ".join(parts[1:]) or "User"


class OrderDraft(BaseModel):
    """Order data as the browser sends it to `submit-order`."""

    model_config = ConfigDict(extra="ignore")

    id: str | None = Field(default=None, max_length=50)
    currency: str | None = None
    amount: Decimal = Field(gt=0)
    description: str = Field(min_length=1, max_length=100)
    callback_url: str | None = None
    branch: str | None = None
    payment_method: str = ""
    phone_number: str = ""
    billing_address: BillingAddress = Field(default_factory=BillingAddress)

    @property
    def wants_mobile_money(self) -> bool:
        return self.payment_method.upper() == MPESA and bool(self.phone_number)


class OrderEnvelope(BaseModel):
    """Exact SubmitOrderRequest body; built once per attempt and never mutated."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1, max_length=50)
    currency: str = Field(min_length=3, max_length=3)
    amount: float = Field(gt=0)
    description: str
    callback_url: str
    notification_id: str = Field(min_length=1)
    branch: str | None = None
    billing_address: BillingAddress

    def payload(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class PaymentOutcome(BaseModel):
    """Tagged result of an attempt (or of a status watch)."""

    kind: OutcomeKind
    message: str
    state: str
    order_id: str | None = None
    order_tracking_id: str | None = None
    redirect_url: str | None = None
    stk_status: Any = None
    transaction_status: TransactionStatus | None = None
    status_code: int = 200
    details: Any = None

    @property
    def is_error(self) -> bool:
        return self.kind in (OutcomeKind.INVALID, OutcomeKind.FAILED)

    def to_response(self) -> dict[str, Any]:
        """Browser-facing JSON body for this outcome."""

        if self.kind == OutcomeKind.PENDING_CONFIRMATION:
            return {
                "status": "success",
                "message": self.message,
                "order_tracking_id": self.order_tracking_id,
                "stk_status": self.stk_status,
            }
        if self.kind == OutcomeKind.REDIRECT:
            return {"redirect_url": self.redirect_url, "order_tracking_id": self.order_tracking_id}
        if self.is_error:
            return {"message": self.message, "details": self.details or {}}
        return {
            "status": self.kind.value.lower(),
            "message": self.message,
            "order_tracking_id": self.order_tracking_id,
        }


class SubmitOrderBody(BaseModel):
    """`POST /api/submit-order` payload."""

    token: str | None = None
    orderData: OrderDraft | None = None
