"""Wire and API schemas for the Click gateway.

Callback and response field names are fixed by the processor; renaming or
dropping any of them makes Click treat the reply as malformed and retry.
"""

from decimal import Decimal, InvalidOperation
from enum import Enum, IntEnum

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ClickAction(IntEnum):
    PREPARE = 0
    COMPLETE = 1


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ClickResult(Enum):
    """Outcome of a webhook phase, with its processor error code and note."""

    SUCCESS = (0, "Success")
    INVALID_SIGNATURE = (-1, "Invalid signature")
    ACTION_NOT_FOUND = (-3, "Action not found")
    ORDER_MISMATCH = (-5, "Order not found or amount mismatch")
    NOT_FOUND = (-6, "Transaction not found")
    INTERNAL_ERROR = (-7, "Internal error")
    BAD_REQUEST = (-8, "Error in request from click")
    CANCELLED = (-9, "Transaction cancelled")

    def __init__(self, code: int, note: str) -> None:
        self.code = code
        self.note = note

    @property
    def ok(self) -> bool:
        return self is ClickResult.SUCCESS


class ClickCallback(BaseModel):
    """One Prepare or Complete callback as posted by Click."""

    model_config = ConfigDict(frozen=True, coerce_numbers_to_str=True, extra="ignore")

    click_trans_id: str = Field(min_length=1)
    service_id: str
    click_paydoc_id: str = ""
    merchant_trans_id: str = Field(min_length=1)
    merchant_prepare_id: str = ""
    amount: str
    action: int
    error: int = 0
    error_note: str = ""
    sign_time: str
    sign_string: str = ""

    @field_validator("merchant_prepare_id", "click_paydoc_id", "error_note", "sign_string", mode="before")
    @classmethod
    def _none_as_empty(cls, value):
        return "" if value is None else value

    @field_validator("amount")
    @classmethod
    def _amount_is_decimal(cls, value: str) -> str:
        # Kept as the received string: the signature is computed over it.
        try:
            parsed = Decimal(value)
        except InvalidOperation as exc:
            raise ValueError(f"amount is not a number: {value!r}") from exc
        if not parsed.is_finite():
            raise ValueError(f"amount is not a number: {value!r}")
        return value

    @property
    def amount_value(self) -> Decimal:
        return Decimal(self.amount)

    @property
    def phase(self) -> ClickAction | None:
        try:
            return ClickAction(self.action)
        except ValueError:
            return None


class PrepareResult(BaseModel):
    click_trans_id: str
    merchant_trans_id: str
    merchant_prepare_id: str = ""
    result: ClickResult

    def to_wire(self) -> dict:
        return {
            "click_trans_id": self.click_trans_id,
            "merchant_trans_id": self.merchant_trans_id,
            "merchant_prepare_id": self.merchant_prepare_id,
            "error": self.result.code,
            "error_note": self.result.note,
        }


class CompleteResult(BaseModel):
    click_trans_id: str
    merchant_trans_id: str
    merchant_confirm_id: str = ""
    result: ClickResult

    def to_wire(self) -> dict:
        return {
            "click_trans_id": self.click_trans_id,
            "merchant_trans_id": self.merchant_trans_id,
            "merchant_confirm_id": self.merchant_confirm_id,
            "error": self.result.code,
            "error_note": self.result.note,
        }


class PaymentInitiationRequest(BaseModel):
    """Checkout attempt submitted by the order flow."""

    model_config = ConfigDict(frozen=True)

    amount: Decimal = Field(gt=0)
    order_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    description: str = ""
    return_url: str = Field(min_length=1)
    cancel_url: str = Field(min_length=1)
    merchant_trans_id: str = Field(min_length=1)


class PaymentInitiation(BaseModel):
    success: bool
    payment_url: str | None = None
    transaction_id: str | None = None
    error: str | None = None


class PaymentStatusView(BaseModel):
    status: PaymentStatus
    amount: Decimal | None = None
    note: str | None = None
