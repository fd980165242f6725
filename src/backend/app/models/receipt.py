"""
Pydantic models for receipts.
"""

from pydantic import BaseModel, Field, field_validator
from typing import Any, Dict, List, Optional, Union
from datetime import datetime as DateTime
import re


RECEIPT_STATUSES = ("processed", "manual_review", "failed")

_EMAIL_SHAPE = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')


class LineItem(BaseModel):
    """One purchased line on a receipt."""
    description: Optional[str] = None
    quantity: Optional[Union[int, float]] = None
    price: Optional[str] = None
    total: Optional[str] = None


class ExtractedReceipt(BaseModel):
    """Canonical receipt produced by the extraction pipeline."""
    datetime: Optional[str] = None
    merchant: Optional[str] = None
    category: str = "other"
    amount: Optional[float] = None
    currency: Optional[str] = None
    notes: Optional[str] = None
    confidence: str = "medium"
    items: List[LineItem] = Field(default_factory=list)
    tax: Optional[float] = None
    tip: Optional[float] = None


class ManualReceiptRequest(BaseModel):
    """Body for manual receipt entry from the dashboard form."""
    user_id: str
    datetime: Optional[str] = None
    merchant: Optional[str] = None
    category: Optional[str] = None
    amount: Optional[Union[float, str]] = None
    currency: Optional[str] = None
    notes: Optional[str] = None


class ReceiptUpdate(BaseModel):
    """Partial update; only provided fields change."""
    datetime: Optional[str] = None
    merchant: Optional[str] = None
    category: Optional[str] = None
    amount: Optional[Union[float, str]] = None
    currency: Optional[str] = None
    notes: Optional[str] = None
    status: Optional[str] = None

    @field_validator("status")
    @classmethod
    def status_must_be_known(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and value not in RECEIPT_STATUSES:
            raise ValueError(f"status must be one of {', '.join(RECEIPT_STATUSES)}")
        return value


class ReceiptInsert(BaseModel):
    """Strictly validated JSON insert payload."""
    user_id: int
    datetime: Optional[DateTime] = None
    merchant: str
    category: str
    amount: float = Field(ge=0)
    source_email: Optional[str] = None

    @field_validator("user_id")
    @classmethod
    def user_id_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("User ID must be a positive integer")
        return value

    @field_validator("merchant", "category")
    @classmethod
    def not_blank(cls, value: str, info) -> str:
        value = value.strip()
        if not value:
            raise ValueError(f"{info.field_name.capitalize()} is required")
        return value

    @field_validator("source_email")
    @classmethod
    def email_shaped(cls, value: Optional[str]) -> Optional[str]:
        if not value:
            return None
        value = value.strip().lower()
        if not _EMAIL_SHAPE.match(value):
            raise ValueError("Source email must be a valid email address")
        return value


class ReceiptResponse(BaseModel):
    """Model for receipt API responses."""
    id: Union[int, str]
    user_id: Union[int, str]
    datetime: Optional[str] = None
    merchant: Optional[str] = None
    category: Optional[str] = None
    amount: Optional[str] = None
    currency: Optional[str] = "USD"
    notes: Optional[str] = None
    confidence: Optional[str] = None
    status: Optional[str] = None
    source_type: Optional[str] = None
    email_id: Optional[str] = None
    source_email: Optional[str] = None
    subject: Optional[str] = None
    items: Optional[List[Dict[str, Any]]] = None
    tax: Optional[str] = None
    tip: Optional[str] = None
    created_at: Optional[str] = None

    class Config:
        from_attributes = True
        extra = "ignore"


class ReceiptList(BaseModel):
    """Model for filtered receipt list."""
    success: bool = True
    count: int
    receipts: list[ReceiptResponse]
