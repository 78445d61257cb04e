"""
subscription_billing/models/payment.py

Payment snapshots, payment failures and mirrored gateway invoices.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, field_validator

from subscription_billing.models.subscription import Addon, ensure_utc


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class Payment(BaseModel):
    """
    Immutable record of what a tenant is paying for.

    Captured at checkout with the TARGET plan and limit, so later changes to
    the live subscription cannot leak into the charge.
    """
    model_config = ConfigDict(frozen=True, use_enum_values=True)

    id: Optional[int] = None
    tenant_id: str
    subscription_id: Optional[int] = None
    plan: str
    user_limit: Optional[int] = None
    addons: List[Addon] = []
    amount: Decimal
    currency: str
    cycle_start: datetime
    cycle_end: datetime
    stripe_payment_intent_id: str
    status: PaymentStatus = PaymentStatus.PENDING
    paid_at: Optional[datetime] = None
    applied_at: Optional[datetime] = None
    metadata: Dict[str, Any] = {}
    created_at: Optional[datetime] = None

    @field_validator("cycle_start", "cycle_end", "paid_at", "applied_at", "created_at")
    @classmethod
    def _utc(cls, value):
        return ensure_utc(value)

    @field_validator("addons", mode="before")
    @classmethod
    def _normalize_addons(cls, value):
        if not value:
            return []
        return sorted(set(value))

    @property
    def is_paid(self) -> bool:
        return self.status == PaymentStatus.PAID.value

    def has_addon(self, addon: str) -> bool:
        return addon in self.addons


class PaymentFailureStatus(str, Enum):
    PENDING = "pending"
    RETRYING = "retrying"
    RESOLVED = "resolved"
    ABANDONED = "abandoned"


class PaymentFailure(BaseModel):
    model_config = ConfigDict(frozen=True, use_enum_values=True)

    id: Optional[int] = None
    tenant_id: str
    stripe_invoice_id: Optional[str] = None
    stripe_payment_intent_id: Optional[str] = None
    reason: Optional[str] = None
    amount: Optional[Decimal] = None
    status: PaymentFailureStatus = PaymentFailureStatus.PENDING
    failed_at: datetime
    resolved_at: Optional[datetime] = None
    reminder_count: int = 0
    resolution_method: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("failed_at", "resolved_at")
    @classmethod
    def _utc(cls, value):
        return ensure_utc(value)


class Invoice(BaseModel):
    """Gateway invoice mirrored locally for ERP processing."""
    model_config = ConfigDict(frozen=True)

    id: Optional[int] = None
    tenant_id: str
    tenant_slug: Optional[str] = None
    stripe_invoice_id: str
    status: str
    amount_due: Decimal = Decimal("0")
    amount_paid: Decimal = Decimal("0")
    currency: str
    pdf_url: Optional[str] = None
    billing_period_start: Optional[datetime] = None
    billing_period_end: Optional[datetime] = None
    metadata: Dict[str, Any] = {}
    erp_processed: bool = False
    erp_processed_at: Optional[datetime] = None
    erp_deadline_at: Optional[datetime] = None
    erp_notes: Optional[str] = None
    created_at: datetime

    @field_validator(
        "billing_period_start",
        "billing_period_end",
        "erp_processed_at",
        "erp_deadline_at",
        "created_at",
    )
    @classmethod
    def _utc(cls, value):
        return ensure_utc(value)

    @property
    def plan(self) -> Optional[str]:
        return self.metadata.get("plan")

    @property
    def addons(self) -> List[str]:
        raw = self.metadata.get("addons") or ""
        if isinstance(raw, list):
            return raw
        return [a for a in raw.split(",") if a]
