"""
subscription_billing/features/billing/invoice_sync.py

Gateway invoices awaiting manual ERP entry.

Invoices are mirrored into billing_invoices with a legal deadline for ERP
processing. Finance works the pending list and marks invoices processed.
"""
from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Union

from sqlalchemy import select, insert, update, func
from sqlalchemy.orm import Session

from subscription_billing.core.config import Settings, settings as default_settings
from subscription_billing.core.database import session_scope, billing_invoices
from subscription_billing.models.payment import Invoice
from subscription_billing.models.subscription import ensure_utc
from subscription_billing.models.tenant import TenantContext

logger = logging.getLogger("billing.invoices")

ERP_PENDING_STATUSES = ("open", "paid")
APPROACHING_DAYS = 7


def _row_to_invoice(row) -> Invoice:
    data = dict(row._mapping)
    data["metadata"] = data.pop("metadata_json", None) or {}
    return Invoice.model_validate(data)


def _from_unix(value) -> Optional[datetime]:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    return datetime.fromtimestamp(int(value), timezone.utc)


def _cents(value) -> Decimal:
    return (Decimal(int(value or 0)) / Decimal(100)).quantize(Decimal("0.01"))


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class InvoiceSyncService:
    def __init__(self, settings_obj: Optional[Settings] = None):
        self.settings = settings_obj or default_settings

    def _now(self, now: Optional[datetime]) -> datetime:
        return ensure_utc(now) or datetime.now(timezone.utc)

    def upsert_invoice(
        self,
        tenant: TenantContext,
        stripe_invoice: Mapping,
        *,
        now: Optional[datetime] = None,
        session: Optional[Session] = None,
    ) -> Invoice:
        """
        Mirror a gateway invoice (amounts in cents, periods as unix seconds).

        The ERP deadline is set once, on first sight of the invoice.
        """
        ts = self._now(now)
        invoice_id = stripe_invoice["id"]
        metadata = dict(stripe_invoice.get("metadata") or {})
        values = {
            "tenant_id": tenant.tenant_id,
            "tenant_slug": tenant.slug,
            "status": stripe_invoice.get("status") or "draft",
            "amount_due": _cents(stripe_invoice.get("amount_due")),
            "amount_paid": _cents(stripe_invoice.get("amount_paid")),
            "currency": (stripe_invoice.get("currency") or self.settings.BILLING_CURRENCY).upper(),
            "pdf_url": stripe_invoice.get("invoice_pdf"),
            "billing_period_start": _from_unix(stripe_invoice.get("period_start")),
            "billing_period_end": _from_unix(stripe_invoice.get("period_end")),
            "metadata_json": metadata,
        }

        with session_scope(session) as s:
            existing = s.execute(
                select(billing_invoices.c.id).where(billing_invoices.c.stripe_invoice_id == invoice_id)
            ).first()
            if existing:
                s.execute(
                    update(billing_invoices)
                    .where(billing_invoices.c.stripe_invoice_id == invoice_id)
                    .values(**values)
                )
            else:
                s.execute(
                    insert(billing_invoices).values(
                        stripe_invoice_id=invoice_id,
                        erp_processed=False,
                        erp_deadline_at=ts + timedelta(days=self.settings.BILLING_ERP_LEGAL_DEADLINE_DAYS),
                        created_at=ts,
                        **values,
                    )
                )
            row = s.execute(
                select(billing_invoices).where(billing_invoices.c.stripe_invoice_id == invoice_id)
            ).first()
            invoice = _row_to_invoice(row)

        logger.info(
            "[invoices] Invoice synced",
            extra={"tenant_id": tenant.tenant_id, "invoice_id": invoice_id, "status": invoice.status},
        )
        return invoice

    def _pending_query(self):
        return (
            select(billing_invoices)
            .where(billing_invoices.c.erp_processed.is_(False))
            .where(billing_invoices.c.status.in_(ERP_PENDING_STATUSES))
        )

    def list_pending(self, limit: Optional[int] = None, *, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        ts = self._now(now)
        stmt = self._pending_query().order_by(billing_invoices.c.erp_deadline_at.asc())
        if limit:
            stmt = stmt.limit(limit)
        with session_scope() as s:
            invoices = [_row_to_invoice(r) for r in s.execute(stmt).fetchall()]
        return [self._pending_entry(inv, ts) for inv in invoices]

    def _pending_entry(self, invoice: Invoice, ts: datetime) -> Dict[str, Any]:
        days = (invoice.erp_deadline_at - ts).days if invoice.erp_deadline_at else None
        return {
            "stripe_invoice_id": invoice.stripe_invoice_id,
            "tenant_id": invoice.tenant_id,
            "tenant_slug": invoice.tenant_slug,
            "status": invoice.status,
            "amount_due": float(invoice.amount_due),
            "amount_paid": float(invoice.amount_paid),
            "currency": invoice.currency,
            "pdf_url": invoice.pdf_url,
            "billing_period_start": _iso(invoice.billing_period_start),
            "billing_period_end": _iso(invoice.billing_period_end),
            "erp_deadline_at": _iso(invoice.erp_deadline_at),
            "days_until_deadline": days,
            "is_overdue": bool(invoice.erp_deadline_at and invoice.erp_deadline_at < ts),
            "plan": invoice.plan,
            "addons": invoice.addons,
            "created_at": invoice.created_at.isoformat(),
        }

    def _deadline_before(self, cutoff: datetime, *, inclusive: bool) -> List[Invoice]:
        deadline = billing_invoices.c.erp_deadline_at
        stmt = (
            select(billing_invoices)
            .where(billing_invoices.c.erp_processed.is_(False))
            .where(deadline.isnot(None))
            .where(deadline <= cutoff if inclusive else deadline < cutoff)
            .order_by(deadline.asc())
        )
        with session_scope() as s:
            return [_row_to_invoice(r) for r in s.execute(stmt).fetchall()]

    def list_approaching_deadline(self, days: int = APPROACHING_DAYS, *, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        ts = self._now(now)
        return [
            {
                "stripe_invoice_id": inv.stripe_invoice_id,
                "tenant_slug": inv.tenant_slug,
                "amount_due": float(inv.amount_due),
                "pdf_url": inv.pdf_url,
                "erp_deadline_at": _iso(inv.erp_deadline_at),
                "days_until_deadline": (inv.erp_deadline_at - ts).days,
            }
            for inv in self._deadline_before(ts + timedelta(days=days), inclusive=True)
        ]

    def list_overdue(self, *, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        ts = self._now(now)
        return [
            {
                "stripe_invoice_id": inv.stripe_invoice_id,
                "tenant_slug": inv.tenant_slug,
                "amount_due": float(inv.amount_due),
                "pdf_url": inv.pdf_url,
                "erp_deadline_at": _iso(inv.erp_deadline_at),
                "days_overdue": abs((inv.erp_deadline_at - ts).days),
            }
            for inv in self._deadline_before(ts, inclusive=False)
        ]

    def mark_processed(
        self,
        stripe_invoice_ids: Union[str, Iterable[str]],
        notes: Optional[str] = None,
        *,
        now: Optional[datetime] = None,
    ) -> Dict[str, int]:
        ids = [stripe_invoice_ids] if isinstance(stripe_invoice_ids, str) else list(stripe_invoice_ids)
        ts = self._now(now)
        success = 0
        failed = 0

        with session_scope() as s:
            for invoice_id in ids:
                row = s.execute(
                    select(billing_invoices.c.tenant_slug, billing_invoices.c.erp_notes)
                    .where(billing_invoices.c.stripe_invoice_id == invoice_id)
                ).first()
                if row is None:
                    logger.warning("[invoices] Invoice not found for ERP processing", extra={"invoice_id": invoice_id})
                    failed += 1
                    continue
                s.execute(
                    update(billing_invoices)
                    .where(billing_invoices.c.stripe_invoice_id == invoice_id)
                    .values(
                        erp_processed=True,
                        erp_processed_at=ts,
                        erp_notes=notes if notes is not None else row.erp_notes,
                    )
                )
                success += 1
                logger.info(
                    "[invoices] Invoice marked as ERP processed",
                    extra={"invoice_id": invoice_id, "tenant_slug": row.tenant_slug},
                )

        return {"success": success, "failed": failed}

    def send_notifications(self, deadline_days: Optional[int] = None, *, now: Optional[datetime] = None) -> bool:
        """Report invoices due for ERP entry. Delivery is log-only."""
        notify_email = self.settings.BILLING_ERP_NOTIFY_EMAIL
        if not notify_email:
            logger.warning("[invoices] ERP notification email not configured (BILLING_ERP_NOTIFY_EMAIL)")
            return False

        days = deadline_days if deadline_days is not None else self.settings.BILLING_ERP_LEGAL_DEADLINE_DAYS
        pending = self.list_approaching_deadline(days, now=now)
        overdue = self.list_overdue(now=now)
        if not pending and not overdue:
            logger.info("[invoices] No pending invoices requiring ERP notification")
            return True

        logger.info(
            "[invoices] ERP notification prepared",
            extra={
                "to": notify_email,
                "pending_count": len(pending),
                "overdue_count": len(overdue),
                "total_amount": sum(i["amount_due"] for i in pending) + sum(i["amount_due"] for i in overdue),
            },
        )
        return True

    def get_summary(self, *, now: Optional[datetime] = None) -> Dict[str, Any]:
        ts = self._now(now)
        pending = self._pending_query().subquery()
        with session_scope() as s:
            pending_count, pending_amount = s.execute(
                select(func.count(), func.coalesce(func.sum(pending.c.amount_due), 0))
            ).one()
            processed_count = s.execute(
                select(func.count()).select_from(billing_invoices).where(billing_invoices.c.erp_processed.is_(True))
            ).scalar()

        approaching = self._deadline_before(ts + timedelta(days=APPROACHING_DAYS), inclusive=True)
        overdue = self._deadline_before(ts, inclusive=False)
        return {
            "pending_count": int(pending_count or 0),
            "approaching_deadline_count": len(approaching),
            "overdue_count": len(overdue),
            "processed_count": int(processed_count or 0),
            "pending_amount": float(pending_amount or 0),
            "overdue_amount": float(sum((inv.amount_due for inv in overdue), Decimal("0"))),
            "currency": self.settings.BILLING_CURRENCY,
            "legal_deadline_days": self.settings.BILLING_ERP_LEGAL_DEADLINE_DAYS,
        }
