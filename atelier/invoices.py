"""
Invoicing: invoices in INR with partial payments.

A payment may not exceed the remaining balance. When the cumulative paid
amount reaches the invoice amount the invoice moves to paid and gets a
paid_date. Amounts are Decimal throughout.
"""

import logging
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from .errors import InvalidStateError, NotFoundError, ValidationError
from .models import Invoice, InvoicePayment, InvoiceStatus, new_id, to_decimal, utc_now_iso
from .role_policy import Actor, Capability, require
from .store import DataStore

logger = logging.getLogger("invoices")

TABLE = "invoices"
PAYMENTS_TABLE = "invoice_payments"

INVOICE_FIELDS = frozenset({
    "invoice_number",
    "amount",
    "currency",
    "status",
    "issue_date",
    "due_date",
    "description",
    "project_id",
})

# No further payments once an invoice is in one of these
CLOSED_STATUSES = (InvoiceStatus.PAID.value, InvoiceStatus.CANCELLED.value)


def _parse_amount(value: Any, name: str, errors: List[str]) -> Optional[Decimal]:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        errors.append(f"{name} must be a number, got '{value}'")
        return None
    if amount <= 0:
        errors.append(f"{name} must be positive")
        return None
    return amount


def _check_date(data: Dict[str, Any], key: str, errors: List[str]) -> None:
    if data.get(key):
        try:
            date.fromisoformat(str(data[key]))
        except ValueError:
            errors.append(f"{key} must be YYYY-MM-DD")


class InvoiceLedger:

    def __init__(self, store: DataStore):
        self._store = store

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get_invoice(self, invoice_id: str) -> Invoice:
        row = self._store.get(TABLE, invoice_id)
        if row is None:
            raise NotFoundError("invoice", invoice_id)
        return Invoice.from_dict(row)

    def list_invoices(self, actor: Actor, project_id: Optional[str] = None) -> List[Invoice]:
        require(actor, Capability.MANAGE_FINANCIALS)
        eq = {"project_id": project_id} if project_id else None
        rows = self._store.select(TABLE, eq=eq, order_by="issue_date", descending=True)
        return [Invoice.from_dict(r) for r in rows]

    def list_payments(self, actor: Actor, invoice_id: str) -> List[InvoicePayment]:
        require(actor, Capability.MANAGE_FINANCIALS)
        rows = self._store.select(PAYMENTS_TABLE, eq={"invoice_id": invoice_id}, order_by="payment_date")
        return [InvoicePayment.from_dict(r) for r in rows]

    def outstanding_total(self, actor: Actor) -> Decimal:
        """Unpaid balance across all non-cancelled invoices."""
        return sum(
            (inv.remaining for inv in self.list_invoices(actor) if inv.status != InvoiceStatus.CANCELLED.value),
            Decimal("0"),
        )

    def received_total(self, actor: Actor) -> Decimal:
        return sum((inv.paid_amount for inv in self.list_invoices(actor)), Decimal("0"))

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    def _validate(self, data: Dict[str, Any], creating: bool) -> Dict[str, Any]:
        errors: List[str] = []
        clean = dict(data)

        unknown = set(data) - INVOICE_FIELDS
        if unknown:
            errors.append(f"Unknown invoice fields: {sorted(unknown)}")
        if creating or "invoice_number" in data:
            if not data.get("invoice_number") or not str(data["invoice_number"]).strip():
                errors.append("invoice_number is required")
            else:
                clean["invoice_number"] = str(data["invoice_number"]).strip()
        if creating or "amount" in data:
            if data.get("amount") in (None, ""):
                errors.append("amount is required")
            else:
                amount = _parse_amount(data["amount"], "amount", errors)
                if amount is not None:
                    clean["amount"] = str(amount)
        if data.get("status") is not None:
            try:
                InvoiceStatus(data["status"])
            except ValueError:
                errors.append(f"Invalid invoice status '{data['status']}'")
        _check_date(data, "issue_date", errors)
        _check_date(data, "due_date", errors)

        if errors:
            raise ValidationError(errors)
        return clean

    def create_invoice(self, actor: Actor, data: Dict[str, Any]) -> Invoice:
        require(actor, Capability.MANAGE_FINANCIALS)
        clean = self._validate(data, creating=True)

        invoice = Invoice(
            id=new_id(),
            created_by=actor.user_id,
            **{k: v for k, v in clean.items() if v is not None},
        )
        self._store.insert(TABLE, invoice.to_dict(), unique_where={"invoice_number": invoice.invoice_number})
        logger.info(f"Invoice {invoice.invoice_number} created by {actor.user_id} for {invoice.amount} {invoice.currency}")
        return invoice

    def update_invoice(self, actor: Actor, invoice_id: str, patch: Dict[str, Any]) -> Invoice:
        require(actor, Capability.MANAGE_FINANCIALS)
        clean = self._validate(patch, creating=False)
        self.get_invoice(invoice_id)

        clean["updated_at"] = utc_now_iso()
        return Invoice.from_dict(self._store.update(TABLE, invoice_id, clean))

    def delete_invoice(self, actor: Actor, invoice_id: str) -> bool:
        require(actor, Capability.DELETE_FINANCIALS)
        self.get_invoice(invoice_id)
        for payment in self._store.select(PAYMENTS_TABLE, eq={"invoice_id": invoice_id}):
            self._store.delete(PAYMENTS_TABLE, payment["id"])
        logger.info(f"Invoice {invoice_id} deleted by {actor.user_id}")
        return self._store.delete(TABLE, invoice_id)

    def record_payment(
        self,
        actor: Actor,
        invoice_id: str,
        amount: Any,
        payment_date: Optional[str] = None,
        payment_method: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Invoice:
        """Record a partial or final payment and update the invoice totals."""
        require(actor, Capability.MANAGE_FINANCIALS)
        errors: List[str] = []
        value = _parse_amount(amount, "amount", errors)
        _check_date({"payment_date": payment_date}, "payment_date", errors)
        if errors:
            raise ValidationError(errors)

        invoice = self.get_invoice(invoice_id)
        if invoice.status in CLOSED_STATUSES:
            raise InvalidStateError("invoice", invoice.status, "record payment on")
        if value > invoice.remaining:
            raise ValidationError([f"Payment exceeds remaining balance of {invoice.remaining}"])

        payment = InvoicePayment(
            id=new_id(),
            invoice_id=invoice_id,
            amount=value,
            payment_method=payment_method or None,
            notes=notes or None,
            recorded_by=actor.user_id,
        )
        if payment_date:
            payment.payment_date = payment_date
        self._store.insert(PAYMENTS_TABLE, payment.to_dict())

        paid = invoice.paid_amount + value
        changes: Dict[str, Any] = {"paid_amount": str(paid), "updated_at": utc_now_iso()}
        if paid >= invoice.amount:
            changes["status"] = InvoiceStatus.PAID.value
            changes["paid_date"] = date.today().isoformat()

        updated = Invoice.from_dict(self._store.update(TABLE, invoice_id, changes))
        logger.info(f"Payment of {value} on invoice {invoice.invoice_number}; paid {paid}/{invoice.amount}")
        return updated
