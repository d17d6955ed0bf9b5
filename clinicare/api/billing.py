from datetime import datetime
from decimal import Decimal
from typing import List, Optional
import logging
import secrets
import time

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from ..database.connection import get_db
from ..database.models import Appointment, Bill, BillStatus, NotificationType, UserRole
from ..errors import NotFound, PermissionDenied, ValidationFailed
from ..utils import to_naive
from .auth import AuthContext, Capability, log_action, require_access
from .notifications import notify

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/bills", tags=["Billing"])

CENT = Decimal("0.01")

# ==================== PYDANTIC MODELS ====================

class BillCreate(BaseModel):
    appointment_id: str
    patient_id: Optional[str] = Field(None, description="Defaults to the appointment's patient")
    amount: Decimal = Field(..., ge=0, max_digits=10, decimal_places=2)
    tax_amount: Decimal = Field(Decimal("0"), ge=0, max_digits=10, decimal_places=2)
    due_date: datetime


class BillUpdate(BaseModel):
    amount: Optional[Decimal] = Field(None, ge=0, max_digits=10, decimal_places=2)
    tax_amount: Optional[Decimal] = Field(None, ge=0, max_digits=10, decimal_places=2)
    status: Optional[BillStatus] = None
    payment_method: Optional[str] = Field(None, max_length=50)
    payment_reference: Optional[str] = Field(None, max_length=100)
    due_date: Optional[datetime] = None
    paid_at: Optional[datetime] = None


class BillResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    appointment_id: str
    patient_id: str
    amount: Decimal
    tax_amount: Decimal
    total_amount: Decimal
    status: BillStatus
    invoice_number: str
    due_date: datetime
    payment_method: Optional[str] = None
    payment_reference: Optional[str] = None
    paid_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class BillListResponse(BaseModel):
    bills: List[BillResponse]
    total: int

# ==================== HELPER FUNCTIONS ====================

def generate_invoice_number() -> str:
    """INV-<epoch ms>-<3 random digits>"""
    return f"INV-{int(time.time() * 1000)}-{secrets.randbelow(1000):03d}"


def compute_total(amount: Decimal, tax_amount: Decimal) -> Decimal:
    return (Decimal(amount) + Decimal(tax_amount)).quantize(CENT)


def get_bill_or_404(db: Session, bill_id: str) -> Bill:
    bill = db.query(Bill).filter(Bill.id == bill_id).first()
    if not bill:
        raise NotFound("Bill not found")
    return bill


def create_bill(
    db: Session,
    appointment_id: str,
    amount: Decimal,
    due_date: datetime,
    tax_amount: Decimal = Decimal("0"),
    patient_id: Optional[str] = None
) -> Bill:
    """
    Create a pending bill for an appointment.

    ``patient_id`` duplicates the appointment's patient; when given it must
    match, when omitted it is taken from the appointment.
    """
    appointment = db.query(Appointment).filter(Appointment.id == appointment_id).first()
    if not appointment:
        raise NotFound("Appointment not found")
    if patient_id and patient_id != appointment.patient_id:
        raise ValidationFailed("Bill patient does not match the appointment's patient")

    amount = Decimal(amount).quantize(CENT)
    tax_amount = Decimal(tax_amount or 0).quantize(CENT)

    bill = Bill(
        appointment_id=appointment.id,
        patient_id=appointment.patient_id,
        amount=amount,
        tax_amount=tax_amount,
        total_amount=compute_total(amount, tax_amount),
        status=BillStatus.PENDING.value,
        invoice_number=generate_invoice_number(),
        due_date=to_naive(due_date)
    )
    db.add(bill)
    db.flush()
    return bill


def apply_bill_update(db: Session, bill: Bill, data: BillUpdate) -> Bill:
    """
    Partial update. Totals are recomputed when amount or tax change, and
    ``paid_at`` is stamped only on a transition into ``paid``.
    """
    updates = {k: v for k, v in data.model_dump(exclude_unset=True).items() if v is not None}
    previous_status = bill.status

    if "amount" in updates:
        bill.amount = updates["amount"].quantize(CENT)
    if "tax_amount" in updates:
        bill.tax_amount = updates["tax_amount"].quantize(CENT)
    if "amount" in updates or "tax_amount" in updates:
        bill.total_amount = compute_total(bill.amount, bill.tax_amount)

    if "due_date" in updates:
        updates["due_date"] = to_naive(updates["due_date"])
    if "paid_at" in updates:
        updates["paid_at"] = to_naive(updates["paid_at"])

    for key in ("payment_method", "payment_reference", "due_date"):
        if key in updates:
            setattr(bill, key, updates[key])

    if "status" in updates:
        bill.status = updates["status"].value

    if bill.status == BillStatus.PAID.value:
        if previous_status != BillStatus.PAID.value:
            bill.paid_at = updates.get("paid_at") or datetime.now()
        elif "paid_at" in updates:
            bill.paid_at = updates["paid_at"]

    bill.updated_at = datetime.now()
    db.flush()
    return bill


def query_bills(
    db: Session,
    patient_id: Optional[str] = None,
    status: Optional[BillStatus] = None,
    appointment_id: Optional[str] = None,
    limit: int = 50,
    offset: int = 0
):
    query = db.query(Bill)
    if patient_id:
        query = query.filter(Bill.patient_id == patient_id)
    if status:
        query = query.filter(Bill.status == status.value)
    if appointment_id:
        query = query.filter(Bill.appointment_id == appointment_id)

    total = query.count()
    bills = query.order_by(Bill.created_at.desc()).offset(offset).limit(limit).all()
    return bills, total

# ==================== API ENDPOINTS ====================

@router.post("", response_model=BillResponse, status_code=201)
async def create_bill_endpoint(
    request: BillCreate,
    auth: AuthContext = Depends(require_access(Capability.EDIT_BILLING)),
    db: Session = Depends(get_db)
):
    bill = create_bill(
        db,
        appointment_id=request.appointment_id,
        amount=request.amount,
        tax_amount=request.tax_amount,
        due_date=request.due_date,
        patient_id=request.patient_id
    )
    log_action(db, auth.user_id, "BILL_CREATED", "bill", bill.id, {
        "invoice_number": bill.invoice_number,
        "total_amount": str(bill.total_amount)
    })
    db.commit()
    db.refresh(bill)

    logger.info(f"Bill {bill.invoice_number} created for appointment {bill.appointment_id}")
    return bill


@router.get("", response_model=BillListResponse)
async def list_bills(
    patient_id: Optional[str] = None,
    status: Optional[BillStatus] = None,
    appointment_id: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    auth: AuthContext = Depends(require_access(Capability.VIEW_BILLING, UserRole.PATIENT)),
    db: Session = Depends(get_db)
):
    if auth.role == UserRole.PATIENT:
        if not auth.profile_id:
            return {"bills": [], "total": 0}
        patient_id = auth.profile_id

    bills, total = query_bills(db, patient_id, status, appointment_id, limit, offset)
    return {"bills": bills, "total": total}


@router.get("/{bill_id}", response_model=BillResponse)
async def get_bill(
    bill_id: str,
    auth: AuthContext = Depends(require_access(Capability.VIEW_BILLING, UserRole.PATIENT)),
    db: Session = Depends(get_db)
):
    bill = get_bill_or_404(db, bill_id)
    if auth.role == UserRole.PATIENT and bill.patient_id != auth.profile_id:
        raise PermissionDenied("You can only view your own bills")
    return bill


@router.put("/{bill_id}", response_model=BillResponse)
async def update_bill(
    bill_id: str,
    request: BillUpdate,
    auth: AuthContext = Depends(require_access(Capability.EDIT_BILLING)),
    db: Session = Depends(get_db)
):
    """
    💳 Update a bill; moving to ``paid`` stamps ``paid_at``.
    """
    bill = get_bill_or_404(db, bill_id)
    previous_status = bill.status
    apply_bill_update(db, bill, request)

    if bill.status != previous_status:
        log_action(db, auth.user_id, "BILL_STATUS_CHANGED", "bill", bill.id, {
            "from": previous_status,
            "to": bill.status
        })
        if bill.status == BillStatus.PAID.value:
            notify(
                db,
                bill.patient.user_id if bill.patient else None,
                NotificationType.BILLING,
                "Payment received",
                f"Invoice {bill.invoice_number} of {bill.total_amount} has been paid.",
                related_entity_type="bill",
                related_entity_id=bill.id
            )

    db.commit()
    db.refresh(bill)
    return bill


@router.delete("/{bill_id}", status_code=204)
async def delete_bill(
    bill_id: str,
    auth: AuthContext = Depends(require_access(Capability.EDIT_BILLING)),
    db: Session = Depends(get_db)
):
    bill = get_bill_or_404(db, bill_id)
    db.delete(bill)
    log_action(db, auth.user_id, "BILL_DELETED", "bill", bill_id, {"invoice_number": bill.invoice_number})
    db.commit()
