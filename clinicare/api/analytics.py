from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy import func
from sqlalchemy.orm import Session

from ..database.connection import get_db
from ..database.models import (
    Appointment, AppointmentStatus, Bill, BillStatus, Doctor, Patient, Review, TelemedicineSession
)
from ..errors import ValidationFailed
from .auth import AuthContext, Capability, require_access
from .billing import CENT

router = APIRouter(prefix="/api/analytics", tags=["Analytics"])

PERIODS = ("day", "week", "month", "year")

# ==================== PYDANTIC MODELS ====================

class DashboardStats(BaseModel):
    total_patients: int
    total_doctors: int
    total_appointments: int
    total_revenue: Decimal
    today_appointments: int
    week_appointments: int
    month_appointments: int
    today_revenue: Decimal
    week_revenue: Decimal
    month_revenue: Decimal
    telemedicine_sessions: int
    completed_appointments: int
    cancelled_appointments: int
    no_show_appointments: int


class TrendPoint(BaseModel):
    date: str
    value: float


class TrendResponse(BaseModel):
    period: str
    data: List[TrendPoint]


class DoctorPerformance(BaseModel):
    doctor_id: str
    doctor_name: str
    specialization: str
    appointment_count: int
    completed_appointments: int
    revenue_sum: Decimal
    average_rating: float

# ==================== HELPER FUNCTIONS ====================

def _money(value) -> Decimal:
    return Decimal(str(value or 0)).quantize(CENT)


def paid_revenue(db: Session, since: Optional[datetime] = None, until: Optional[datetime] = None) -> Decimal:
    """Sum of total_amount over paid bills, optionally paid within ``since <= paid_at < until``."""
    query = db.query(func.coalesce(func.sum(Bill.total_amount), 0)).filter(
        Bill.status == BillStatus.PAID.value
    )
    if since is not None:
        query = query.filter(Bill.paid_at >= since)
    if until is not None:
        query = query.filter(Bill.paid_at < until)
    return _money(query.scalar())


def count_appointments(
    db: Session,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    status: Optional[AppointmentStatus] = None
) -> int:
    query = db.query(Appointment)
    if since is not None:
        query = query.filter(Appointment.appointment_date >= since)
    if until is not None:
        query = query.filter(Appointment.appointment_date < until)
    if status is not None:
        query = query.filter(Appointment.status == status.value)
    return query.count()


def start_of_week(day: date) -> date:
    """Weeks run Sunday through Saturday."""
    return day - timedelta(days=(day.weekday() + 1) % 7)


def get_dashboard_stats(db: Session, now: Optional[datetime] = None) -> dict:
    now = now or datetime.now()
    today = datetime.combine(now.date(), datetime.min.time())
    tomorrow = today + timedelta(days=1)
    week_start = datetime.combine(start_of_week(now.date()), datetime.min.time())
    week_end = week_start + timedelta(days=7)
    month_start = today.replace(day=1)
    month_end = datetime.combine(_months_back(month_start.date(), -1), datetime.min.time())

    return {
        "total_patients": db.query(Patient).count(),
        "total_doctors": db.query(Doctor).count(),
        "total_appointments": count_appointments(db),
        "total_revenue": paid_revenue(db),
        "today_appointments": count_appointments(db, since=today, until=tomorrow),
        "week_appointments": count_appointments(db, since=week_start, until=week_end),
        "month_appointments": count_appointments(db, since=month_start, until=month_end),
        "today_revenue": paid_revenue(db, since=today, until=tomorrow),
        "week_revenue": paid_revenue(db, since=week_start, until=week_end),
        "month_revenue": paid_revenue(db, since=month_start, until=month_end),
        "telemedicine_sessions": db.query(TelemedicineSession).count(),
        "completed_appointments": count_appointments(db, status=AppointmentStatus.COMPLETED),
        "cancelled_appointments": count_appointments(db, status=AppointmentStatus.CANCELLED),
        "no_show_appointments": count_appointments(db, status=AppointmentStatus.NO_SHOW),
    }


def _months_back(value: date, months: int) -> date:
    month_index = value.year * 12 + value.month - 1 - months
    year, month = divmod(month_index, 12)
    month += 1
    # Clamp to the last day of the target month
    day = value.day
    while True:
        try:
            return value.replace(year=year, month=month, day=day)
        except ValueError:
            day -= 1


def period_window(period: str, now: Optional[datetime] = None) -> Tuple[datetime, List[str], str]:
    """
    Resolve a trend period into (window start, ordered bucket labels, label format).

    day covers the last day, week the last 7 days, month one calendar month
    back and year twelve months back bucketed by month.
    """
    if period not in PERIODS:
        raise ValidationFailed(f"Invalid period '{period}'. Use one of: {', '.join(PERIODS)}")

    now = now or datetime.now()
    today = now.date()

    if period == "year":
        start_date = _months_back(today, 12).replace(day=1)
        labels = []
        cursor = start_date
        while cursor <= today:
            labels.append(cursor.strftime("%Y-%m"))
            cursor = _months_back(cursor, -1)
        return datetime.combine(start_date, datetime.min.time()), labels, "%Y-%m"

    if period == "day":
        start_date = today - timedelta(days=1)
    elif period == "week":
        start_date = today - timedelta(days=7)
    else:
        start_date = _months_back(today, 1)

    labels = [
        (start_date + timedelta(days=offset)).strftime("%Y-%m-%d")
        for offset in range((today - start_date).days + 1)
    ]
    return datetime.combine(start_date, datetime.min.time()), labels, "%Y-%m-%d"


def _end_of_day(now: datetime) -> datetime:
    return datetime.combine(now.date(), datetime.min.time()) + timedelta(days=1)


def _fill_buckets(labels: List[str], totals: Dict[str, float]) -> List[dict]:
    return [{"date": label, "value": totals.get(label, 0)} for label in labels]


def get_appointment_trends(db: Session, period: str, now: Optional[datetime] = None) -> List[dict]:
    start, labels, fmt = period_window(period, now)
    end = _end_of_day(now or datetime.now())

    totals: Dict[str, float] = {}
    rows = db.query(Appointment.appointment_date).filter(
        Appointment.appointment_date >= start,
        Appointment.appointment_date < end
    ).all()
    for (appointment_date,) in rows:
        label = appointment_date.strftime(fmt)
        totals[label] = totals.get(label, 0) + 1

    return _fill_buckets(labels, totals)


def get_revenue_trends(db: Session, period: str, now: Optional[datetime] = None) -> List[dict]:
    start, labels, fmt = period_window(period, now)
    end = _end_of_day(now or datetime.now())

    totals: Dict[str, Decimal] = {}
    rows = db.query(Bill.paid_at, Bill.total_amount).filter(
        Bill.status == BillStatus.PAID.value,
        Bill.paid_at.isnot(None),
        Bill.paid_at >= start,
        Bill.paid_at < end
    ).all()
    for paid_at, total_amount in rows:
        label = paid_at.strftime(fmt)
        totals[label] = totals.get(label, Decimal("0")) + _money(total_amount)

    return _fill_buckets(labels, {label: float(value) for label, value in totals.items()})


def get_doctor_performance(db: Session) -> List[dict]:
    """Per-doctor volume, paid revenue and approved-review rating, busiest first."""
    appointment_counts = dict(
        db.query(Appointment.doctor_id, func.count(Appointment.id))
        .group_by(Appointment.doctor_id).all()
    )
    completed_counts = dict(
        db.query(Appointment.doctor_id, func.count(Appointment.id))
        .filter(Appointment.status == AppointmentStatus.COMPLETED.value)
        .group_by(Appointment.doctor_id).all()
    )
    revenue_sums = dict(
        db.query(Appointment.doctor_id, func.sum(Bill.total_amount))
        .join(Bill, Bill.appointment_id == Appointment.id)
        .filter(Bill.status == BillStatus.PAID.value)
        .group_by(Appointment.doctor_id).all()
    )
    ratings = dict(
        db.query(Review.doctor_id, func.avg(Review.rating))
        .filter(Review.is_approved == True)  # noqa: E712
        .group_by(Review.doctor_id).all()
    )

    performance = []
    for doctor in db.query(Doctor).all():
        average = ratings.get(doctor.id)
        performance.append({
            "doctor_id": doctor.id,
            "doctor_name": f"Dr. {doctor.first_name} {doctor.last_name}",
            "specialization": doctor.specialization,
            "appointment_count": appointment_counts.get(doctor.id, 0),
            "completed_appointments": completed_counts.get(doctor.id, 0),
            "revenue_sum": _money(revenue_sums.get(doctor.id)),
            "average_rating": round(float(average), 2) if average is not None else 0.0,
        })

    performance.sort(key=lambda row: (row["appointment_count"], row["revenue_sum"]), reverse=True)
    return performance

# ==================== API ENDPOINTS ====================

@router.get("/dashboard", response_model=DashboardStats)
async def dashboard_stats(
    auth: AuthContext = Depends(require_access(Capability.VIEW_ANALYTICS)),
    db: Session = Depends(get_db)
):
    """
    📊 Clinic-wide totals for the admin dashboard
    """
    return get_dashboard_stats(db)


@router.get("/appointment-trends", response_model=TrendResponse)
async def appointment_trends(
    period: str = Query("week"),
    auth: AuthContext = Depends(require_access(Capability.VIEW_ANALYTICS)),
    db: Session = Depends(get_db)
):
    return {"period": period, "data": get_appointment_trends(db, period)}


@router.get("/revenue-trends", response_model=TrendResponse)
async def revenue_trends(
    period: str = Query("month"),
    auth: AuthContext = Depends(require_access(Capability.VIEW_ANALYTICS)),
    db: Session = Depends(get_db)
):
    return {"period": period, "data": get_revenue_trends(db, period)}


@router.get("/doctor-performance", response_model=List[DoctorPerformance])
async def doctor_performance(
    auth: AuthContext = Depends(require_access(Capability.VIEW_ANALYTICS)),
    db: Session = Depends(get_db)
):
    return get_doctor_performance(db)
