from datetime import datetime
from typing import List, Optional
import logging

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session, joinedload

from ..database.connection import get_db
from ..database.models import Appointment, AppointmentStatus, Review, UserRole
from ..errors import ClinicError, Conflict, NotFound, PermissionDenied, ValidationFailed
from ..utils import to_naive
from .auth import AuthContext, get_auth_context, log_action, require_roles

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/reviews", tags=["Reviews"])

RATING_FIELDS = ("service_quality", "communication", "wait_time", "cleanliness")

# ==================== PYDANTIC MODELS ====================

class ReviewCreate(BaseModel):
    appointment_id: str
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=2000)
    service_quality: Optional[int] = Field(None, ge=1, le=5)
    communication: Optional[int] = Field(None, ge=1, le=5)
    wait_time: Optional[int] = Field(None, ge=1, le=5)
    cleanliness: Optional[int] = Field(None, ge=1, le=5)
    would_recommend: bool
    is_anonymous: bool = False


class ReviewUpdate(BaseModel):
    rating: Optional[int] = Field(None, ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=2000)
    service_quality: Optional[int] = Field(None, ge=1, le=5)
    communication: Optional[int] = Field(None, ge=1, le=5)
    wait_time: Optional[int] = Field(None, ge=1, le=5)
    cleanliness: Optional[int] = Field(None, ge=1, le=5)
    would_recommend: Optional[bool] = None
    is_anonymous: Optional[bool] = None
    is_approved: Optional[bool] = None


class ReviewResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    appointment_id: str
    patient_id: str
    doctor_id: str
    rating: int
    comment: Optional[str] = None
    service_quality: Optional[int] = None
    communication: Optional[int] = None
    wait_time: Optional[int] = None
    cleanliness: Optional[int] = None
    would_recommend: bool
    is_anonymous: bool
    is_approved: bool
    created_at: datetime
    updated_at: datetime
    patient_name: Optional[str] = None
    doctor_name: Optional[str] = None


class ReviewListResponse(BaseModel):
    reviews: List[ReviewResponse]
    total: int


class RatingBucket(BaseModel):
    rating: int
    count: int


class ReviewStats(BaseModel):
    total_reviews: int
    average_rating: float
    average_service_quality: float
    average_communication: float
    average_wait_time: float
    average_cleanliness: float
    recommendation_percentage: float
    rating_distribution: List[RatingBucket]


class CanReviewResponse(BaseModel):
    can_review: bool
    reason: Optional[str] = None

# ==================== HELPER FUNCTIONS ====================

def serialize_review(review: Review) -> dict:
    data = ReviewResponse.model_validate(review).model_dump()
    if review.patient and not review.is_anonymous:
        data["patient_name"] = f"{review.patient.first_name} {review.patient.last_name}"
    if review.doctor:
        data["doctor_name"] = f"Dr. {review.doctor.first_name} {review.doctor.last_name}"
    return data


def get_review_or_404(db: Session, review_id: str) -> Review:
    review = db.query(Review).options(
        joinedload(Review.patient),
        joinedload(Review.doctor)
    ).filter(Review.id == review_id).first()
    if not review:
        raise NotFound("Review not found")
    return review


def ensure_can_review(db: Session, auth: AuthContext, appointment_id: str) -> Appointment:
    """The caller's completed, not yet reviewed appointment, or the reason it cannot be reviewed."""
    if auth.role != UserRole.PATIENT:
        raise PermissionDenied("Only patients can create reviews")

    appointment = db.query(Appointment).filter(Appointment.id == appointment_id).first()
    if not appointment:
        raise NotFound("Appointment not found")
    if appointment.patient_id != auth.profile_id:
        raise PermissionDenied("You can only review your own appointments")
    if appointment.status != AppointmentStatus.COMPLETED.value:
        raise ValidationFailed("You can only review completed appointments")
    if db.query(Review).filter(Review.appointment_id == appointment_id).first():
        raise Conflict("Review already exists for this appointment")
    return appointment


def create_review(db: Session, auth: AuthContext, data: ReviewCreate) -> Review:
    appointment = ensure_can_review(db, auth, data.appointment_id)
    review = Review(
        appointment_id=appointment.id,
        patient_id=appointment.patient_id,
        doctor_id=appointment.doctor_id,
        **data.model_dump(exclude={"appointment_id"})
    )
    db.add(review)
    db.flush()
    return review


def _average(values: List[Optional[int]]) -> float:
    present = [v for v in values if v]
    if not present:
        return 0.0
    return round(sum(present) / len(present), 2)


def compute_review_stats(reviews: List[Review]) -> dict:
    """Averages over approved reviews; sub-ratings ignore unanswered questions."""
    total = len(reviews)
    stats = {
        "total_reviews": total,
        "average_rating": _average([r.rating for r in reviews]),
        "recommendation_percentage": (
            round(sum(1 for r in reviews if r.would_recommend) / total * 100, 2) if total else 0.0
        ),
        "rating_distribution": [
            {"rating": rating, "count": sum(1 for r in reviews if r.rating == rating)}
            for rating in range(1, 6)
        ],
    }
    for name in RATING_FIELDS:
        stats[f"average_{name}"] = _average([getattr(r, name) for r in reviews])
    return stats

# ==================== API ENDPOINTS ====================

@router.post("", response_model=ReviewResponse, status_code=201)
async def create_review_endpoint(
    request: ReviewCreate,
    auth: AuthContext = Depends(require_roles(UserRole.PATIENT)),
    db: Session = Depends(get_db)
):
    """
    ⭐ Review a completed appointment (once)
    """
    review = create_review(db, auth, request)
    log_action(db, auth.user_id, "REVIEW_CREATED", "review", review.id, {"rating": review.rating})
    db.commit()

    logger.info(f"Review {review.id} left for doctor {review.doctor_id}")
    return serialize_review(get_review_or_404(db, review.id))


@router.get("/stats", response_model=ReviewStats)
async def get_review_stats(
    doctor_id: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db)
):
    query = db.query(Review).filter(Review.is_approved == True)  # noqa: E712

    if auth.role == UserRole.DOCTOR:
        query = query.filter(Review.doctor_id == auth.profile_id)
    elif doctor_id:
        query = query.filter(Review.doctor_id == doctor_id)
    if start_date:
        query = query.filter(Review.created_at >= to_naive(start_date))
    if end_date:
        query = query.filter(Review.created_at <= to_naive(end_date))

    return compute_review_stats(query.all())


@router.get("/can-review/{appointment_id}", response_model=CanReviewResponse)
async def can_review_appointment(
    appointment_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db)
):
    try:
        ensure_can_review(db, auth, appointment_id)
    except ClinicError as e:
        return {"can_review": False, "reason": e.message}
    return {"can_review": True, "reason": None}


@router.get("", response_model=ReviewListResponse)
async def list_reviews(
    doctor_id: Optional[str] = None,
    patient_id: Optional[str] = None,
    appointment_id: Optional[str] = None,
    min_rating: Optional[int] = Query(None, ge=1, le=5),
    is_approved: Optional[bool] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db)
):
    query = db.query(Review).options(joinedload(Review.patient), joinedload(Review.doctor))

    # Role scoping first, then request filters
    if auth.role == UserRole.PATIENT:
        query = query.filter(Review.patient_id == auth.profile_id)
    elif auth.role == UserRole.DOCTOR:
        query = query.filter(Review.doctor_id == auth.profile_id)

    if doctor_id:
        query = query.filter(Review.doctor_id == doctor_id)
    if patient_id and auth.is_staff:
        query = query.filter(Review.patient_id == patient_id)
    if appointment_id:
        query = query.filter(Review.appointment_id == appointment_id)
    if min_rating:
        query = query.filter(Review.rating >= min_rating)
    if is_approved is not None:
        query = query.filter(Review.is_approved == is_approved)

    total = query.count()
    reviews = query.order_by(Review.created_at.desc()).offset(offset).limit(limit).all()
    return {"reviews": [serialize_review(r) for r in reviews], "total": total}


@router.get("/{review_id}", response_model=ReviewResponse)
async def get_review(
    review_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: Session = Depends(get_db)
):
    review = get_review_or_404(db, review_id)
    if auth.role == UserRole.PATIENT and review.patient_id != auth.profile_id:
        raise PermissionDenied("You can only view your own reviews")
    if auth.role == UserRole.DOCTOR and review.doctor_id != auth.profile_id:
        raise PermissionDenied("You can only view reviews for your appointments")
    return serialize_review(review)


@router.put("/{review_id}", response_model=ReviewResponse)
async def update_review(
    review_id: str,
    request: ReviewUpdate,
    auth: AuthContext = Depends(require_roles(UserRole.PATIENT, UserRole.ADMIN, UserRole.SUB_ADMIN)),
    db: Session = Depends(get_db)
):
    review = get_review_or_404(db, review_id)
    if auth.role == UserRole.PATIENT and review.patient_id != auth.profile_id:
        raise PermissionDenied("You can only update your own reviews")

    updates = request.model_dump(exclude_unset=True)
    # Only staff moderate reviews
    if not auth.is_staff:
        updates.pop("is_approved", None)

    for key, value in updates.items():
        if value is not None:
            setattr(review, key, value)
    review.updated_at = datetime.now()

    log_action(db, auth.user_id, "REVIEW_UPDATED", "review", review.id, {"fields": sorted(updates.keys())})
    db.commit()
    return serialize_review(get_review_or_404(db, review.id))


@router.delete("/{review_id}", status_code=204)
async def delete_review(
    review_id: str,
    auth: AuthContext = Depends(require_roles(UserRole.PATIENT, UserRole.ADMIN, UserRole.SUB_ADMIN)),
    db: Session = Depends(get_db)
):
    review = get_review_or_404(db, review_id)
    if auth.role == UserRole.PATIENT and review.patient_id != auth.profile_id:
        raise PermissionDenied("You can only delete your own reviews")

    db.delete(review)
    log_action(db, auth.user_id, "REVIEW_DELETED", "review", review_id, {})
    db.commit()
