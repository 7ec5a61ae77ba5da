from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, constr, field_validator

from circulation.models.models import (BookStatus, BorrowingStatus, FineStatus, ReservationStatus, Role)


class BookCreate(BaseModel):
    isbn: constr(min_length=10)
    title: constr(min_length=1)
    author: constr(min_length=1)
    total_copies: int = Field(default=1, ge=0)


class BookOut(BaseModel):
    id: int
    isbn: str
    title: str
    author: str
    total_copies: int
    available_copies: int
    status: BookStatus
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)


class BookUpdate(BaseModel):
    title: Optional[constr(min_length=1)] = None
    author: Optional[constr(min_length=1)] = None


class InventoryAdjustment(BaseModel):
    delta: int

    @field_validator("delta")
    @classmethod
    def ensure_non_zero(cls, v):
        if v == 0:
            raise ValueError("delta must not be 0")
        return v


class BookStatusUpdate(BaseModel):
    status: BookStatus


class UserCreate(BaseModel):
    name: constr(min_length=1)
    email: constr(min_length=5)
    role: Role = Role.STUDENT


class UserOut(BaseModel):
    id: int
    name: str
    email: str
    role: Role
    is_active: bool
    joined_at: datetime
    model_config = ConfigDict(from_attributes=True)


class BorrowRequest(BaseModel):
    book_id: int


class BorrowingOut(BaseModel):
    id: int
    user_id: int
    book_id: int
    borrowed_at: datetime
    due_date: datetime
    returned_at: Optional[datetime] = None
    status: BorrowingStatus
    renewed_count: int
    max_renewals: int
    model_config = ConfigDict(from_attributes=True)


class FineOut(BaseModel):
    id: int
    borrowing_id: int
    user_id: int
    amount: Decimal
    amount_paid: Decimal
    reason: str
    status: FineStatus
    waiver_reason: Optional[str] = None
    created_at: datetime
    paid_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


class ReservationOut(BaseModel):
    id: int
    user_id: int
    book_id: int
    status: ReservationStatus
    created_at: datetime
    expires_at: datetime
    notified_at: Optional[datetime] = None
    fulfilled_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


class ReturnOut(BaseModel):
    borrowing: BorrowingOut
    fine: Optional[FineOut] = None
    promoted_reservation: Optional[ReservationOut] = None


class ReservationRequest(BaseModel):
    book_id: int


class ReservationCreated(BaseModel):
    reservation: ReservationOut
    queue_position: Optional[int] = None


class QueuePositionOut(BaseModel):
    has_reservation: bool
    position: Optional[int] = None
    total: Optional[int] = None


class FineCreate(BaseModel):
    borrowing_id: int
    amount: Decimal = Field(ge=0)
    reason: constr(min_length=1)


class FinePayment(BaseModel):
    amount: Decimal = Field(gt=0)


class FineWaiver(BaseModel):
    reason: Optional[str] = None


class EstimatedFine(BaseModel):
    borrowing_id: int
    book_id: int
    due_date: datetime
    days_overdue: int
    estimated_amount: Decimal


class FineSummary(BaseModel):
    user_id: int
    total_unpaid: Decimal
    unpaid_count: int
    total_estimated: Decimal
    grand_total: Decimal
    estimated_fines: List[EstimatedFine]


class SweepResult(BaseModel):
    count: int
