import logging
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy.orm import Session

from circulation.core.clock import utcnow
from circulation.core.config import Settings, get_settings
from circulation.core.database import atomic
from circulation.core.errors import Forbidden, InvalidAmount, InvalidState, NotFound
from circulation.models.models import (OPEN_BORROWING, OUTSTANDING_FINE, Borrowing, Fine, FineStatus,
                                       Role)

logger = logging.getLogger("circulation.fines")

CENT = Decimal("0.01")
ONE_DAY = timedelta(days=1)


def days_overdue(due_date: datetime, at: datetime) -> int:
    """Whole days past due, any started day counting as a full one."""
    if at <= due_date:
        return 0
    days, remainder = divmod(at - due_date, ONE_DAY)
    return days + (1 if remainder else 0)


def calculate_fine(due_date: datetime, returned_at: datetime, rate_per_day) -> Decimal:
    amount = days_overdue(due_date, returned_at) * Decimal(str(rate_per_day))
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def overdue_reason(days: int) -> str:
    return f"Overdue by {days} day(s)"


class FineService:
    def __init__(self, db: Session, settings: Settings = None, clock=utcnow):
        self.db = db
        self.settings = settings or get_settings()
        self.clock = clock

    def get_fine(self, fine_id: int) -> Fine:
        fine = self.db.get(Fine, fine_id, populate_existing=True)
        if fine is None:
            raise NotFound(f"Fine {fine_id} not found")
        return fine

    def assess_overdue(self, borrowing: Borrowing, returned_at: datetime) -> Fine:
        """Record the late-return fine for ``borrowing``; runs in the caller's transaction."""
        days = max(1, days_overdue(borrowing.due_date, returned_at))
        fine = Fine(
            borrowing_id=borrowing.id,
            user_id=borrowing.user_id,
            amount=(days * self.settings.fine_per_day).quantize(CENT, rounding=ROUND_HALF_UP),
            amount_paid=Decimal("0.00"),
            reason=overdue_reason(days),
            status=FineStatus.UNPAID,
            created_at=returned_at,
        )
        self.db.add(fine)
        self.db.flush()
        logger.info(f"Fine {fine.id} of {fine.amount} assessed on borrowing {borrowing.id} ({fine.reason})")
        return fine

    def create_fine(self, borrowing_id: int, amount, reason: str) -> Fine:
        amount = Decimal(str(amount))
        if amount < 0:
            raise InvalidAmount("Fine amount cannot be negative")
        borrowing = self.db.get(Borrowing, borrowing_id, populate_existing=True)
        if borrowing is None:
            raise NotFound(f"Borrowing {borrowing_id} not found")
        fine = Fine(
            borrowing_id=borrowing.id,
            user_id=borrowing.user_id,
            amount=amount.quantize(CENT, rounding=ROUND_HALF_UP),
            amount_paid=Decimal("0.00"),
            reason=reason,
            status=FineStatus.UNPAID,
            created_at=self.clock(),
        )
        with atomic(self.db):
            self.db.add(fine)
        self.db.refresh(fine)
        logger.info(f"Fine {fine.id} of {fine.amount} created manually on borrowing {borrowing_id}")
        return fine

    def pay(self, fine_id: int, user_id: int, amount, role: Role = Role.STUDENT) -> Fine:
        fine = self.get_fine(fine_id)
        if fine.user_id != user_id and role != Role.ADMIN:
            raise Forbidden("You can only pay your own fines")
        if fine.status == FineStatus.PAID:
            raise InvalidState("This fine has already been fully paid")
        amount = Decimal(str(amount)).quantize(CENT, rounding=ROUND_HALF_UP)
        if amount <= 0:
            raise InvalidAmount("Payment amount must be positive")
        remaining = fine.outstanding
        if amount > remaining:
            raise InvalidAmount(f"Payment amount exceeds remaining fine balance. Remaining: {remaining:.2f}")

        observed = fine.amount_paid
        paid = observed + amount
        values = {Fine.amount_paid: paid, Fine.status: FineStatus.PARTIAL}
        if paid >= fine.amount:
            values.update({Fine.status: FineStatus.PAID, Fine.paid_at: self.clock()})
        with atomic(self.db):
            # a waiver or another payment landing after the read leaves nothing to update
            updated = (
                self.db.query(Fine)
                .filter(Fine.id == fine.id, Fine.status.in_(OUTSTANDING_FINE), Fine.amount_paid == observed)
                .update(values, synchronize_session=False)
            )
            if not updated:
                raise InvalidState("This fine changed while paying; check the balance and try again")
        self.db.refresh(fine)
        logger.info(f"Payment of {amount} on fine {fine_id}; status={fine.status.value}")
        return fine

    def waive(self, fine_id: int, reason: str = None) -> Fine:
        fine = self.get_fine(fine_id)
        with atomic(self.db):
            waived = (
                self.db.query(Fine)
                .filter(Fine.id == fine.id, Fine.status.in_(OUTSTANDING_FINE))
                .update(
                    {
                        Fine.status: FineStatus.PAID,
                        Fine.paid_at: self.clock(),
                        Fine.waiver_reason: reason or "Administrative waiver",
                    },
                    synchronize_session=False,
                )
            )
            if not waived:
                raise InvalidState("Cannot waive a paid fine")
        self.db.refresh(fine)
        logger.info(f"Fine {fine_id} waived: {fine.waiver_reason}")
        return fine

    def list_fines(self, user_id: int = None, status: FineStatus = None, skip: int = 0, limit: int = 50):
        query = self.db.query(Fine).order_by(Fine.created_at.desc(), Fine.id.desc())
        if user_id is not None:
            query = query.filter(Fine.user_id == user_id)
        if status is not None:
            query = query.filter(Fine.status == status)
        return query.offset(skip).limit(limit).all()

    def summary(self, user_id: int) -> dict:
        """Outstanding fines plus what unreturned overdue loans would cost if returned now."""
        now = self.clock()
        outstanding = (
            self.db.query(Fine)
            .filter(Fine.user_id == user_id, Fine.status.in_(OUTSTANDING_FINE))
            .all()
        )
        total_unpaid = sum((f.outstanding for f in outstanding), Decimal("0.00"))

        overdue = (
            self.db.query(Borrowing)
            .filter(Borrowing.user_id == user_id, Borrowing.status.in_(OPEN_BORROWING),
                    Borrowing.due_date < now)
            .order_by(Borrowing.due_date)
            .all()
        )
        estimated = [
            {
                "borrowing_id": b.id,
                "book_id": b.book_id,
                "due_date": b.due_date,
                "days_overdue": days_overdue(b.due_date, now),
                "estimated_amount": calculate_fine(b.due_date, now, self.settings.fine_per_day),
            }
            for b in overdue
        ]
        total_estimated = sum((e["estimated_amount"] for e in estimated), Decimal("0.00"))
        return {
            "user_id": user_id,
            "total_unpaid": total_unpaid,
            "unpaid_count": len(outstanding),
            "total_estimated": total_estimated,
            "grand_total": total_unpaid + total_estimated,
            "estimated_fines": estimated,
        }
