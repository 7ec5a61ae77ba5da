"""Borrow, return and renew.

The borrow path reads and checks first, then claims a copy and writes the
Borrowing in one transaction. The claim is the authoritative availability
check: the earlier read of the book only lets an obviously empty shelf fail
fast. A claim whose record cannot be written is rolled back with it, so no
decrement is ever orphaned.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from circulation.core.clock import utcnow
from circulation.core.config import Settings, get_settings
from circulation.core.database import atomic
from circulation.core.errors import (AlreadyHeld, AlreadyReturned, CannotRenew, Forbidden, InactiveBorrower,
                                     LimitReached, NoCopiesAvailable, NotBorrowable, NotFound)
from circulation.models.models import (OPEN_BORROWING, Borrowing, BorrowingStatus, Fine, Reservation, Role,
                                       User)
from circulation.services.fines import FineService
from circulation.services.inventory import OUT_OF_SERVICE, InventoryStore
from circulation.services.policies import policy_for
from circulation.services.reservations import ReservationEngine

logger = logging.getLogger("circulation.borrowing")


@dataclass
class ReturnResult:
    borrowing: Borrowing
    fine: Optional[Fine] = None
    promoted: Optional[Reservation] = None

    @property
    def was_overdue(self) -> bool:
        return self.fine is not None


class BorrowingEngine:
    def __init__(self, db: Session, settings: Settings = None, clock=utcnow):
        self.db = db
        self.settings = settings or get_settings()
        self.clock = clock
        self.inventory = InventoryStore(db, clock)
        self.fines = FineService(db, self.settings, clock)
        self.reservations = ReservationEngine(db, self.settings, clock)

    def borrow(self, user_id: int, book_id: int) -> Borrowing:
        user = self.db.get(User, user_id, populate_existing=True)
        if user is None or not user.is_active:
            raise InactiveBorrower("User account is not active")
        policy = policy_for(user.role)

        if self.count_open(user_id) >= policy.max_books:
            raise LimitReached(f"You have reached the maximum borrowing limit ({policy.max_books} books)")

        book = self.inventory.get_book(book_id)
        if book.status in OUT_OF_SERVICE:
            raise NotBorrowable("This book is not available for borrowing")
        if self._open_for(user_id, book_id) is not None:
            raise AlreadyHeld("You have already borrowed this book")
        if book.available_copies <= 0:
            raise NoCopiesAvailable("No available copies of this book")

        now = self.clock()
        borrowing = Borrowing(
            user_id=user_id,
            book_id=book_id,
            borrowed_at=now,
            due_date=now + timedelta(days=policy.max_days),
            status=BorrowingStatus.ACTIVE,
            renewed_count=0,
            max_renewals=policy.max_renewals,
        )
        try:
            with atomic(self.db):
                if not self.inventory.claim_copy(book_id):
                    raise NoCopiesAvailable("No available copies of this book")
                self.db.add(borrowing)
                self.db.flush()
        except IntegrityError as exc:
            # a concurrent duplicate request from the same borrower won the unique index
            raise AlreadyHeld("You have already borrowed this book") from exc
        self.db.refresh(borrowing)
        logger.info(f"User {user_id} borrowed book {book_id} (borrowing {borrowing.id}, due {borrowing.due_date})")
        return borrowing

    def return_book(self, user_id: int, borrowing_id: int, role: Role = Role.STUDENT) -> ReturnResult:
        borrowing = self._owned(borrowing_id, user_id, role, "You can only return your own borrowed books")
        if borrowing.status == BorrowingStatus.RETURNED:
            raise AlreadyReturned("This book has already been returned")

        now = self.clock()
        was_overdue = borrowing.status == BorrowingStatus.OVERDUE or now > borrowing.due_date
        result = ReturnResult(borrowing=borrowing)
        with atomic(self.db):
            closed = (
                self.db.query(Borrowing)
                .filter(Borrowing.id == borrowing.id, Borrowing.status != BorrowingStatus.RETURNED)
                .update({Borrowing.status: BorrowingStatus.RETURNED, Borrowing.returned_at: now},
                        synchronize_session=False)
            )
            if not closed:
                raise AlreadyReturned("This book has already been returned")
            self.inventory.release_copy(borrowing.book_id)
            result.promoted = self.reservations.promote_next(borrowing.book_id, now)
            if was_overdue:
                result.fine = self.fines.assess_overdue(borrowing, now)
        self.db.refresh(borrowing)
        logger.info(f"Borrowing {borrowing_id} returned{' late' if was_overdue else ''}")
        return result

    def renew(self, user_id: int, borrowing_id: int, role: Role = Role.STUDENT) -> Borrowing:
        borrowing = self._owned(borrowing_id, user_id, role, "You can only renew your own borrowed books")
        if borrowing.status not in OPEN_BORROWING:
            raise CannotRenew(f"A {borrowing.status.value.lower()} borrowing cannot be renewed")
        if borrowing.renewed_count >= borrowing.max_renewals:
            raise CannotRenew(f"This borrowing has used all {borrowing.max_renewals} renewal(s)")
        if self.settings.renewal_blocked_by_queue and self.inventory.count_active_reservations(borrowing.book_id):
            raise CannotRenew("This book is reserved by another borrower")

        # the loan period comes from the borrower's role, not from the actor's
        policy = policy_for(self.db.get(User, borrowing.user_id, populate_existing=True).role)
        now = self.clock()
        observed = borrowing.renewed_count
        with atomic(self.db):
            renewed = (
                self.db.query(Borrowing)
                .filter(
                    Borrowing.id == borrowing.id,
                    Borrowing.status.in_(OPEN_BORROWING),
                    Borrowing.renewed_count == observed,
                )
                .update(
                    {
                        Borrowing.due_date: now + timedelta(days=policy.max_days),
                        Borrowing.renewed_count: Borrowing.renewed_count + 1,
                        # the new due date is in the future, so an overdue loan is current again
                        Borrowing.status: BorrowingStatus.ACTIVE,
                    },
                    synchronize_session=False,
                )
            )
            if not renewed:
                raise CannotRenew("This borrowing changed while renewing; try again")
        self.db.refresh(borrowing)
        logger.info(f"Borrowing {borrowing_id} renewed ({borrowing.renewed_count}/{borrowing.max_renewals}), "
                    f"due {borrowing.due_date}")
        return borrowing

    def get_borrowing(self, borrowing_id: int, user_id: int, role: Role = Role.STUDENT) -> Borrowing:
        return self._owned(borrowing_id, user_id, role, "You do not have permission to view this borrowing")

    def list_borrowings(self, user_id: int = None, status: BorrowingStatus = None,
                        skip: int = 0, limit: int = 50) -> List[Borrowing]:
        query = self.db.query(Borrowing).order_by(Borrowing.borrowed_at.desc(), Borrowing.id.desc())
        if user_id is not None:
            query = query.filter(Borrowing.user_id == user_id)
        if status is not None:
            query = query.filter(Borrowing.status == status)
        return query.offset(skip).limit(limit).all()

    def list_overdue(self) -> List[Borrowing]:
        return (
            self.db.query(Borrowing)
            .filter(Borrowing.status.in_(OPEN_BORROWING), Borrowing.due_date < self.clock())
            .order_by(Borrowing.due_date, Borrowing.id)
            .all()
        )

    def count_open(self, user_id: int) -> int:
        return (
            self.db.query(Borrowing)
            .filter(Borrowing.user_id == user_id, Borrowing.status.in_(OPEN_BORROWING))
            .count()
        )

    def _open_for(self, user_id: int, book_id: int) -> Optional[Borrowing]:
        return (
            self.db.query(Borrowing)
            .filter(Borrowing.user_id == user_id, Borrowing.book_id == book_id,
                    Borrowing.status.in_(OPEN_BORROWING))
            .first()
        )

    def _owned(self, borrowing_id: int, user_id: int, role: Role, message: str) -> Borrowing:
        borrowing = self.db.get(Borrowing, borrowing_id, populate_existing=True)
        if borrowing is None:
            raise NotFound("Borrowing record not found")
        if role != Role.ADMIN and borrowing.user_id != user_id:
            raise Forbidden(message)
        return borrowing
