"""Reservation queue and its lifecycle.

Queue position is never stored: it is the 1-based rank, by ``created_at``
(then id), of a borrower's PENDING or READY reservation among all active
reservations for the book. Status transitions are conditional updates on
the expected current status, so a transition racing the expiry sweep
either lands first or fails with ``InvalidState``; it never resurrects a
reservation the sweep already expired.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from circulation.core.clock import utcnow
from circulation.core.config import Settings, get_settings
from circulation.core.database import atomic
from circulation.core.errors import (AlreadyAvailable, AlreadyHeld, AlreadyReserved, Forbidden, InvalidState,
                                     NotFound)
from circulation.models.models import (ACTIVE_RESERVATION, OPEN_BORROWING, Borrowing, Reservation,
                                       ReservationStatus, User)
from circulation.services.inventory import InventoryStore

logger = logging.getLogger("circulation.reservations")


@dataclass(frozen=True)
class QueuePosition:
    position: int
    total: int


class ReservationEngine:
    def __init__(self, db: Session, settings: Settings = None, clock=utcnow):
        self.db = db
        self.settings = settings or get_settings()
        self.clock = clock
        self.inventory = InventoryStore(db, clock)

    def get_reservation(self, reservation_id: int) -> Reservation:
        reservation = self.db.get(Reservation, reservation_id, populate_existing=True)
        if reservation is None:
            raise NotFound(f"Reservation {reservation_id} not found")
        return reservation

    def create(self, user_id: int, book_id: int) -> Reservation:
        if self.db.get(User, user_id, populate_existing=True) is None:
            raise NotFound(f"User {user_id} not found")
        book = self.inventory.get_book(book_id)
        if book.available_copies > 0:
            raise AlreadyAvailable("This book is currently available. You can borrow it directly.")
        if self._active_for(user_id, book_id) is not None:
            raise AlreadyReserved("You already have an active reservation for this book")
        holding = (
            self.db.query(Borrowing)
            .filter(Borrowing.user_id == user_id, Borrowing.book_id == book_id,
                    Borrowing.status.in_(OPEN_BORROWING))
            .first()
        )
        if holding is not None:
            raise AlreadyHeld("You are currently borrowing this book")

        now = self.clock()
        reservation = Reservation(
            user_id=user_id,
            book_id=book_id,
            status=ReservationStatus.PENDING,
            created_at=now,
            expires_at=now + timedelta(days=self.settings.reservation_expiry_days),
        )
        try:
            with atomic(self.db):
                self.db.add(reservation)
        except IntegrityError as exc:
            raise AlreadyReserved("You already have an active reservation for this book") from exc
        self.db.refresh(reservation)
        logger.info(f"User {user_id} reserved book {book_id} (reservation {reservation.id})")
        return reservation

    def mark_ready(self, reservation_id: int) -> Reservation:
        reservation = self.get_reservation(reservation_id)
        with atomic(self.db):
            if not self._set_ready(reservation.id, self.clock()):
                raise InvalidState("Only pending reservations can be marked as ready")
        self.db.refresh(reservation)
        logger.info(f"Reservation {reservation_id} ready for pickup until {reservation.expires_at}")
        return reservation

    def promote_next(self, book_id: int, now: datetime) -> Optional[Reservation]:
        """Mark the longest-waiting PENDING reservation READY, inside the caller's transaction."""
        candidates = (
            self.db.query(Reservation)
            .filter(Reservation.book_id == book_id, Reservation.status == ReservationStatus.PENDING,
                    Reservation.expires_at >= now)
            .order_by(Reservation.created_at, Reservation.id)
            .all()
        )
        for reservation in candidates:
            # a candidate may expire or be cancelled under us; move on to the next one
            if self._set_ready(reservation.id, now):
                self.db.refresh(reservation)
                logger.info(f"Reservation {reservation.id} promoted to READY after a return of book {book_id}")
                return reservation
        return None

    def fulfill(self, reservation_id: int) -> Reservation:
        reservation = self.get_reservation(reservation_id)
        with atomic(self.db):
            fulfilled = self._transition(
                reservation.id,
                (ReservationStatus.READY,),
                {Reservation.status: ReservationStatus.FULFILLED, Reservation.fulfilled_at: self.clock()},
            )
            if not fulfilled:
                raise InvalidState("Only ready reservations can be fulfilled")
        self.db.refresh(reservation)
        logger.info(f"Reservation {reservation_id} fulfilled")
        return reservation

    def cancel(self, reservation_id: int, user_id: int) -> Reservation:
        reservation = self.get_reservation(reservation_id)
        if reservation.user_id != user_id:
            raise Forbidden("You can only cancel your own reservations")
        if reservation.status == ReservationStatus.FULFILLED:
            raise InvalidState("Cannot cancel a fulfilled reservation")
        with atomic(self.db):
            cancelled = self._transition(
                reservation.id, ACTIVE_RESERVATION, {Reservation.status: ReservationStatus.CANCELLED}
            )
            if not cancelled:
                self.db.refresh(reservation)
                raise InvalidState(f"Reservation is already {reservation.status.value.lower()}")
        self.db.refresh(reservation)
        logger.info(f"Reservation {reservation_id} cancelled by user {user_id}")
        return reservation

    def expire_overdue(self) -> int:
        """Expire every active reservation past its deadline, one bounded page per commit."""
        now = self.clock()
        page_size = self.settings.sweep_page_size
        total = 0
        while True:
            with atomic(self.db):
                ids = [
                    row.id
                    for row in self.db.query(Reservation.id)
                    .filter(Reservation.status.in_(ACTIVE_RESERVATION), Reservation.expires_at < now)
                    .order_by(Reservation.id)
                    .limit(page_size)
                ]
                if not ids:
                    break
                expired = (
                    self.db.query(Reservation)
                    .filter(Reservation.id.in_(ids), Reservation.status.in_(ACTIVE_RESERVATION),
                            Reservation.expires_at < now)
                    .update({Reservation.status: ReservationStatus.EXPIRED}, synchronize_session=False)
                )
            total += expired
            if len(ids) < page_size:
                break
        return total

    def get_queue_position(self, book_id: int, user_id: int) -> Optional[QueuePosition]:
        queue = self.queue(book_id)
        for index, reservation in enumerate(queue, start=1):
            if reservation.user_id == user_id:
                return QueuePosition(position=index, total=len(queue))
        return None

    def queue(self, book_id: int) -> List[Reservation]:
        return (
            self.db.query(Reservation)
            .filter(Reservation.book_id == book_id, Reservation.status.in_(ACTIVE_RESERVATION))
            .order_by(Reservation.created_at, Reservation.id)
            .all()
        )

    def list_reservations(self, user_id: int = None, status: ReservationStatus = None,
                          skip: int = 0, limit: int = 50) -> List[Reservation]:
        query = self.db.query(Reservation).order_by(Reservation.created_at.desc(), Reservation.id.desc())
        if user_id is not None:
            query = query.filter(Reservation.user_id == user_id)
        if status is not None:
            query = query.filter(Reservation.status == status)
        return query.offset(skip).limit(limit).all()

    def _active_for(self, user_id: int, book_id: int) -> Optional[Reservation]:
        return (
            self.db.query(Reservation)
            .filter(Reservation.user_id == user_id, Reservation.book_id == book_id,
                    Reservation.status.in_(ACTIVE_RESERVATION))
            .first()
        )

    def _set_ready(self, reservation_id: int, now: datetime) -> bool:
        return self._transition(
            reservation_id,
            (ReservationStatus.PENDING,),
            {
                Reservation.status: ReservationStatus.READY,
                Reservation.notified_at: now,
                Reservation.expires_at: now + timedelta(days=self.settings.pickup_deadline_days),
            },
        )

    def _transition(self, reservation_id: int, from_statuses, values) -> bool:
        updated = (
            self.db.query(Reservation)
            .filter(Reservation.id == reservation_id, Reservation.status.in_(from_statuses))
            .update(values, synchronize_session=False)
        )
        return updated > 0
