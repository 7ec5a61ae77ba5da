"""Book inventory: the only hot shared counters in the system.

Every change to ``available_copies`` is a single conditional UPDATE so that
claims, releases and adjustments on the same book serialise in the database
rather than in application code. ``claim_copy`` and ``release_copy`` do not
commit; they are meant to run inside the caller's transaction next to the
record they pair with.
"""

import logging
import re
from typing import List, Optional

from sqlalchemy import case, literal
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from circulation.core.clock import utcnow
from circulation.core.database import atomic
from circulation.core.errors import AlreadyExists, InvalidAdjustment, InvalidInput, InvalidState, NotFound
from circulation.models.models import (ACTIVE_RESERVATION, OPEN_BORROWING, OUTSTANDING_FINE, Book, BookStatus,
                                       Borrowing, Fine, Reservation)

logger = logging.getLogger("circulation.inventory")

OUT_OF_SERVICE = (BookStatus.MAINTENANCE, BookStatus.LOST)


def _status(value: BookStatus):
    return literal(value, Book.status.type)


def normalize_isbn(value: str) -> str:
    cleaned = re.sub(r"[-\s]", "", value or "")
    if not re.fullmatch(r"\d{10,13}", cleaned):
        raise InvalidInput(f"Invalid ISBN format: {value!r}")
    return cleaned


class InventoryStore:
    def __init__(self, db: Session, clock=utcnow):
        self.db = db
        self.clock = clock

    def get_book(self, book_id: int) -> Book:
        book = self.db.get(Book, book_id, populate_existing=True)
        if book is None:
            raise NotFound(f"Book {book_id} not found")
        return book

    def get_book_by_isbn(self, isbn: str) -> Book:
        isbn = normalize_isbn(isbn)
        book = self.db.query(Book).filter(Book.isbn == isbn).populate_existing().first()
        if book is None:
            raise NotFound(f"No book with ISBN {isbn}")
        return book

    def list_books(self, q: Optional[str] = None, author: Optional[str] = None,
                   skip: int = 0, limit: int = 20) -> List[Book]:
        """Search title or author, paginated and ordered by title."""
        query = self.db.query(Book)
        if q:
            like_q = f"%{q}%"
            query = query.filter(Book.title.ilike(like_q) | Book.author.ilike(like_q))
        if author:
            query = query.filter(Book.author.ilike(f"%{author}%"))
        return query.order_by(Book.title, Book.id).offset(skip).limit(limit).all()

    def update_book(self, book_id: int, title: Optional[str] = None, author: Optional[str] = None) -> Book:
        """Catalogue details only; copy counts change through ``adjust_inventory``."""
        book = self.get_book(book_id)
        values = {}
        for field, value in (("title", title), ("author", author)):
            if value is None:
                continue
            if not value.strip():
                raise InvalidInput(f"{field} must not be empty")
            values[getattr(Book, field)] = value.strip()
        if values:
            with atomic(self.db):
                self.db.query(Book).filter(Book.id == book.id).update(values, synchronize_session=False)
            book = self.get_book(book_id)
            logger.info(f"Updated book id={book.id}")
        return book

    def add_book(self, isbn: str, title: str, author: str, total_copies: int = 1) -> Book:
        isbn = normalize_isbn(isbn)
        if total_copies < 0:
            raise InvalidInput("total_copies must be >= 0")
        if self.db.query(Book).filter(Book.isbn == isbn).first():
            raise AlreadyExists(f"A book with ISBN {isbn} already exists")
        book = Book(
            isbn=isbn,
            title=title.strip(),
            author=author.strip(),
            total_copies=total_copies,
            available_copies=total_copies,
            status=BookStatus.AVAILABLE if total_copies > 0 else BookStatus.BORROWED,
            created_at=self.clock(),
        )
        try:
            with atomic(self.db):
                self.db.add(book)
        except IntegrityError as exc:
            raise AlreadyExists(f"A book with ISBN {isbn} already exists") from exc
        self.db.refresh(book)
        logger.info(f"Created book id={book.id} isbn={book.isbn} copies={book.total_copies}")
        return book

    def delete_book(self, book_id: int) -> None:
        book = self.get_book(book_id)
        open_borrowings = (
            self.db.query(Borrowing)
            .filter(Borrowing.book_id == book_id, Borrowing.status.in_(OPEN_BORROWING))
            .count()
        )
        if open_borrowings:
            raise InvalidState(f"Cannot delete book with {open_borrowings} active borrowing(s)")
        active_reservations = self.count_active_reservations(book_id)
        if active_reservations:
            raise InvalidState(f"Cannot delete book with {active_reservations} active reservation(s)")
        unpaid = (
            self.db.query(Fine)
            .join(Borrowing, Fine.borrowing_id == Borrowing.id)
            .filter(Borrowing.book_id == book_id, Fine.status.in_(OUTSTANDING_FINE))
            .count()
        )
        if unpaid:
            raise InvalidState(f"Cannot delete book with {unpaid} outstanding fine(s)")
        with atomic(self.db):
            self.db.delete(book)
        logger.info(f"Deleted book id={book_id}")

    def count_active_reservations(self, book_id: int) -> int:
        return (
            self.db.query(Reservation)
            .filter(Reservation.book_id == book_id, Reservation.status.in_(ACTIVE_RESERVATION))
            .count()
        )

    def claim_copy(self, book_id: int) -> bool:
        """Take one copy off the shelf if there is one. Returns whether it worked."""
        claimed = (
            self.db.query(Book)
            .filter(Book.id == book_id, Book.available_copies > 0, Book.status.notin_(OUT_OF_SERVICE))
            .update(
                {
                    Book.available_copies: Book.available_copies - 1,
                    # right-hand sides see the pre-update row
                    Book.status: case(
                        (Book.available_copies == 1, _status(BookStatus.BORROWED)),
                        else_=Book.status,
                    ),
                },
                synchronize_session=False,
            )
        )
        return claimed > 0

    def release_copy(self, book_id: int) -> None:
        released = (
            self.db.query(Book)
            .filter(Book.id == book_id, Book.available_copies < Book.total_copies)
            .update(
                {
                    Book.available_copies: Book.available_copies + 1,
                    Book.status: case(
                        (Book.status.in_((BookStatus.BORROWED, BookStatus.RESERVED)), _status(BookStatus.AVAILABLE)),
                        else_=Book.status,
                    ),
                },
                synchronize_session=False,
            )
        )
        if not released:
            book = self.get_book(book_id)
            logger.warning(f"Release ignored for book {book_id}: all {book.total_copies} copies already available")

    def adjust_inventory(self, book_id: int, delta: int) -> Book:
        with atomic(self.db):
            adjusted = (
                self.db.query(Book)
                .filter(
                    Book.id == book_id,
                    Book.total_copies + delta >= 0,
                    Book.available_copies + delta >= 0,
                )
                .update(
                    {
                        Book.total_copies: Book.total_copies + delta,
                        Book.available_copies: Book.available_copies + delta,
                        Book.status: case(
                            (Book.status.in_(OUT_OF_SERVICE), Book.status),
                            (Book.available_copies + delta > 0, _status(BookStatus.AVAILABLE)),
                            else_=_status(BookStatus.BORROWED),
                        ),
                    },
                    synchronize_session=False,
                )
            )
            if not adjusted:
                self.get_book(book_id)
                raise InvalidAdjustment("Adjustment would result in negative inventory")
        book = self.get_book(book_id)
        logger.info(f"Adjusted inventory of book {book_id} by {delta:+d}: "
                    f"total={book.total_copies} available={book.available_copies}")
        return book

    def set_status(self, book_id: int, status: BookStatus) -> Book:
        """Take a book out of service, or put it back with a status derived from its counts."""
        status = BookStatus(status)
        if status in OUT_OF_SERVICE:
            value = _status(status)
        else:
            value = case(
                (Book.available_copies > 0, _status(BookStatus.AVAILABLE)),
                else_=_status(BookStatus.BORROWED),
            )
        with atomic(self.db):
            updated = (
                self.db.query(Book)
                .filter(Book.id == book_id)
                .update({Book.status: value}, synchronize_session=False)
            )
            if not updated:
                raise NotFound(f"Book {book_id} not found")
        book = self.get_book(book_id)
        logger.info(f"Book {book_id} status set to {book.status.value}")
        return book
