import enum
from decimal import Decimal

from sqlalchemy import (Boolean, CheckConstraint, Column, DateTime, Enum, ForeignKey, Index, Integer,
                        Numeric, String, text)
from sqlalchemy.orm import relationship

from circulation.core.clock import utcnow
from circulation.core.database import Base


class Role(str, enum.Enum):
    STUDENT = "STUDENT"
    TEACHER = "TEACHER"
    ADMIN = "ADMIN"


class BookStatus(str, enum.Enum):
    AVAILABLE = "AVAILABLE"
    BORROWED = "BORROWED"
    RESERVED = "RESERVED"
    MAINTENANCE = "MAINTENANCE"
    LOST = "LOST"


class BorrowingStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    OVERDUE = "OVERDUE"
    RETURNED = "RETURNED"
    LOST = "LOST"


class ReservationStatus(str, enum.Enum):
    PENDING = "PENDING"
    READY = "READY"
    CANCELLED = "CANCELLED"
    FULFILLED = "FULFILLED"
    EXPIRED = "EXPIRED"


class FineStatus(str, enum.Enum):
    UNPAID = "UNPAID"
    PARTIAL = "PARTIAL"
    PAID = "PAID"


OPEN_BORROWING = (BorrowingStatus.ACTIVE, BorrowingStatus.OVERDUE)
ACTIVE_RESERVATION = (ReservationStatus.PENDING, ReservationStatus.READY)
OUTSTANDING_FINE = (FineStatus.UNPAID, FineStatus.PARTIAL)


class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False, index=True)
    email = Column(String, unique=True, nullable=False, index=True)
    role = Column(Enum(Role), nullable=False, default=Role.STUDENT)
    is_active = Column(Boolean, nullable=False, default=True)
    joined_at = Column(DateTime, default=utcnow)
    borrowings = relationship("Borrowing", back_populates="user")


class Book(Base):
    __tablename__ = "books"
    __table_args__ = (
        CheckConstraint("available_copies >= 0", name="ck_books_available_non_negative"),
        CheckConstraint("available_copies <= total_copies", name="ck_books_available_within_total"),
    )
    id = Column(Integer, primary_key=True, index=True)
    isbn = Column(String, unique=True, index=True, nullable=False)
    title = Column(String, nullable=False, index=True)
    author = Column(String, nullable=False, index=True)
    total_copies = Column(Integer, nullable=False, default=1)
    available_copies = Column(Integer, nullable=False, default=1)
    status = Column(Enum(BookStatus), nullable=False, default=BookStatus.AVAILABLE)
    created_at = Column(DateTime, default=utcnow)
    # closed loan history and finished reservations go with the book
    borrowings = relationship("Borrowing", back_populates="book", cascade="all")
    reservations = relationship("Reservation", back_populates="book", cascade="all")


class Borrowing(Base):
    __tablename__ = "borrowings"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    book_id = Column(Integer, ForeignKey("books.id"), nullable=False)
    borrowed_at = Column(DateTime, nullable=False)
    due_date = Column(DateTime, nullable=False)
    returned_at = Column(DateTime, nullable=True)
    status = Column(Enum(BorrowingStatus), nullable=False, default=BorrowingStatus.ACTIVE)
    renewed_count = Column(Integer, nullable=False, default=0)
    max_renewals = Column(Integer, nullable=False)
    user = relationship("User", back_populates="borrowings")
    book = relationship("Book", back_populates="borrowings")
    fines = relationship("Fine", back_populates="borrowing", cascade="all")


Index("ix_borrowings_user_status", Borrowing.user_id, Borrowing.status)
Index("ix_borrowings_book_status", Borrowing.book_id, Borrowing.status)
# at most one open borrowing per (user, book), whatever the application checked first
Index("uq_borrowings_open_per_user_book", Borrowing.user_id, Borrowing.book_id, unique=True,
      sqlite_where=text("status IN ('ACTIVE', 'OVERDUE')"),
      postgresql_where=text("status IN ('ACTIVE', 'OVERDUE')"))


class Reservation(Base):
    __tablename__ = "reservations"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    book_id = Column(Integer, ForeignKey("books.id"), nullable=False)
    status = Column(Enum(ReservationStatus), nullable=False, default=ReservationStatus.PENDING)
    created_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    notified_at = Column(DateTime, nullable=True)
    fulfilled_at = Column(DateTime, nullable=True)
    book = relationship("Book", back_populates="reservations")


Index("ix_reservations_queue", Reservation.book_id, Reservation.status, Reservation.created_at)
Index("uq_reservations_active_per_user_book", Reservation.user_id, Reservation.book_id, unique=True,
      sqlite_where=text("status IN ('PENDING', 'READY')"),
      postgresql_where=text("status IN ('PENDING', 'READY')"))


class Fine(Base):
    __tablename__ = "fines"
    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_fines_amount_non_negative"),
    )
    id = Column(Integer, primary_key=True, index=True)
    borrowing_id = Column(Integer, ForeignKey("borrowings.id"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)
    amount_paid = Column(Numeric(10, 2), nullable=False, default=0)
    reason = Column(String, nullable=False)
    status = Column(Enum(FineStatus), nullable=False, default=FineStatus.UNPAID)
    waiver_reason = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False)
    paid_at = Column(DateTime, nullable=True)
    borrowing = relationship("Borrowing", back_populates="fines")

    @property
    def outstanding(self):
        if self.status == FineStatus.PAID:
            return Decimal("0.00")
        return self.amount - (self.amount_paid or 0)


Index("ix_fines_user_status", Fine.user_id, Fine.status)
