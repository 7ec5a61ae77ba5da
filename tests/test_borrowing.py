from dataclasses import replace
from datetime import timedelta
from decimal import Decimal

import pytest

from circulation.core.errors import (AlreadyHeld, AlreadyReturned, CannotRenew, Forbidden, InactiveBorrower,
                                     LimitReached, NoCopiesAvailable, NotBorrowable, NotFound)
from circulation.models.models import BookStatus, Borrowing, BorrowingStatus, FineStatus, Role
from circulation.services.borrowing import BorrowingEngine


def test_borrow_last_copy_then_nobody_else_can(borrowing, inventory, clock, make_user, make_book):
    x, y = make_user(), make_user()
    book = make_book(copies=1)

    loan = borrowing.borrow(x.id, book.id)
    assert loan.status == BorrowingStatus.ACTIVE
    assert loan.due_date == clock() + timedelta(days=30)
    assert loan.renewed_count == 0
    assert loan.max_renewals == 2

    book = inventory.get_book(book.id)
    assert book.available_copies == 0
    assert book.status == BookStatus.BORROWED

    with pytest.raises(NoCopiesAvailable):
        borrowing.borrow(y.id, book.id)


def test_teacher_policy_gives_longer_loans(borrowing, clock, make_user, make_book):
    teacher = make_user(Role.TEACHER)
    loan = borrowing.borrow(teacher.id, make_book().id)
    assert loan.due_date == clock() + timedelta(days=90)


def test_borrow_rejects_second_copy_of_same_title(borrowing, make_user, make_book):
    user = make_user()
    book = make_book(copies=3)
    borrowing.borrow(user.id, book.id)
    with pytest.raises(AlreadyHeld):
        borrowing.borrow(user.id, book.id)


def test_borrow_limit(borrowing, make_user, make_book):
    user = make_user()
    for _ in range(5):
        borrowing.borrow(user.id, make_book().id)
    with pytest.raises(LimitReached):
        borrowing.borrow(user.id, make_book().id)


def test_borrow_checks_borrower_and_book(borrowing, users, inventory, make_user, make_book):
    user = make_user()
    book = make_book()

    with pytest.raises(InactiveBorrower):
        borrowing.borrow(999, book.id)
    with pytest.raises(NotFound):
        borrowing.borrow(user.id, 999)

    inventory.set_status(book.id, BookStatus.MAINTENANCE)
    with pytest.raises(NotBorrowable):
        borrowing.borrow(user.id, book.id)

    inventory.set_status(book.id, BookStatus.AVAILABLE)
    users.set_active(user.id, False)
    with pytest.raises(InactiveBorrower):
        borrowing.borrow(user.id, book.id)


def test_duplicate_caught_by_unique_index_leaves_inventory_alone(borrowing, inventory, monkeypatch,
                                                                 make_user, make_book):
    user = make_user()
    book = make_book(copies=2)
    borrowing.borrow(user.id, book.id)

    # simulate a concurrent request that passed the read check before the first one committed
    monkeypatch.setattr(borrowing, "_open_for", lambda user_id, book_id: None)
    with pytest.raises(AlreadyHeld):
        borrowing.borrow(user.id, book.id)

    assert inventory.get_book(book.id).available_copies == 1
    assert borrowing.count_open(user.id) == 1


def test_return_on_time(borrowing, inventory, fines, clock, make_user, make_book):
    user = make_user()
    book = make_book(copies=1)
    loan = borrowing.borrow(user.id, book.id)

    clock.advance(days=10)
    result = borrowing.return_book(user.id, loan.id)
    assert result.borrowing.status == BorrowingStatus.RETURNED
    assert result.borrowing.returned_at == clock()
    assert result.fine is None
    assert not result.was_overdue
    assert result.promoted is None

    book = inventory.get_book(book.id)
    assert book.available_copies == 1
    assert book.status == BookStatus.AVAILABLE
    assert fines.list_fines(user.id) == []


def test_late_return_creates_fine(borrowing, clock, make_user, make_book):
    user = make_user()
    loan = borrowing.borrow(user.id, make_book().id)

    # due date is now + 30 days; returning 36 days later is six days late
    clock.advance(days=36)
    result = borrowing.return_book(user.id, loan.id)

    assert result.borrowing.status == BorrowingStatus.RETURNED
    assert result.was_overdue
    assert result.fine.amount == Decimal("3.00")
    assert result.fine.status == FineStatus.UNPAID
    assert result.fine.reason == "Overdue by 6 day(s)"
    assert result.fine.borrowing_id == loan.id


def test_return_twice(borrowing, inventory, make_user, make_book):
    user = make_user()
    book = make_book(copies=1)
    loan = borrowing.borrow(user.id, book.id)
    borrowing.return_book(user.id, loan.id)

    with pytest.raises(AlreadyReturned):
        borrowing.return_book(user.id, loan.id)
    assert inventory.get_book(book.id).available_copies == 1


def test_return_is_owner_only_unless_admin(borrowing, make_user, make_book):
    owner, other = make_user(), make_user()
    loan = borrowing.borrow(owner.id, make_book().id)

    with pytest.raises(Forbidden):
        borrowing.return_book(other.id, loan.id)
    with pytest.raises(NotFound):
        borrowing.return_book(owner.id, 999)

    result = borrowing.return_book(other.id, loan.id, Role.ADMIN)
    assert result.borrowing.status == BorrowingStatus.RETURNED


def test_borrow_return_round_trip_restores_inventory(borrowing, inventory, make_user, make_book):
    user = make_user()
    book = make_book(copies=3)
    for _ in range(3):
        loan = borrowing.borrow(user.id, book.id)
        borrowing.return_book(user.id, loan.id)

    book = inventory.get_book(book.id)
    assert (book.total_copies, book.available_copies) == (3, 3)
    assert book.status == BookStatus.AVAILABLE


def test_renew_extends_from_now(borrowing, clock, make_user, make_book):
    user = make_user()
    loan = borrowing.borrow(user.id, make_book().id)

    clock.advance(days=20)
    loan = borrowing.renew(user.id, loan.id)
    assert loan.renewed_count == 1
    assert loan.due_date == clock() + timedelta(days=30)


def test_renew_cap(borrowing, make_user, make_book):
    user = make_user()
    loan = borrowing.borrow(user.id, make_book().id)
    borrowing.renew(user.id, loan.id)
    loan = borrowing.renew(user.id, loan.id)
    assert (loan.renewed_count, loan.max_renewals) == (2, 2)

    with pytest.raises(CannotRenew):
        borrowing.renew(user.id, loan.id)


def test_renew_returned_loan(borrowing, make_user, make_book):
    user = make_user()
    loan = borrowing.borrow(user.id, make_book().id)
    borrowing.return_book(user.id, loan.id)
    with pytest.raises(CannotRenew):
        borrowing.renew(user.id, loan.id)


def test_renew_overdue_loan_makes_it_current(borrowing, db, clock, make_user, make_book):
    user = make_user()
    loan = borrowing.borrow(user.id, make_book().id)
    db.query(Borrowing).filter(Borrowing.id == loan.id).update({Borrowing.status: BorrowingStatus.OVERDUE})
    db.commit()

    clock.advance(days=31)
    loan = borrowing.renew(user.id, loan.id)
    assert loan.status == BorrowingStatus.ACTIVE
    assert loan.due_date > clock()


def test_renew_blocked_while_others_wait(borrowing, reservations, make_user, make_book):
    holder, waiting = make_user(), make_user()
    book = make_book(copies=1)
    loan = borrowing.borrow(holder.id, book.id)
    reservations.create(waiting.id, book.id)

    with pytest.raises(CannotRenew):
        borrowing.renew(holder.id, loan.id)


def test_renew_ignores_queue_when_configured(db, settings, clock, reservations, make_user, make_book):
    engine = BorrowingEngine(db, replace(settings, renewal_blocked_by_queue=False), clock)
    holder, waiting = make_user(), make_user()
    book = make_book(copies=1)
    loan = engine.borrow(holder.id, book.id)
    reservations.create(waiting.id, book.id)

    assert engine.renew(holder.id, loan.id).renewed_count == 1


def test_list_overdue_orders_by_due_date(borrowing, clock, make_user, make_book):
    user = make_user()
    first = borrowing.borrow(user.id, make_book().id)
    clock.advance(days=1)
    second = borrowing.borrow(user.id, make_book().id)
    clock.advance(days=1)
    borrowing.borrow(make_user(Role.TEACHER).id, make_book().id)

    clock.advance(days=30)
    assert [b.id for b in borrowing.list_overdue()] == [first.id, second.id]


def test_list_borrowings_filters(borrowing, make_user, make_book):
    alice, bob = make_user(), make_user()
    a1 = borrowing.borrow(alice.id, make_book().id)
    borrowing.borrow(alice.id, make_book().id)
    borrowing.borrow(bob.id, make_book().id)
    borrowing.return_book(alice.id, a1.id)

    assert len(borrowing.list_borrowings(alice.id)) == 2
    returned = borrowing.list_borrowings(alice.id, BorrowingStatus.RETURNED)
    assert [b.id for b in returned] == [a1.id]
    assert len(borrowing.list_borrowings()) == 3
