from dataclasses import dataclass
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, Query
from sqlalchemy.orm import Session

from circulation.core.clock import utcnow
from circulation.core.config import get_settings
from circulation.core.database import SessionLocal, get_db
from circulation.core.errors import Forbidden
from circulation.models.models import BorrowingStatus, FineStatus, ReservationStatus, Role
from circulation.schemas import schemas
from circulation.services.borrowing import BorrowingEngine
from circulation.services.fines import FineService
from circulation.services.inventory import InventoryStore
from circulation.services.reservations import ReservationEngine
from circulation.services.sweeper import Sweeper
from circulation.services.users import UserService

router = APIRouter()


@dataclass(frozen=True)
class Principal:
    user_id: int
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


def get_principal(x_user_id: int = Header(...), x_user_role: Role = Header(...)) -> Principal:
    # identity comes from the upstream auth layer and is trusted as-is
    return Principal(user_id=x_user_id, role=x_user_role)


def require_admin(principal: Principal = Depends(get_principal)) -> Principal:
    if not principal.is_admin:
        raise Forbidden("This operation requires the ADMIN role")
    return principal


def get_clock():
    return utcnow


def borrowing_engine(db: Session = Depends(get_db), settings=Depends(get_settings), clock=Depends(get_clock)):
    return BorrowingEngine(db, settings, clock)


def reservation_engine(db: Session = Depends(get_db), settings=Depends(get_settings), clock=Depends(get_clock)):
    return ReservationEngine(db, settings, clock)


def fine_service(db: Session = Depends(get_db), settings=Depends(get_settings), clock=Depends(get_clock)):
    return FineService(db, settings, clock)


def inventory_store(db: Session = Depends(get_db), clock=Depends(get_clock)):
    return InventoryStore(db, clock)


def user_service(db: Session = Depends(get_db), clock=Depends(get_clock)):
    return UserService(db, clock)


def get_sweeper(settings=Depends(get_settings), clock=Depends(get_clock)):
    return Sweeper(SessionLocal, settings, clock)


def _scope(principal: Principal, user_id: Optional[int]) -> Optional[int]:
    """Admins may look at anyone (or everyone); everybody else sees their own records."""
    if principal.is_admin:
        return user_id
    return principal.user_id


# -----------------------------
# Books & inventory
# -----------------------------
@router.post("/books/", response_model=schemas.BookOut)
def create_book(book_in: schemas.BookCreate, _: Principal = Depends(require_admin),
                inventory: InventoryStore = Depends(inventory_store)):
    return inventory.add_book(book_in.isbn, book_in.title, book_in.author, book_in.total_copies)


@router.get("/books/", response_model=List[schemas.BookOut])
def list_books(q: Optional[str] = Query(None, description="search title or author"),
               author: Optional[str] = None, skip: int = 0, limit: int = 20,
               inventory: InventoryStore = Depends(inventory_store)):
    return inventory.list_books(q, author, skip, limit)


@router.get("/books/isbn/{isbn}", response_model=schemas.BookOut)
def read_book_by_isbn(isbn: str, inventory: InventoryStore = Depends(inventory_store)):
    return inventory.get_book_by_isbn(isbn)


@router.get("/books/{book_id}", response_model=schemas.BookOut)
def read_book(book_id: int, inventory: InventoryStore = Depends(inventory_store)):
    return inventory.get_book(book_id)


@router.put("/books/{book_id}", response_model=schemas.BookOut)
def update_book(book_id: int, book_upd: schemas.BookUpdate, _: Principal = Depends(require_admin),
                inventory: InventoryStore = Depends(inventory_store)):
    return inventory.update_book(book_id, book_upd.title, book_upd.author)


@router.delete("/books/{book_id}")
def delete_book(book_id: int, _: Principal = Depends(require_admin),
                inventory: InventoryStore = Depends(inventory_store)):
    inventory.delete_book(book_id)
    return {"ok": True}


@router.post("/books/{book_id}/inventory", response_model=schemas.BookOut)
def adjust_inventory(book_id: int, adjustment: schemas.InventoryAdjustment, _: Principal = Depends(require_admin),
                     inventory: InventoryStore = Depends(inventory_store)):
    return inventory.adjust_inventory(book_id, adjustment.delta)


@router.put("/books/{book_id}/status", response_model=schemas.BookOut)
def set_book_status(book_id: int, update: schemas.BookStatusUpdate, _: Principal = Depends(require_admin),
                    inventory: InventoryStore = Depends(inventory_store)):
    return inventory.set_status(book_id, update.status)


@router.get("/books/{book_id}/queue", response_model=schemas.QueuePositionOut)
def queue_position(book_id: int, principal: Principal = Depends(get_principal),
                   engine: ReservationEngine = Depends(reservation_engine)):
    position = engine.get_queue_position(book_id, principal.user_id)
    if position is None:
        return {"has_reservation": False}
    return {"has_reservation": True, "position": position.position, "total": position.total}


# -----------------------------
# Users
# -----------------------------
@router.post("/users/", response_model=schemas.UserOut)
def create_user(user_in: schemas.UserCreate, _: Principal = Depends(require_admin),
                users: UserService = Depends(user_service)):
    return users.register_user(user_in.name, user_in.email, user_in.role)


@router.get("/users/", response_model=List[schemas.UserOut])
def list_users(skip: int = 0, limit: int = 50, _: Principal = Depends(require_admin),
               users: UserService = Depends(user_service)):
    return users.list_users(skip, limit)


@router.get("/users/{user_id}", response_model=schemas.UserOut)
def read_user(user_id: int, principal: Principal = Depends(get_principal),
              users: UserService = Depends(user_service)):
    if not principal.is_admin and principal.user_id != user_id:
        raise Forbidden("You can only view your own account")
    return users.get_user(user_id)


@router.post("/users/{user_id}/deactivate", response_model=schemas.UserOut)
def deactivate_user(user_id: int, _: Principal = Depends(require_admin), users: UserService = Depends(user_service)):
    return users.set_active(user_id, False)


@router.post("/users/{user_id}/activate", response_model=schemas.UserOut)
def activate_user(user_id: int, _: Principal = Depends(require_admin), users: UserService = Depends(user_service)):
    return users.set_active(user_id, True)


# -----------------------------
# Borrowings (borrow, return, renew)
# -----------------------------
@router.post("/borrowings/", response_model=schemas.BorrowingOut)
def borrow_book(request: schemas.BorrowRequest, principal: Principal = Depends(get_principal),
                engine: BorrowingEngine = Depends(borrowing_engine)):
    return engine.borrow(principal.user_id, request.book_id)


@router.get("/borrowings/", response_model=List[schemas.BorrowingOut])
def list_borrowings(status: Optional[BorrowingStatus] = None, user_id: Optional[int] = None,
                    skip: int = 0, limit: int = 50, principal: Principal = Depends(get_principal),
                    engine: BorrowingEngine = Depends(borrowing_engine)):
    return engine.list_borrowings(_scope(principal, user_id), status, skip, limit)


@router.get("/borrowings/overdue", response_model=List[schemas.BorrowingOut])
def list_overdue(_: Principal = Depends(require_admin), engine: BorrowingEngine = Depends(borrowing_engine)):
    return engine.list_overdue()


@router.get("/borrowings/{borrowing_id}", response_model=schemas.BorrowingOut)
def read_borrowing(borrowing_id: int, principal: Principal = Depends(get_principal),
                   engine: BorrowingEngine = Depends(borrowing_engine)):
    return engine.get_borrowing(borrowing_id, principal.user_id, principal.role)


@router.post("/borrowings/{borrowing_id}/return", response_model=schemas.ReturnOut)
def return_book(borrowing_id: int, principal: Principal = Depends(get_principal),
                engine: BorrowingEngine = Depends(borrowing_engine)):
    result = engine.return_book(principal.user_id, borrowing_id, principal.role)
    return schemas.ReturnOut(
        borrowing=schemas.BorrowingOut.model_validate(result.borrowing),
        fine=schemas.FineOut.model_validate(result.fine) if result.fine else None,
        promoted_reservation=(
            schemas.ReservationOut.model_validate(result.promoted) if result.promoted else None
        ),
    )


@router.post("/borrowings/{borrowing_id}/renew", response_model=schemas.BorrowingOut)
def renew_borrowing(borrowing_id: int, principal: Principal = Depends(get_principal),
                    engine: BorrowingEngine = Depends(borrowing_engine)):
    return engine.renew(principal.user_id, borrowing_id, principal.role)


# -----------------------------
# Reservations
# -----------------------------
@router.post("/reservations/", response_model=schemas.ReservationCreated)
def create_reservation(request: schemas.ReservationRequest, principal: Principal = Depends(get_principal),
                       engine: ReservationEngine = Depends(reservation_engine)):
    reservation = engine.create(principal.user_id, request.book_id)
    position = engine.get_queue_position(request.book_id, principal.user_id)
    return {
        "reservation": schemas.ReservationOut.model_validate(reservation),
        "queue_position": position.position if position else None,
    }


@router.get("/reservations/", response_model=List[schemas.ReservationOut])
def list_reservations(status: Optional[ReservationStatus] = None, user_id: Optional[int] = None,
                      skip: int = 0, limit: int = 50, principal: Principal = Depends(get_principal),
                      engine: ReservationEngine = Depends(reservation_engine)):
    return engine.list_reservations(_scope(principal, user_id), status, skip, limit)


@router.post("/reservations/{reservation_id}/cancel", response_model=schemas.ReservationOut)
def cancel_reservation(reservation_id: int, principal: Principal = Depends(get_principal),
                       engine: ReservationEngine = Depends(reservation_engine)):
    return engine.cancel(reservation_id, principal.user_id)


@router.post("/reservations/{reservation_id}/ready", response_model=schemas.ReservationOut)
def mark_reservation_ready(reservation_id: int, _: Principal = Depends(require_admin),
                           engine: ReservationEngine = Depends(reservation_engine)):
    return engine.mark_ready(reservation_id)


@router.post("/reservations/{reservation_id}/fulfill", response_model=schemas.ReservationOut)
def fulfill_reservation(reservation_id: int, _: Principal = Depends(require_admin),
                        engine: ReservationEngine = Depends(reservation_engine)):
    return engine.fulfill(reservation_id)


# -----------------------------
# Fines
# -----------------------------
@router.get("/fines/", response_model=List[schemas.FineOut])
def list_fines(status: Optional[FineStatus] = None, user_id: Optional[int] = None,
               skip: int = 0, limit: int = 50, principal: Principal = Depends(get_principal),
               fines: FineService = Depends(fine_service)):
    return fines.list_fines(_scope(principal, user_id), status, skip, limit)


@router.get("/fines/summary", response_model=schemas.FineSummary)
def fine_summary(principal: Principal = Depends(get_principal), fines: FineService = Depends(fine_service)):
    return fines.summary(principal.user_id)


@router.post("/fines/", response_model=schemas.FineOut)
def create_fine(fine_in: schemas.FineCreate, _: Principal = Depends(require_admin),
                fines: FineService = Depends(fine_service)):
    return fines.create_fine(fine_in.borrowing_id, fine_in.amount, fine_in.reason)


@router.post("/fines/{fine_id}/pay", response_model=schemas.FineOut)
def pay_fine(fine_id: int, payment: schemas.FinePayment, principal: Principal = Depends(get_principal),
             fines: FineService = Depends(fine_service)):
    return fines.pay(fine_id, principal.user_id, payment.amount, principal.role)


@router.post("/fines/{fine_id}/waive", response_model=schemas.FineOut)
def waive_fine(fine_id: int, waiver: schemas.FineWaiver, _: Principal = Depends(require_admin),
               fines: FineService = Depends(fine_service)):
    return fines.waive(fine_id, waiver.reason)


# -----------------------------
# Sweeps (normally run by the scheduler)
# -----------------------------
@router.post("/maintenance/mark-overdue", response_model=schemas.SweepResult)
def mark_overdue(_: Principal = Depends(require_admin), sweeper: Sweeper = Depends(get_sweeper)):
    return {"count": sweeper.mark_overdue_borrowings()}


@router.post("/maintenance/expire-reservations", response_model=schemas.SweepResult)
def expire_reservations(_: Principal = Depends(require_admin), sweeper: Sweeper = Depends(get_sweeper)):
    return {"count": sweeper.expire_overdue_reservations()}
