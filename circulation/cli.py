"""Small maintenance utilities: create tables, seed demo data, run the sweeps once."""

import argparse
import logging

from circulation.core.config import configure_logging, get_settings
from circulation.core.database import Base, SessionLocal, engine
from circulation.models.models import Book, Role, User
from circulation.services.inventory import InventoryStore
from circulation.services.sweeper import Sweeper
from circulation.services.users import UserService

logger = logging.getLogger("circulation.cli")

DEMO_USERS = [
    ("Alice Student", "alice@example.com", Role.STUDENT),
    ("Tom Teacher", "tom@example.com", Role.TEACHER),
    ("Ava Admin", "admin@example.com", Role.ADMIN),
]

DEMO_BOOKS = [
    ("978-0-13-235088-4", "Clean Code", "Robert C. Martin", 3),
    ("978-1-4493-7332-0", "Designing Data-Intensive Applications", "Martin Kleppmann", 2),
    ("978-0-441-17271-9", "Dune", "Frank Herbert", 1),
]


def seed(db) -> None:
    # quick idempotent seed
    if db.query(User).count() == 0:
        users = UserService(db)
        for name, email, role in DEMO_USERS:
            users.register_user(name, email, role)
    if db.query(Book).count() == 0:
        inventory = InventoryStore(db)
        for isbn, title, author, copies in DEMO_BOOKS:
            inventory.add_book(isbn, title, author, copies)
    logger.info("Seeded sample data")


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(description="Library circulation utilities")
    parser.add_argument("--initdb", action="store_true", help="Create tables")
    parser.add_argument("--seed", action="store_true", help="Seed sample data")
    parser.add_argument("--sweep", action="store_true", help="Mark overdue borrowings and expire reservations")
    args = parser.parse_args(argv)

    configure_logging()
    if args.initdb or args.seed or args.sweep:
        Base.metadata.create_all(bind=engine)
    if args.seed:
        db = SessionLocal()
        try:
            seed(db)
        finally:
            db.close()
    if args.sweep:
        result = Sweeper(SessionLocal, get_settings()).run_all()
        print(f"Marked {result['overdue_borrowings']} overdue, expired {result['expired_reservations']} reservation(s)")
    print("Done")


if __name__ == "__main__":
    main()
