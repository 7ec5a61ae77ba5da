from dataclasses import dataclass

from circulation.models.models import Role


@dataclass(frozen=True)
class BorrowingPolicy:
    max_books: int
    max_days: int
    max_renewals: int


BORROWING_POLICIES = {
    Role.STUDENT: BorrowingPolicy(max_books=5, max_days=30, max_renewals=2),
    Role.TEACHER: BorrowingPolicy(max_books=10, max_days=90, max_renewals=2),
    Role.ADMIN: BorrowingPolicy(max_books=999, max_days=30, max_renewals=2),
}


def policy_for(role: Role) -> BorrowingPolicy:
    return BORROWING_POLICIES[Role(role)]
