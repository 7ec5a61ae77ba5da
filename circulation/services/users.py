import logging

from sqlalchemy.orm import Session

from circulation.core.clock import utcnow
from circulation.core.database import atomic
from circulation.core.errors import AlreadyExists, InvalidInput, NotFound
from circulation.models.models import Role, User

logger = logging.getLogger("circulation.users")


class UserService:
    def __init__(self, db: Session, clock=utcnow):
        self.db = db
        self.clock = clock

    def register_user(self, name: str, email: str, role: Role = Role.STUDENT) -> User:
        name, email = name.strip(), email.strip().lower()
        if not name or "@" not in email:
            raise InvalidInput("A name and a valid email are required")
        if self.db.query(User).filter(User.email == email).first():
            raise AlreadyExists("Email already registered")
        user = User(name=name, email=email, role=Role(role), is_active=True, joined_at=self.clock())
        with atomic(self.db):
            self.db.add(user)
        self.db.refresh(user)
        logger.info(f"Created user id={user.id} email={user.email} role={user.role.value}")
        return user

    def get_user(self, user_id: int) -> User:
        user = self.db.get(User, user_id, populate_existing=True)
        if user is None:
            raise NotFound(f"User {user_id} not found")
        return user

    def list_users(self, skip: int = 0, limit: int = 50):
        return self.db.query(User).order_by(User.name).offset(skip).limit(limit).all()

    def set_active(self, user_id: int, active: bool) -> User:
        user = self.get_user(user_id)
        with atomic(self.db):
            user.is_active = active
        logger.info(f"User {user_id} {'activated' if active else 'deactivated'}")
        return user
