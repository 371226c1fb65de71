from typing import Callable, Optional
from uuid import UUID, uuid4

import structlog

from core.errors import EmailAlreadyExists, UserNotFound
from core.storage import InMemoryStorage, UniqueViolation, utc_now

from .models import User

logger = structlog.get_logger(__name__)


class UserDirectory:
    """Users who can refer, be referred and own ledger entries.

    Users are never deleted; only the display name may change.
    """

    def __init__(self, storage: InMemoryStorage, clock: Callable = utc_now):
        self.storage = storage
        self.clock = clock

    def create(self, email: str, name: Optional[str] = None) -> User:
        normalized = email.strip().lower()
        row = {
            "id": uuid4(),
            "email": normalized,
            "name": name,
            "created_at": self.clock(),
        }
        try:
            stored = self.storage.insert("users", row)
        except UniqueViolation as exc:
            raise EmailAlreadyExists(f"User with email {normalized} already exists") from exc
        logger.info("user_created", user_id=str(stored["id"]))
        return User(**stored)

    def get(self, user_id: UUID) -> User:
        row = self.storage.get("users", user_id)
        if row is None:
            raise UserNotFound(f"User with ID {user_id} not found")
        return User(**row)

    def get_by_email(self, email: str) -> User:
        row = self.storage.find_unique("users", "email", email.strip().lower())
        if row is None:
            raise UserNotFound(f"User with email {email} not found")
        return User(**row)

    def exists(self, user_id: UUID) -> bool:
        return self.storage.get("users", user_id) is not None

    def rename(self, user_id: UUID, name: str) -> User:
        with self.storage.transaction():
            self.get(user_id)
            return User(**self.storage.update("users", user_id, name=name))

    def list_all(self) -> list[User]:
        rows = self.storage.select("users")
        return [User(**r) for r in reversed(rows)]
