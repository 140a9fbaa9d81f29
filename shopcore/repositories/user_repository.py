"""User repository implementation."""

from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from loguru import logger

from shopcore.core.exceptions import RecordNotFoundError
from shopcore.models.database import Database
from shopcore.repositories.base import BaseRepository, build_update_clause
from shopcore.repositories.user_entity import User

ALLOWED_USER_UPDATE_FIELDS = frozenset(
    {"email", "password_hash", "first_name", "last_name", "phone", "role", "status"}
)


class UserRepository(BaseRepository[User]):
    """Repository for user account operations.

    Passwords arrive already hashed; this layer never sees plaintext.
    Deleted users are kept with ``deleted_at`` set and are invisible to reads.
    """

    def __init__(self, database: Database):
        super().__init__(database)

    async def get_by_id(self, id: UUID) -> Optional[User]:
        return await self.db.fetch_one(
            "SELECT * FROM users WHERE id = $1 AND deleted_at IS NULL",
            [id],
            label="findUserById",
            row_type=User,
        )

    async def get_by_email(self, email: str) -> Optional[User]:
        """
        Get user by email (case-insensitive).

        Args:
            email: User email

        Returns:
            User or None if not found
        """
        return await self.db.fetch_one(
            "SELECT * FROM users WHERE LOWER(email) = LOWER($1) AND deleted_at IS NULL",
            [email],
            label="findUserByEmail",
            row_type=User,
        )

    async def email_exists(self, email: str) -> bool:
        found = await self.db.fetch_value(
            "SELECT EXISTS(SELECT 1 FROM users WHERE LOWER(email) = LOWER($1) AND deleted_at IS NULL)",
            [email],
            label="emailExists",
        )
        return bool(found)

    async def get_all(self, limit: int = 100) -> List[User]:
        return await self.db.select(
            "SELECT * FROM users WHERE deleted_at IS NULL ORDER BY created_at DESC LIMIT $1",
            [limit],
            label="findAllUsers",
            row_type=User,
        )

    async def create(self, data: Dict[str, Any]) -> User:
        """
        Create a user.

        Args:
            data: User data (email, password_hash, first_name, last_name required)

        Returns:
            Created User

        Raises:
            ValueError: If a required field is missing
        """
        for field in ("email", "password_hash", "first_name", "last_name"):
            if not data.get(field):
                raise ValueError(f"Missing required field: {field}")

        created = await self.db.insert(
            """
            INSERT INTO users (
                id, email, password_hash, first_name, last_name, phone, role, status,
                email_verified, login_count, created_at, updated_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, 'approved', false, 0, NOW(), NOW())
            RETURNING *
            """,
            [
                uuid4(),
                data["email"],
                data["password_hash"],
                data["first_name"],
                data["last_name"],
                data.get("phone"),
                data.get("role", "customer"),
            ],
            label="createUser",
            row_type=User,
        )
        logger.info(f"Created user {created[0].id}")
        return created[0]

    async def update(self, id: UUID, data: Dict[str, Any]) -> User:
        """
        Update user.

        Raises:
            RecordNotFoundError: If user not found
            ValueError: If data contains fields that cannot be updated
        """
        updates, params = build_update_clause(data, ALLOWED_USER_UPDATE_FIELDS)
        updates.append("updated_at = NOW()")
        params.append(id)

        rows = await self.db.update(
            f"UPDATE users SET {', '.join(updates)} "
            f"WHERE id = ${len(params)} AND deleted_at IS NULL RETURNING *",
            params,
            label="updateUser",
            row_type=User,
        )
        if not rows:
            raise RecordNotFoundError("User", id)
        logger.info(f"Updated user {id}")
        return rows[0]

    async def update_last_login(self, id: UUID) -> None:
        """
        Record a successful sign-in.

        Raises:
            RecordNotFoundError: If user not found
        """
        rows = await self.db.update(
            """
            UPDATE users
            SET last_login_at = NOW(), login_count = login_count + 1, updated_at = NOW()
            WHERE id = $1 AND deleted_at IS NULL
            RETURNING id
            """,
            [id],
            label="updateLastLogin",
        )
        if not rows:
            raise RecordNotFoundError("User", id)

    async def delete(self, id: UUID) -> bool:
        rows = await self.db.update(
            "UPDATE users SET deleted_at = NOW(), updated_at = NOW() "
            "WHERE id = $1 AND deleted_at IS NULL RETURNING id",
            [id],
            label="deleteUser",
        )
        deleted = len(rows) > 0
        if deleted:
            logger.info(f"Deleted user {id}")
        return deleted
