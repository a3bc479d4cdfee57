import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from uuid import UUID

from sqlalchemy import delete, select, update
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from app.core.errors import NotFoundError, OwnershipError
from app.core.security import decrypt_secret, encrypt_secret
from app.domain.models.social_connection import Platform, SocialConnection, as_utc

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConnectionCredentials:
    user_id: str
    platform: Platform
    platform_user_id: str
    platform_username: str | None
    access_token: str
    refresh_token: str | None
    expires_at: datetime | None
    scope: str | None = None


def decrypted_access_token(connection: SocialConnection) -> str:
    if not connection.access_token:
        return ""
    return decrypt_secret(connection.access_token)


def decrypted_refresh_token(connection: SocialConnection) -> str:
    if not connection.refresh_token:
        return ""
    return decrypt_secret(connection.refresh_token)


def is_token_expiring(connection: SocialConnection, *, within_seconds: int) -> bool:
    expires_at = as_utc(connection.expires_at)
    if expires_at is None:
        return False
    return expires_at <= datetime.now(UTC) + timedelta(seconds=within_seconds)


def expires_at_from(expires_in_seconds: int) -> datetime:
    return datetime.now(UTC) + timedelta(seconds=max(1, int(expires_in_seconds)))


def _parse_connection_id(value: object) -> UUID | None:
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except (TypeError, ValueError):
        return None


class ConnectionStore:
    """Credential records keyed by ``(user_id, platform)``.

    The store is always bound to the service database session. Callers prove
    who they are elsewhere; ownership is enforced here on every read of a
    connection by id.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    def _insert(self):
        dialect = self.db.get_bind().dialect.name
        if dialect == "postgresql":
            return postgresql_insert
        if dialect == "sqlite":
            return sqlite_insert
        raise RuntimeError(f"Unsupported database dialect for connection upsert: {dialect}")

    def upsert(self, credentials: ConnectionCredentials) -> SocialConnection:
        now = datetime.now(UTC)
        values = {
            "user_id": credentials.user_id,
            "platform": Platform(credentials.platform).value,
            "platform_user_id": credentials.platform_user_id,
            "platform_username": credentials.platform_username,
            "access_token": encrypt_secret(credentials.access_token),
            "refresh_token": encrypt_secret(credentials.refresh_token) if credentials.refresh_token else None,
            "expires_at": credentials.expires_at,
            "scope": credentials.scope,
            "updated_at": now,
        }
        insert = self._insert()
        statement = insert(SocialConnection).values(created_at=now, **values)
        statement = statement.on_conflict_do_update(
            index_elements=[SocialConnection.user_id, SocialConnection.platform],
            set_=values,
        )
        self.db.execute(statement)
        self.db.commit()

        connection = self.db.execute(
            select(SocialConnection)
            .where(
                SocialConnection.user_id == credentials.user_id,
                SocialConnection.platform == values["platform"],
            )
            .execution_options(populate_existing=True)
        ).scalar_one()
        logger.info(
            "social_connection_upserted connection_id=%s user_id=%s platform=%s",
            connection.id,
            connection.user_id,
            connection.platform,
        )
        return connection

    def update_tokens(
        self,
        connection_id: UUID,
        *,
        access_token: str,
        refresh_token: str | None,
        expires_at: datetime | None,
    ) -> SocialConnection:
        """Replace the credentials of an existing connection.

        Never recreates a row: a connection removed while its refresh was in
        flight stays removed and ``NotFoundError`` is raised.
        """
        result = self.db.execute(
            update(SocialConnection)
            .where(SocialConnection.id == connection_id)
            .values(
                access_token=encrypt_secret(access_token),
                refresh_token=encrypt_secret(refresh_token) if refresh_token else None,
                expires_at=expires_at,
                updated_at=datetime.now(UTC),
            )
        )
        self.db.commit()
        if not result.rowcount:
            logger.warning("social_connection_token_update_missing connection_id=%s", connection_id)
            raise NotFoundError("Connection not found", details={"connection_id": str(connection_id)})
        return self.db.execute(
            select(SocialConnection)
            .where(SocialConnection.id == connection_id)
            .execution_options(populate_existing=True)
        ).scalar_one()

    def _get(self, connection_id: object) -> SocialConnection | None:
        parsed = _parse_connection_id(connection_id)
        if parsed is None:
            return None
        return self.db.execute(
            select(SocialConnection)
            .where(SocialConnection.id == parsed)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def get_for_use(self, connection_id: object, requesting_user_id: str) -> SocialConnection:
        connection = self._get(connection_id)
        if connection is None:
            raise NotFoundError("Connection not found", details={"connection_id": str(connection_id)})
        if connection.user_id != requesting_user_id:
            logger.warning(
                "social_connection_ownership_denied connection_id=%s requesting_user_id=%s",
                connection.id,
                requesting_user_id,
            )
            raise OwnershipError("Connection does not belong to the requesting user")
        return connection

    def exists(self, connection_id: object) -> bool:
        parsed = _parse_connection_id(connection_id)
        if parsed is None:
            return False
        found = self.db.execute(select(SocialConnection.id).where(SocialConnection.id == parsed)).scalar_one_or_none()
        return found is not None

    def list_for_user(self, user_id: str) -> list[SocialConnection]:
        rows = self.db.execute(
            select(SocialConnection)
            .where(SocialConnection.user_id == user_id)
            .order_by(SocialConnection.created_at.asc())
        ).scalars().all()
        return list(rows)

    def disconnect(self, user_id: str, platform: Platform) -> bool:
        result = self.db.execute(
            delete(SocialConnection).where(
                SocialConnection.user_id == user_id,
                SocialConnection.platform == Platform(platform).value,
            )
        )
        self.db.commit()
        removed = bool(result.rowcount)
        logger.info("social_connection_disconnected user_id=%s platform=%s removed=%s", user_id, platform, removed)
        return removed

    def set_auto_post(self, user_id: str, platform: Platform, enabled: bool) -> SocialConnection:
        result = self.db.execute(
            update(SocialConnection)
            .where(
                SocialConnection.user_id == user_id,
                SocialConnection.platform == Platform(platform).value,
            )
            .values(auto_post_enabled=enabled, updated_at=datetime.now(UTC))
        )
        self.db.commit()
        if not result.rowcount:
            raise NotFoundError(f"No {Platform(platform).value} connection for user")
        return self.db.execute(
            select(SocialConnection)
            .where(
                SocialConnection.user_id == user_id,
                SocialConnection.platform == Platform(platform).value,
            )
            .execution_options(populate_existing=True)
        ).scalar_one()
