"""Notification repository: the read/update surface behind the inbox.

Uses the dynamic SQL builder with incremental ``param_idx`` for filtered
listing. Every query is scoped to the owning user and skips soft-deleted
rows.
"""

import json
import logging
from typing import Any

from src.alerts.schemas import Notification
from src.notifications.ledger import DeliveryLedger
from src.notifications.schemas import Delivery
from src.storage.database import Database

logger = logging.getLogger(__name__)


class NotificationRepository:
    """Queries and updates on the ``notifications`` table."""

    def __init__(self, database: Database) -> None:
        self._db = database
        self._ledger = DeliveryLedger(database)

    async def list_for_user(
        self,
        user_id: int,
        *,
        read: bool | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Notification]:
        """Notifications for a user, unread first, then newest first.

        Args:
            user_id: Owning user.
            read: Filter by read state.
            limit: Maximum notifications to return.
            offset: Offset for pagination.
        """
        conditions = ["user_id = $1", "deleted_at IS NULL"]
        params: list[Any] = [user_id]
        param_idx = 2

        if read is not None:
            conditions.append(f"read = ${param_idx}")
            params.append(read)
            param_idx += 1

        sql = f"""
            SELECT * FROM notifications
            WHERE {" AND ".join(conditions)}
            ORDER BY read ASC, created_at DESC
            LIMIT ${param_idx} OFFSET ${param_idx + 1}
        """
        params.extend([limit, offset])

        rows = await self._db.fetch(sql, *params)
        return [_row_to_notification(row) for row in rows]

    async def get(self, user_id: int, notification_id: str) -> Notification | None:
        row = await self._db.fetchrow(
            """
            SELECT * FROM notifications
            WHERE notification_id = $1 AND user_id = $2 AND deleted_at IS NULL
            """,
            notification_id,
            user_id,
        )
        if row is None:
            return None
        return _row_to_notification(row)

    async def mark_read(self, user_id: int, notification_id: str) -> Notification | None:
        """Mark one notification read.

        Returns:
            The updated notification, or None if not found for this user.
        """
        row = await self._db.fetchrow(
            """
            UPDATE notifications
            SET read = TRUE, read_at = COALESCE(read_at, NOW())
            WHERE notification_id = $1 AND user_id = $2 AND deleted_at IS NULL
            RETURNING *
            """,
            notification_id,
            user_id,
        )
        if row is None:
            return None
        return _row_to_notification(row)

    async def mark_all_read(self, user_id: int) -> int:
        """Mark every unread notification read; returns how many changed."""
        result = await self._db.execute(
            """
            UPDATE notifications SET read = TRUE, read_at = NOW()
            WHERE user_id = $1 AND read = FALSE AND deleted_at IS NULL
            """,
            user_id,
        )
        return _affected(result)

    async def unread_count(self, user_id: int) -> int:
        count = await self._db.fetchval(
            """
            SELECT COUNT(*) FROM notifications
            WHERE user_id = $1 AND read = FALSE AND deleted_at IS NULL
            """,
            user_id,
        )
        return count or 0

    async def delete(self, user_id: int, notification_id: str) -> bool:
        """Soft-delete a notification.

        Returns:
            True if deleted, False if not found for this user.
        """
        result = await self._db.fetchval(
            """
            UPDATE notifications SET deleted_at = NOW()
            WHERE notification_id = $1 AND user_id = $2 AND deleted_at IS NULL
            RETURNING notification_id
            """,
            notification_id,
            user_id,
        )
        return result is not None

    async def get_by_id(self, notification_id: str) -> Notification | None:
        """Unscoped lookup used by the delivery path."""
        row = await self._db.fetchrow(
            "SELECT * FROM notifications WHERE notification_id = $1",
            notification_id,
        )
        if row is None:
            return None
        return _row_to_notification(row)

    async def get_many(self, notification_ids: list[str]) -> dict[str, Notification]:
        if not notification_ids:
            return {}
        rows = await self._db.fetch(
            "SELECT * FROM notifications WHERE notification_id = ANY($1::text[])",
            notification_ids,
        )
        notifications = [_row_to_notification(row) for row in rows]
        return {n.notification_id: n for n in notifications}

    async def get_deliveries(self, user_id: int, notification_id: str) -> list[Delivery]:
        """Delivery rows of a notification owned by ``user_id``."""
        if await self.get(user_id, notification_id) is None:
            return []
        return await self._ledger.get_for_notification(notification_id)


def _affected(status: str) -> int:
    """Row count from an asyncpg command status such as ``UPDATE 3``."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (AttributeError, ValueError):
        return 0


def _row_to_notification(row: Any) -> Notification:
    """Convert an asyncpg Record to a Notification."""
    metadata = row.get("metadata") or {}
    if isinstance(metadata, str):
        metadata = json.loads(metadata)

    return Notification(
        notification_id=str(row["notification_id"]),
        user_id=row["user_id"],
        alert_id=row.get("alert_id"),
        title=row["title"],
        message=row["message"],
        metadata=metadata,
        read=row.get("read", False),
        read_at=row.get("read_at"),
        created_at=row["created_at"],
    )
