"""Alert repository: alert rules, the entities they reference, and emit.

Follows the asyncpg repository pattern: thin methods over ``Database``,
``_row_to_*`` converters at the bottom of the module. Entity tables
(accounts, goals, budgets, bills, transactions) belong to other services
and are read only.

``emit`` is the one write path of an evaluation run: the notification, the
alert's updated dedup state and the delivery rows commit together or not
at all.
"""

import json
import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from src.alerts.entities import Account, Bill, Budget, Goal, Transaction
from src.alerts.errors import StaleAlertError
from src.alerts.schemas import Alert, Notification
from src.notifications.ledger import insert_deliveries
from src.notifications.schemas import Delivery
from src.storage.database import Database

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS alerts (
    alert_id            SERIAL PRIMARY KEY,
    user_id             INTEGER NOT NULL,
    alert_type          TEXT NOT NULL,
    name                TEXT NOT NULL,
    conditions          JSONB NOT NULL DEFAULT '{}',
    source_type         TEXT,
    source_id           INTEGER,
    email_enabled       BOOLEAN NOT NULL DEFAULT TRUE,
    sms_enabled         BOOLEAN NOT NULL DEFAULT FALSE,
    active              BOOLEAN NOT NULL DEFAULT TRUE,
    last_triggered_at   TIMESTAMPTZ,
    evaluation_metadata JSONB NOT NULL DEFAULT '{}',
    version             INTEGER NOT NULL DEFAULT 0,
    created_at          TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at          TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    deleted_at          TIMESTAMPTZ
);
CREATE INDEX IF NOT EXISTS idx_alerts_user_active
    ON alerts (user_id) WHERE active AND deleted_at IS NULL;

CREATE TABLE IF NOT EXISTS notifications (
    notification_id TEXT PRIMARY KEY,
    user_id         INTEGER NOT NULL,
    alert_id        INTEGER REFERENCES alerts (alert_id) ON DELETE SET NULL,
    title           TEXT NOT NULL,
    message         TEXT NOT NULL,
    metadata        JSONB NOT NULL DEFAULT '{}',
    read            BOOLEAN NOT NULL DEFAULT FALSE,
    read_at         TIMESTAMPTZ,
    created_at      TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    deleted_at      TIMESTAMPTZ
);
CREATE INDEX IF NOT EXISTS idx_notifications_user_created
    ON notifications (user_id, created_at DESC);
CREATE INDEX IF NOT EXISTS idx_notifications_alert_created
    ON notifications (alert_id, created_at DESC);

CREATE TABLE IF NOT EXISTS deliveries (
    delivery_id        TEXT PRIMARY KEY,
    notification_id    TEXT NOT NULL REFERENCES notifications (notification_id) ON DELETE CASCADE,
    channel            TEXT NOT NULL,
    destination        TEXT NOT NULL,
    status             TEXT NOT NULL DEFAULT 'pending',
    attempts           INTEGER NOT NULL DEFAULT 0,
    provider_reference TEXT,
    error              TEXT,
    created_at         TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    sent_at            TIMESTAMPTZ,
    delivered_at       TIMESTAMPTZ,
    failed_at          TIMESTAMPTZ
);
CREATE INDEX IF NOT EXISTS idx_deliveries_notification_channel
    ON deliveries (notification_id, channel);
CREATE INDEX IF NOT EXISTS idx_deliveries_status_created
    ON deliveries (status, created_at);
CREATE INDEX IF NOT EXISTS idx_deliveries_provider_reference
    ON deliveries (provider_reference) WHERE provider_reference IS NOT NULL;

CREATE TABLE IF NOT EXISTS dead_letters (
    dead_letter_id  TEXT PRIMARY KEY,
    delivery_id     TEXT NOT NULL,
    notification_id TEXT NOT NULL,
    channel         TEXT NOT NULL,
    destination     TEXT NOT NULL,
    reason          TEXT NOT NULL,
    attempts        INTEGER NOT NULL,
    payload         JSONB NOT NULL DEFAULT '{}',
    replayed_at     TIMESTAMPTZ,
    created_at      TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS notification_preferences (
    user_id             INTEGER PRIMARY KEY,
    email               TEXT,
    email_enabled       BOOLEAN,
    sms_number          TEXT,
    sms_enabled         BOOLEAN,
    quiet_hours_start   TIME,
    quiet_hours_end     TIME,
    timezone            TEXT,
    max_per_hour        INTEGER,
    max_per_day         INTEGER,
    merchant_alert_mode TEXT
);
"""


class AlertRepository:
    """Repository for alert rules, referenced entities and notification emit."""

    def __init__(self, database: Database) -> None:
        self._db = database

    async def create_tables(self) -> None:
        """Create the engine's own tables if they do not exist."""
        await self._db.execute(SCHEMA_SQL)
        logger.info("Alert engine schema ensured")

    # -- Alerts ---------------------------------------------------------------

    async def get_active_alerts(
        self,
        user_id: int,
        alert_types: frozenset[str] | list[str] | None = None,
    ) -> list[Alert]:
        """Active, non-deleted alerts of a user, optionally filtered by type."""
        conditions = ["user_id = $1", "active = TRUE", "deleted_at IS NULL"]
        params: list[Any] = [user_id]
        param_idx = 2

        if alert_types is not None:
            conditions.append(f"alert_type = ANY(${param_idx}::text[])")
            params.append(sorted(alert_types))
            param_idx += 1

        sql = f"""
            SELECT * FROM alerts
            WHERE {" AND ".join(conditions)}
            ORDER BY alert_id
        """
        rows = await self._db.fetch(sql, *params)
        return [_row_to_alert(row) for row in rows]

    async def get_by_id(self, alert_id: int) -> Alert | None:
        row = await self._db.fetchrow(
            "SELECT * FROM alerts WHERE alert_id = $1 AND deleted_at IS NULL",
            alert_id,
        )
        if row is None:
            return None
        return _row_to_alert(row)

    async def get_user_ids_with_active_alerts(
        self,
        after_user_id: int | None = None,
        limit: int = 100,
        alert_types: frozenset[str] | list[str] | None = None,
    ) -> list[int]:
        """One page of user ids, ordered, strictly after the cursor."""
        conditions = ["active = TRUE", "deleted_at IS NULL"]
        params: list[Any] = []
        param_idx = 1

        if after_user_id is not None:
            conditions.append(f"user_id > ${param_idx}")
            params.append(after_user_id)
            param_idx += 1

        if alert_types is not None:
            conditions.append(f"alert_type = ANY(${param_idx}::text[])")
            params.append(sorted(alert_types))
            param_idx += 1

        sql = f"""
            SELECT DISTINCT user_id FROM alerts
            WHERE {" AND ".join(conditions)}
            ORDER BY user_id
            LIMIT ${param_idx}
        """
        params.append(limit)
        rows = await self._db.fetch(sql, *params)
        return [row["user_id"] for row in rows]

    async def has_notification_since(self, alert_id: int, since: datetime) -> bool:
        """Whether ``alert_id`` produced a notification at or after ``since``."""
        result = await self._db.fetchval(
            """
            SELECT EXISTS (
                SELECT 1 FROM notifications
                WHERE alert_id = $1 AND created_at >= $2
            )
            """,
            alert_id,
            since,
        )
        return bool(result)

    async def emit(
        self,
        alert: Alert,
        notification: Notification,
        deliveries: list[Delivery],
    ) -> Notification:
        """Persist notification, alert state and deliveries atomically.

        The alert update is guarded by ``version``; a concurrent emit for the
        same alert makes this one roll back.

        Raises:
            StaleAlertError: The alert row moved past ``alert.version``.
        """
        async with self._db.transaction() as conn:
            await conn.execute(
                """
                INSERT INTO notifications (
                    notification_id, user_id, alert_id, title, message,
                    metadata, read, created_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                """,
                notification.notification_id,
                notification.user_id,
                notification.alert_id,
                notification.title,
                notification.message,
                notification.metadata,
                notification.read,
                notification.created_at,
            )

            new_version = await conn.fetchval(
                """
                UPDATE alerts
                SET evaluation_metadata = $3,
                    last_triggered_at = $4,
                    version = version + 1,
                    updated_at = NOW()
                WHERE alert_id = $1 AND version = $2
                RETURNING version
                """,
                alert.alert_id,
                alert.version,
                alert.evaluation_metadata,
                alert.last_triggered_at,
            )
            if new_version is None:
                raise StaleAlertError(alert.alert_id, alert.version)

            if deliveries:
                await insert_deliveries(conn, deliveries)

        alert.version = new_version
        return notification

    # -- Referenced entities (read only) --------------------------------------
    #
    # Loaders are scoped to the alert owner and skip archived or deleted rows;
    # an id that does not resolve leaves the alert without its entity.

    async def get_accounts(self, user_id: int, account_ids: list[int]) -> dict[int, Account]:
        if not account_ids:
            return {}
        rows = await self._db.fetch(
            """
            SELECT id, user_id, name, balance FROM accounts
            WHERE id = ANY($1::int[]) AND user_id = $2 AND archived_at IS NULL
            """,
            account_ids,
            user_id,
        )
        return {row["id"]: _row_to_account(row) for row in rows}

    async def get_goals(self, user_id: int, goal_ids: list[int]) -> dict[int, Goal]:
        if not goal_ids:
            return {}
        rows = await self._db.fetch(
            """
            SELECT id, user_id, name, goal_type, target_amount, current_amount, metadata
            FROM goals
            WHERE id = ANY($1::int[]) AND user_id = $2 AND deleted_at IS NULL
            """,
            goal_ids,
            user_id,
        )
        return {row["id"]: _row_to_goal(row) for row in rows}

    async def get_bills(self, user_id: int, bill_ids: list[int]) -> dict[int, Bill]:
        if not bill_ids:
            return {}
        rows = await self._db.fetch(
            """
            SELECT id, user_id, name, amount, due_date, frequency
            FROM bills
            WHERE id = ANY($1::int[]) AND user_id = $2 AND deleted_at IS NULL
            """,
            bill_ids,
            user_id,
        )
        return {row["id"]: _row_to_bill(row) for row in rows}

    async def get_budgets(
        self,
        user_id: int,
        budget_ids: list[int],
        period_start: date,
    ) -> dict[int, Budget]:
        """Budgets with spend for the month starting at ``period_start``.

        Spend is the sum of ``abs(amount)`` over non-deleted negative
        transactions of the budget owner on the budget's accounts (all of the
        owner's accounts when the budget lists none).
        """
        if not budget_ids:
            return {}
        rows = await self._db.fetch(
            """
            SELECT b.id, b.user_id, b.name, b.amount, b.account_ids,
                   COALESCE(SUM(ABS(t.amount)), 0) AS spent
            FROM budgets b
            LEFT JOIN transactions t
              ON t.user_id = b.user_id
             AND t.amount < 0
             AND t.deleted_at IS NULL
             AND t.date >= $3
             AND t.date < ($3::date + INTERVAL '1 month')
             AND (
                   b.account_ids IS NULL
                   OR cardinality(b.account_ids) = 0
                   OR t.account_id = ANY(b.account_ids)
             )
            WHERE b.id = ANY($1::int[]) AND b.user_id = $2 AND b.deleted_at IS NULL
            GROUP BY b.id, b.user_id, b.name, b.amount, b.account_ids
            """,
            budget_ids,
            user_id,
            period_start,
        )
        return {row["id"]: _row_to_budget(row) for row in rows}

    async def get_transaction(self, transaction_id: int) -> Transaction | None:
        row = await self._db.fetchrow(
            """
            SELECT id, user_id, account_id, amount, merchant_name, description, date
            FROM transactions WHERE id = $1 AND deleted_at IS NULL
            """,
            transaction_id,
        )
        if row is None:
            return None
        return _row_to_transaction(row)


def _dec(value: Any) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


def _json_field(value: Any) -> dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, str):
        return json.loads(value)
    return dict(value)


def _row_to_alert(row: Any) -> Alert:
    """Convert an asyncpg Record to an Alert."""
    return Alert(
        alert_id=row["alert_id"],
        user_id=row["user_id"],
        alert_type=row["alert_type"],
        name=row["name"],
        conditions=_json_field(row.get("conditions")),
        source_type=row.get("source_type"),
        source_id=row.get("source_id"),
        email_enabled=row.get("email_enabled", True),
        sms_enabled=row.get("sms_enabled", False),
        active=row.get("active", True),
        last_triggered_at=row.get("last_triggered_at"),
        evaluation_metadata=_json_field(row.get("evaluation_metadata")),
        version=row.get("version", 0),
    )


def _row_to_account(row: Any) -> Account:
    return Account(
        account_id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        balance=_dec(row["balance"]),
    )


def _row_to_goal(row: Any) -> Goal:
    metadata = _json_field(row.get("metadata"))
    initial = metadata.get("initial_amount")
    return Goal(
        goal_id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        goal_type=row.get("goal_type") or "savings",
        target_amount=_dec(row["target_amount"]),
        current_amount=_dec(row["current_amount"]),
        initial_amount=Decimal(str(initial)) if initial is not None else None,
    )


def _row_to_bill(row: Any) -> Bill:
    return Bill(
        bill_id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        amount=_dec(row["amount"]),
        due_date=row["due_date"],
        frequency=row.get("frequency") or "monthly",
    )


def _row_to_budget(row: Any) -> Budget:
    return Budget(
        budget_id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        budget_amount=_dec(row["amount"]),
        spent=_dec(row["spent"]),
        account_ids=list(row.get("account_ids") or []),
    )


def _row_to_transaction(row: Any) -> Transaction:
    return Transaction(
        transaction_id=row["id"],
        user_id=row["user_id"],
        account_id=row["account_id"],
        amount=_dec(row["amount"]),
        merchant_name=row.get("merchant_name"),
        description=row.get("description"),
        posted_at=row.get("date"),
    )
