"""Read access to per-user delivery preferences.

Preferences live in ``notification_preferences`` (one row per user). Users
without a row get config defaults: email enabled if ``users.email`` is set,
SMS off, no quiet hours, default rate limits, immediate merchant alerts.
"""

import logging
from datetime import time
from typing import Any

from src.notifications.config import NotificationConfig
from src.notifications.schemas import DeliveryPreferences, QuietHours
from src.storage.database import Database

logger = logging.getLogger(__name__)

VALID_MERCHANT_MODES: frozenset[str] = frozenset({"immediate", "first_of_day", "daily_digest"})

_SELECT_SQL = """
    SELECT
        u.id AS user_id,
        u.email AS account_email,
        p.email,
        p.email_enabled,
        p.sms_number,
        p.sms_enabled,
        p.quiet_hours_start,
        p.quiet_hours_end,
        p.timezone,
        p.max_per_hour,
        p.max_per_day,
        p.merchant_alert_mode
    FROM users u
    LEFT JOIN notification_preferences p ON p.user_id = u.id
"""


class PreferenceRepository:
    """Loads ``DeliveryPreferences`` for users."""

    def __init__(self, database: Database, config: NotificationConfig | None = None) -> None:
        self._db = database
        self._config = config or NotificationConfig()

    async def get(self, user_id: int) -> DeliveryPreferences:
        """Preferences for ``user_id``; defaults if the user has none stored."""
        row = await self._db.fetchrow(_SELECT_SQL + " WHERE u.id = $1", user_id)
        if row is None:
            logger.warning("No user row for user %s; using default preferences", user_id)
            return self.defaults(user_id)
        return self._row_to_preferences(row)

    async def get_many(self, user_ids: list[int]) -> dict[int, DeliveryPreferences]:
        if not user_ids:
            return {}
        rows = await self._db.fetch(_SELECT_SQL + " WHERE u.id = ANY($1::int[])", user_ids)
        found = {row["user_id"]: self._row_to_preferences(row) for row in rows}
        for user_id in user_ids:
            found.setdefault(user_id, self.defaults(user_id))
        return found

    def defaults(self, user_id: int, email: str | None = None) -> DeliveryPreferences:
        return DeliveryPreferences(
            user_id=user_id,
            email=email,
            email_enabled=email is not None,
            max_per_hour=self._config.default_max_per_hour,
            max_per_day=self._config.default_max_per_day,
        )

    def _row_to_preferences(self, row: Any) -> DeliveryPreferences:
        email = row.get("email") or row.get("account_email")
        prefs = self.defaults(row["user_id"], email)

        if row.get("email_enabled") is not None:
            prefs.email_enabled = bool(row["email_enabled"]) and email is not None
        prefs.sms_number = row.get("sms_number")
        prefs.sms_enabled = bool(row.get("sms_enabled")) and bool(prefs.sms_number)

        start, end = row.get("quiet_hours_start"), row.get("quiet_hours_end")
        if isinstance(start, time) and isinstance(end, time):
            prefs.quiet_hours = QuietHours(
                start=start, end=end, timezone=row.get("timezone") or "UTC",
            )

        if row.get("max_per_hour") is not None:
            prefs.max_per_hour = row["max_per_hour"]
        if row.get("max_per_day") is not None:
            prefs.max_per_day = row["max_per_day"]

        mode = row.get("merchant_alert_mode")
        if mode in VALID_MERCHANT_MODES:
            prefs.merchant_alert_mode = mode
        elif mode is not None:
            logger.warning(
                "Unknown merchant_alert_mode %r for user %s; using immediate",
                mode, row["user_id"],
            )
        return prefs
