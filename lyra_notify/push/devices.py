"""
Tool: Push Device Directory
Purpose: Store push destination tokens per user

Usage:
    from lyra_notify.push.devices import SQLiteDeviceDirectory

    devices = SQLiteDeviceDirectory(db_path)
    await devices.register_device("alice", "ExponentPushToken[xxxx]")
    tokens = await devices.get_active_tokens("alice")
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from abc import ABC, abstractmethod
from pathlib import Path

from lyra_notify.clock import format_timestamp, utcnow
from lyra_notify.errors import PersistenceWriteFailed
from lyra_notify.persistence.database import get_connection

logger = logging.getLogger(__name__)


class DeviceDirectory(ABC):
    @abstractmethod
    async def get_active_tokens(self, user_id: str) -> list[str]:
        """Destination tokens for a user's active devices."""

    @abstractmethod
    async def deactivate_token(self, token: str) -> None:
        """Stop delivering to a token the gateway rejected permanently."""


class SQLiteDeviceDirectory(DeviceDirectory):
    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)

    async def register_device(
        self,
        user_id: str,
        token: str,
        platform: str = "expo",
        device_name: str | None = None,
    ) -> str:
        """
        Register (or reactivate) a push destination.

        Args:
            user_id: The user ID
            token: Gateway destination token
            platform: 'expo', 'ios', 'android', 'web'
            device_name: User-provided device name

        Returns:
            The device ID
        """
        if not token:
            raise ValueError("Missing destination token")

        conn = get_connection(self.db_path)
        try:
            with conn:
                existing = conn.execute(
                    "SELECT id FROM push_devices WHERE token = ?", (token,)
                ).fetchone()

                if existing:
                    # Reactivate, possibly for a different user on the same device
                    device_id = existing["id"]
                    conn.execute(
                        """
                        UPDATE push_devices
                        SET user_id = ?, platform = ?, device_name = ?,
                            is_active = TRUE, last_used_at = ?
                        WHERE id = ?
                        """,
                        (user_id, platform, device_name, format_timestamp(utcnow()), device_id),
                    )
                else:
                    device_id = f"dev_{uuid.uuid4().hex[:12]}"
                    conn.execute(
                        """
                        INSERT INTO push_devices (id, user_id, token, platform, device_name)
                        VALUES (?, ?, ?, ?, ?)
                        """,
                        (device_id, user_id, token, platform, device_name),
                    )
        except sqlite3.Error as e:
            raise PersistenceWriteFailed(f"Failed to register device: {e}") from e
        finally:
            conn.close()

        return device_id

    async def get_active_tokens(self, user_id: str) -> list[str]:
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                """
                SELECT token FROM push_devices
                WHERE user_id = ? AND is_active = TRUE
                ORDER BY created_at ASC
                """,
                (user_id,),
            ).fetchall()
        finally:
            conn.close()
        return [row["token"] for row in rows]

    async def deactivate_token(self, token: str) -> None:
        conn = get_connection(self.db_path)
        try:
            with conn:
                conn.execute(
                    "UPDATE push_devices SET is_active = FALSE WHERE token = ?", (token,)
                )
        except sqlite3.Error as e:
            raise PersistenceWriteFailed(f"Failed to deactivate token: {e}") from e
        finally:
            conn.close()
        logger.info(f"Deactivated push token {token[:12]}...")
