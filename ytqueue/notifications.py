"""Keeps the list of user-facing notifications in a JSON file."""
import asyncio
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiofiles
import aiofiles.os

from .exceptions import ValidationError

DOWNLOAD_COMPLETE = 'download_complete'
UPDATE_AVAILABLE = 'update_available'


class NotificationService:
    """
    Append-only log of events the UI should show the user.

    The file holds a single JSON array. A notification's timestamp doubles as
    its id for dismissal.
    """
    def __init__(self, notifications_file: Path):
        self.notifications_file = Path(notifications_file)
        self.logger = logging.getLogger(__name__)
        self._lock = asyncio.Lock()

    async def _read(self) -> List[Dict[str, Any]]:
        try:
            async with aiofiles.open(self.notifications_file, 'r', encoding='utf-8') as f:
                notifications = json.loads(await f.read())
        except FileNotFoundError:
            self.logger.debug("No notifications file found, returning empty list")
            return []
        except (ValueError, OSError) as e:
            self.logger.warning(f"Error reading notifications file, returning empty list: {e}")
            return []
        if not isinstance(notifications, list):
            self.logger.warning("Notifications file does not hold a list, ignoring it")
            return []
        return notifications

    async def _write(self, notifications: List[Dict[str, Any]]):
        await aiofiles.os.makedirs(self.notifications_file.parent, exist_ok=True)
        temp_path = self.notifications_file.with_name(self.notifications_file.name + '.tmp')
        async with aiofiles.open(temp_path, 'w', encoding='utf-8') as f:
            await f.write(json.dumps(notifications, indent=2))
        await aiofiles.os.replace(temp_path, self.notifications_file)

    async def get_notifications(self) -> List[Dict[str, Any]]:
        return await self._read()

    async def add_notification(self, type: str, message: str, **extra: Any) -> Dict[str, Any]:
        """Appends a notification and returns it."""
        notification = {
            'type': type,
            'message': message,
            'timestamp': datetime.now(timezone.utc).isoformat(),
            **extra,
        }
        async with self._lock:
            notifications = await self._read()
            notifications.append(notification)
            await self._write(notifications)
        self.logger.debug(f"Added notification: {type} - {message}")
        return notification

    async def add_download_completion_notification(self, url: str, job_id: str,
                                                   filename: Optional[str] = None) -> Dict[str, Any]:
        message = f"Download completed: {filename}" if filename else "Download completed"
        return await self.add_notification(DOWNLOAD_COMPLETE, message, url=url, job_id=job_id, filename=filename)

    async def dismiss_notification(self, notification_id: str) -> int:
        """
        Removes the notifications whose timestamp equals ``notification_id``.

        Returns:
            How many were removed (0 if it was already gone).

        Raises:
            ValidationError: If no id was given.
        """
        if not notification_id:
            raise ValidationError("Notification ID is required")

        async with self._lock:
            notifications = await self._read()
            remaining = [n for n in notifications if n.get('timestamp') != notification_id]
            await self._write(remaining)

        removed = len(notifications) - len(remaining)
        if removed:
            self.logger.debug(f"Dismissed notification: {notification_id}")
        else:
            self.logger.warning(f"Notification not found for dismissal: {notification_id}")
        return removed

    async def clear_all_notifications(self) -> int:
        async with self._lock:
            count = len(await self._read())
            await self._write([])
        self.logger.info(f"Cleared {count} notification(s)")
        return count

    async def get_notification_count(self) -> int:
        return len(await self._read())

    async def get_notifications_by_type(self, type: str) -> List[Dict[str, Any]]:
        return [n for n in await self._read() if n.get('type') == type]
