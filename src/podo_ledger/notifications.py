"""Notification sink receiving domain events emitted by the ledger.

The ledger only ever calls :meth:`NotificationSink.emit`. Storage, the
capacity cap and read/unread bookkeeping belong to the sink implementation,
which keeps the ledger's correctness independent from notification delivery.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime
from threading import RLock
from typing import Callable, List, Optional, Protocol, Union

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import DEFAULT_NOTIFICATION_CAPACITY, NotificationKind, NotificationTarget, SheetName


class NotificationSink(Protocol):
    """Anything able to receive ledger events."""

    def emit(
        self,
        kind: NotificationKind,
        message: str,
        *,
        target_type: NotificationTarget = NotificationTarget.ALL,
        target_id: Optional[str] = None,
    ) -> None:
        ...


def matches_target(
    notification: data_manager.NotificationRow,
    target_type: Union[NotificationTarget, str],
    target_id: Optional[str] = None,
) -> bool:
    """Return ``True`` when ``notification`` is addressed to the given audience.

    Broadcasts (``all``) reach every audience. A notification bound to a
    specific id only reaches a reader asking for that same id; readers that do
    not supply an id see every notification of their audience type.
    """

    audience = NotificationTarget(target_type).value
    if notification.target_type not in (NotificationTarget.ALL.value, audience):
        return False
    if target_id and notification.target_id and notification.target_id != target_id:
        return False
    return True


class WorkbookNotificationSink:
    """Notification store kept newest-first on the ``Notifications`` sheet.

    Only the most recent ``capacity`` notifications are retained; emitting
    beyond that drops the oldest entry.
    """

    def __init__(
        self,
        workbook: Workbook,
        *,
        capacity: int = DEFAULT_NOTIFICATION_CAPACITY,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if capacity <= 0:
            raise ValueError("Notification capacity must be positive")
        self.workbook = workbook
        self.capacity = capacity
        self._clock = clock or (lambda: datetime.now(UTC))
        self._lock = RLock()

    def emit(
        self,
        kind: NotificationKind,
        message: str,
        *,
        target_type: NotificationTarget = NotificationTarget.ALL,
        target_id: Optional[str] = None,
    ) -> None:
        with self._lock:
            notifications = self._load()
            now = self._clock()
            notification = data_manager.NotificationRow(
                notification_id=self._next_id(notifications, now),
                kind=NotificationKind(kind).value,
                message=message,
                target_type=NotificationTarget(target_type).value,
                target_id=target_id,
                is_read=False,
                created_at=now.isoformat(),
            )
            notifications.insert(0, notification)
            dropped = len(notifications) - self.capacity
            if dropped > 0:
                del notifications[self.capacity:]
                log.debug("Dropped %d notifications over capacity %d", dropped, self.capacity)
            data_manager.save_collection(self.workbook, SheetName.NOTIFICATIONS, notifications)
            log.info("Emitted %s notification '%s'", notification.kind, notification.notification_id)

    def list_all(self) -> List[data_manager.NotificationRow]:
        with self._lock:
            return self._load()

    def list_for(
        self,
        target_type: Union[NotificationTarget, str],
        target_id: Optional[str] = None,
        *,
        limit: int = 20,
    ) -> List[data_manager.NotificationRow]:
        """Return up to ``limit`` notifications for an audience, newest first."""

        with self._lock:
            matching = [n for n in self._load() if matches_target(n, target_type, target_id)]
        return matching[:limit]

    def unread_count(self, target_type: Union[NotificationTarget, str], target_id: Optional[str] = None) -> int:
        with self._lock:
            return sum(
                1 for n in self._load() if not n.is_read and matches_target(n, target_type, target_id)
            )

    def mark_all_read(self, target_type: Union[NotificationTarget, str], target_id: Optional[str] = None) -> int:
        """Mark every notification of an audience as read.

        Returns:
            int: Number of notifications that changed from unread to read.
        """

        with self._lock:
            notifications = self._load()
            changed = 0
            for index, notification in enumerate(notifications):
                if not notification.is_read and matches_target(notification, target_type, target_id):
                    notifications[index] = replace(notification, is_read=True)
                    changed += 1
            if changed:
                data_manager.save_collection(self.workbook, SheetName.NOTIFICATIONS, notifications)
            log.info(
                "Marked %d notifications read for %s '%s'",
                changed,
                NotificationTarget(target_type).value,
                target_id,
            )
            return changed

    def _load(self) -> List[data_manager.NotificationRow]:
        return data_manager.load_collection(self.workbook, SheetName.NOTIFICATIONS)

    @staticmethod
    def _next_id(existing: List[data_manager.NotificationRow], when: datetime) -> str:
        base = f"NF{when.strftime('%Y%m%d%H%M%S%f')}"
        taken = {n.notification_id for n in existing}
        candidate = base
        suffix = 2
        while candidate in taken:
            candidate = f"{base}-{suffix}"
            suffix += 1
        return candidate
