"""
Notification scheduler for arbitration alerts.

Maps arbitration events to a small set of mutually exclusive,
auto-expiring alert categories. Rules:
- one timer per category; a new event of the same category replaces it
- ``offer_received`` and ``request_received`` hide each other, and
  either one also hides a request Result banner
- a controller change hides everything at once, regardless of timers
- controller-facing categories only show on the controller, the offer
  only shows on a non-controller
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

import structlog

from conductor.core.clock import TimerHandle, TimerScheduler
from conductor.core.config import DEFAULT_CONFIG, ArbitrationConfig
from conductor.peer.state import AnyRequestState, Idle, Result, is_expiring

logger = structlog.get_logger()


class NotificationCategory(StrEnum):
    """Alert categories a peer can show."""

    REQUEST_RECEIVED = "request_received"
    OFFER_RECEIVED = "offer_received"
    OFFER_SENT = "offer_sent"
    OFFER_ACCEPTED = "offer_accepted"
    OFFER_DECLINED = "offer_declined"
    REQUEST_STATUS = "request_status"  # projection of LocalRequestState


CONTROLLER_FACING = frozenset({
    NotificationCategory.REQUEST_RECEIVED,
    NotificationCategory.OFFER_SENT,
    NotificationCategory.OFFER_ACCEPTED,
    NotificationCategory.OFFER_DECLINED,
})

LISTENER_FACING = frozenset({NotificationCategory.OFFER_RECEIVED})

# Each side of a pair hides the other when it arrives.
EXCLUSIVE_PAIRS = {
    NotificationCategory.OFFER_RECEIVED: NotificationCategory.REQUEST_RECEIVED,
    NotificationCategory.REQUEST_RECEIVED: NotificationCategory.OFFER_RECEIVED,
}


@dataclass
class Notification:
    """Visibility and expiry for one category."""

    category: NotificationCategory
    visible: bool = False
    payload: Any = None
    shown_at: float | None = None
    expires_at: float | None = None
    timer: TimerHandle | None = field(default=None, repr=False)


class NotificationScheduler:
    """Per-peer alert visibility with auto-dismiss timers."""

    def __init__(
        self,
        timers: TimerScheduler,
        config: ArbitrationConfig = DEFAULT_CONFIG,
        is_controller: Callable[[], bool] = lambda: False,
    ) -> None:
        self._timers = timers
        self._is_controller = is_controller
        self._durations: dict[NotificationCategory, int | None] = {
            NotificationCategory.REQUEST_RECEIVED: config.request_received_ms,
            NotificationCategory.OFFER_RECEIVED: config.offer_received_ms,
            NotificationCategory.OFFER_SENT: config.offer_sent_ms,
            NotificationCategory.OFFER_ACCEPTED: config.offer_accepted_ms,
            NotificationCategory.OFFER_DECLINED: config.offer_declined_ms,
        }
        self._notifications = {c: Notification(category=c) for c in NotificationCategory}
        self._log = logger.bind(component="notifications")

    # --- Queries ---

    def active_categories(self) -> set[NotificationCategory]:
        return {c for c, n in self._notifications.items() if n.visible}

    def is_visible(self, category: NotificationCategory) -> bool:
        return self._notifications[category].visible

    def get(self, category: NotificationCategory) -> Notification:
        return self._notifications[category]

    def snapshot(self) -> dict[NotificationCategory, tuple[bool, float | None]]:
        """Visible flag and expiry per category."""
        return {c: (n.visible, n.expires_at) for c, n in self._notifications.items()}

    # --- Events ---

    def on_event(self, category: NotificationCategory | str, payload: Any = None) -> bool:
        """
        Show an alert for ``category``.

        Returns:
            True if the alert is now visible, False if role gating dropped it
        """
        category = NotificationCategory(category)
        if category == NotificationCategory.REQUEST_STATUS:
            return self.project_request_state(payload)

        controller = self._is_controller()
        if (category in CONTROLLER_FACING and not controller) or (
            category in LISTENER_FACING and controller
        ):
            self._log.debug("notification_gated", category=category, is_controller=controller)
            return False

        counterpart = EXCLUSIVE_PAIRS.get(category)
        if counterpart is not None:
            self._hide(counterpart)
            self._hide_result()

        self._show(category, payload, self._durations[category])
        return True

    def project_request_state(self, state: AnyRequestState) -> bool:
        """Mirror the local request state into the request-status banner."""
        if isinstance(state, Idle):
            self._hide(NotificationCategory.REQUEST_STATUS)
            return False
        duration = None
        if is_expiring(state):
            duration = max(state.until - self._timers.now(), 0)  # type: ignore[union-attr]
        self._show(NotificationCategory.REQUEST_STATUS, state, duration)
        return True

    def dismiss(self, category: NotificationCategory | str) -> None:
        """Hide one category, e.g. when the user closes its banner."""
        self._hide(NotificationCategory(category))

    def reset(self) -> None:
        """Hide every category at once, cancelling all running timers."""
        for notification in self._notifications.values():
            self._clear(notification)
        self._log.debug("notifications_reset")

    # --- Internals ---

    def _show(self, category: NotificationCategory, payload: Any, duration: float | None) -> None:
        notification = self._notifications[category]
        if notification.timer is not None:
            notification.timer.cancel()
            notification.timer = None

        now = self._timers.now()
        notification.visible = True
        notification.payload = payload
        notification.shown_at = now
        notification.expires_at = None if duration is None else now + duration
        if duration is not None:
            notification.timer = self._timers.call_later(duration, lambda: self._expire(category))
        self._log.debug("notification_shown", category=category, expires_at=notification.expires_at)

    def _expire(self, category: NotificationCategory) -> None:
        notification = self._notifications[category]
        notification.timer = None
        self._clear(notification)

    def _hide(self, category: NotificationCategory) -> None:
        self._clear(self._notifications[category])

    def _hide_result(self) -> None:
        status = self._notifications[NotificationCategory.REQUEST_STATUS]
        if status.visible and isinstance(status.payload, Result):
            self._clear(status)

    @staticmethod
    def _clear(notification: Notification) -> None:
        if notification.timer is not None:
            notification.timer.cancel()
            notification.timer = None
        notification.visible = False
        notification.payload = None
        notification.expires_at = None
