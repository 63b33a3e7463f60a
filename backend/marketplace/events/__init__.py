"""Notification events emitted by the booking, payment and withdrawal services."""

from .notification_events import NotificationRequest, Transition

__all__ = ["NotificationRequest", "Transition"]
