"""
Database models for the marketplace settlement engine.

The models are organized by functionality:
- Users and provider balances
- Services and per-day capacity counters
- Bookings and their 1:1 payments
- Withdrawals and bank accounts
- In-app notifications
"""

from .booking import Booking
from .notification import Notification
from .payment import Payment
from .service import Service, ServiceDayCapacity
from .user import User
from .withdrawal import BankAccount, Withdrawal

__all__ = [
    "BankAccount",
    "Booking",
    "Notification",
    "Payment",
    "Service",
    "ServiceDayCapacity",
    "User",
    "Withdrawal",
]
