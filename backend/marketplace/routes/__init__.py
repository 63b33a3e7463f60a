# API routers, mounted under /api in main.py
from . import (
    bookings as bookings,
    internal as internal,
    payments as payments,
    webhooks as webhooks,
    withdrawals as withdrawals,
)
