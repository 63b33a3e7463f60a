"""Booking lifecycle and escrowed-payment settlement engine."""

__version__ = "1.0.0"
