"""Pydantic request/response schemas for the marketplace API."""
