"""API router modules for the ad-spend billing service."""

from __future__ import annotations

from adspend_api.routers import ad_spend, admin, health, webhooks

__all__ = [
    "ad_spend",
    "admin",
    "health",
    "webhooks",
]
