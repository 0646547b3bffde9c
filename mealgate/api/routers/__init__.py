"""Expose API routers."""
from . import admin, billing, entitlements, plans, referrals

__all__ = ["admin", "billing", "entitlements", "plans", "referrals"]
