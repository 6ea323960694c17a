"""API v1 routers."""

from . import onboarding

__all__ = ["onboarding"]
