"""Routers package."""

from . import (
    health,
    auth,
    billing,
    ai,
    campaigns,
    admin,
)
