"""Routers package."""

from . import (
    health,
    auth,
    payments,
    matches,
    billing,
)
