"""Routers package."""

from . import (
    health,
    accounts,
    credits,
    admin,
)
