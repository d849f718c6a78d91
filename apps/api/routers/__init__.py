"""Routers package."""

from . import (
    health,
    billing,
    calls,
    usage,
)
