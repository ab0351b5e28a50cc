"""Routers package."""

from . import (
    health,
    billing,
    metering,
)
