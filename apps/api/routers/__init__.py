"""Routers package."""

from . import (
    health,
    telegram,
)
