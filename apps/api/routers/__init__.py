"""Routers package."""

from . import (
    health,
    catalog,
    generations,
    billing,
)
