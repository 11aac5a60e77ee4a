"""Routers package."""

from . import (
    health,
    generate,
    user,
    webhooks,
)
