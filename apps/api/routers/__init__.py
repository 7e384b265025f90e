"""Routers package."""

from . import (
    health,
    auth,
    billing,
    webhooks,
    admin,
    operations,
)
