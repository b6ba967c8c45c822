"""Read-only access to the registration store (targets, filters, subscriptions)."""

from .entities import Filter, RegistrationState, Subscription, Target
from .sources import (
    FileRegistrationSource,
    RegistrationSource,
    RegistrationSourceError,
    RestRegistrationSource,
    StaticRegistrationSource,
)

__all__ = [
    "Target",
    "Filter",
    "Subscription",
    "RegistrationState",
    "RegistrationSource",
    "RegistrationSourceError",
    "StaticRegistrationSource",
    "FileRegistrationSource",
    "RestRegistrationSource",
]
