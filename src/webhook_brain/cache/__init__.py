"""Subscription matching cache."""

from .subscriptions import SubscriptionCache, SubscriptionMatch, SubscriptionSnapshot

__all__ = ["SubscriptionCache", "SubscriptionMatch", "SubscriptionSnapshot"]
