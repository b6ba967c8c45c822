"""
Registration records consumed by the delivery engine.

Targets, filters and subscriptions are owned by the registration API; the
engine only reads them. Records accept both snake_case and camelCase field
names so they can be fed straight from the API's JSON.
"""

from datetime import datetime
from typing import Dict, FrozenSet, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class RegistrationRecord(BaseModel):
    """Common settings for read-only registration records."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Target(RegistrationRecord):
    """Registered destination URL for webhook messages."""

    target_id: str = Field(min_length=1)
    url: str

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        if not v or not v.startswith(("http://", "https://")):
            raise ValueError("Invalid target URL - must start with http:// or https://")
        return v


class Filter(RegistrationRecord):
    """Named set of event types a subscriber cares about."""

    filter_id: str = Field(min_length=1)
    events: FrozenSet[str] = Field(default_factory=frozenset)


class Subscription(RegistrationRecord):
    """Binding of a target to a filter; only active subscriptions match."""

    subscription_id: str = Field(min_length=1)
    target_id: str = Field(min_length=1)
    filter_id: str = Field(min_length=1)
    active: bool = True


class RegistrationState(BaseModel):
    """Everything the subscription cache needs to build a snapshot."""

    model_config = ConfigDict(frozen=True)

    targets: List[Target] = Field(default_factory=list)
    filters: List[Filter] = Field(default_factory=list)
    subscriptions: List[Subscription] = Field(default_factory=list)

    def targets_by_id(self) -> Dict[str, Target]:
        return {t.target_id: t for t in self.targets}

    def filters_by_id(self) -> Dict[str, Filter]:
        return {f.filter_id: f for f in self.filters}
