"""Portable data schemas.

Documents synchronized between the application and a user's Pod. On the wire every
document is camelCase JSON; in Python the models use snake_case field names.
"""

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
)
from pydantic.alias_generators import to_camel

PORTABLE_SCHEMA_VERSION = "0"

Theme = Literal["system", "light", "dark"]
FontScale = Literal["normal", "large"]
ActivityEventType = Literal["PostCreated", "QuoteCreated", "VoteCast", "BookmarkAdded"]


def normalize_avatar(value: Any) -> Optional[str]:
    """Collapse the avatar shapes seen at the boundary into a URL or None.

    Accepts a URL string, an object with a ``url`` key, or None. An empty string is
    treated as no avatar.
    """
    if isinstance(value, dict):
        value = value.get("url", None)
    if value is None or value == "":
        return None
    if isinstance(value, str):
        return value
    raise ValueError("avatar must be a URL string, an object with a url, or null")


class PortableModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class PortableProfile(PortableModel):
    display_name: str
    avatar_url: Optional[str]
    bio: Optional[str]

    @field_validator("avatar_url", mode="before")
    @classmethod
    def normalize_avatar_url(cls, v: Any) -> Optional[str]:
        return normalize_avatar(v)


class NotificationPreferences(PortableModel):
    email: bool = True
    push: bool = True
    in_app: bool = True


class AccessibilityPreferences(PortableModel):
    reduce_motion: bool = False
    font_scale: FontScale = "normal"


class PortablePreferences(PortableModel):
    theme: Theme
    notifications: NotificationPreferences
    accessibility: AccessibilityPreferences


class ActivityEvent(PortableModel):
    type: ActivityEventType
    instance_id: str
    resource_url: str
    timestamp: datetime
    payload: Dict[str, Any] = Field(default_factory=dict)


class ActivityLedger(PortableModel):
    events: List[ActivityEvent] = Field(default_factory=list)


class PortableState(PortableModel):
    portable_schema_version: str = PORTABLE_SCHEMA_VERSION
    profile: PortableProfile
    preferences: PortablePreferences
    activity_ledger: Optional[ActivityLedger] = None
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_json(self) -> Dict[str, Any]:
        state = super().to_json()
        if self.activity_ledger is None:
            state.pop("activityLedger", None)
        return state


class ResourceUris(PortableModel):
    profile: str
    preferences: str
    activity_ledger: Optional[str] = None


class PortableProfileInput(PortableModel):
    """Partial profile update. Only the fields that were set are merged."""

    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    bio: Optional[str] = None

    @field_validator("avatar_url", mode="before")
    @classmethod
    def normalize_avatar_url(cls, v: Any) -> Optional[str]:
        return normalize_avatar(v)

    @field_validator("display_name", mode="after")
    @classmethod
    def display_name_not_null(cls, v: Optional[str]) -> str:
        if v is None:
            raise ValueError("displayName cannot be null")
        return v


class NotificationPreferencesInput(PortableModel):
    email: Optional[bool] = None
    push: Optional[bool] = None
    in_app: Optional[bool] = None


class AccessibilityPreferencesInput(PortableModel):
    reduce_motion: Optional[bool] = None
    font_scale: Optional[FontScale] = None


class PortablePreferencesInput(PortableModel):
    theme: Optional[Theme] = None
    notifications: Optional[NotificationPreferencesInput] = None
    accessibility: Optional[AccessibilityPreferencesInput] = None


class PortableStateInput(PortableModel):
    profile: Optional[PortableProfileInput] = None
    preferences: Optional[PortablePreferencesInput] = None


class ActivityEventInput(PortableModel):
    type: ActivityEventType
    instance_id: str
    resource_url: str
    payload: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("payload", mode="before")
    @classmethod
    def decode_payload(cls, v: Any) -> Any:
        if isinstance(v, str):
            return json.loads(v)
        if v is None:
            return {}
        return v


def partial_fields(model: Optional[PortableModel]) -> Dict[str, Any]:
    """Fields explicitly set on an input model, camelCase keyed."""
    if model is None:
        return {}
    return model.model_dump(by_alias=True, mode="json", exclude_unset=True)


def validate_profile(profile: Any) -> bool:
    try:
        PortableProfile.model_validate(profile)
        return True
    except ValidationError:
        return False


def validate_preferences(preferences: Any) -> bool:
    try:
        PortablePreferences.model_validate(preferences)
        return True
    except ValidationError:
        return False


def default_profile() -> PortableProfile:
    return PortableProfile(display_name="", avatar_url=None, bio=None)


def default_preferences() -> PortablePreferences:
    return PortablePreferences(
        theme="system",
        notifications=NotificationPreferences(),
        accessibility=AccessibilityPreferences(),
    )


def default_portable_state() -> PortableState:
    return PortableState(profile=default_profile(), preferences=default_preferences())
