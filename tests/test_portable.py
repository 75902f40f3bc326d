"""
Unit tests for social.quotevote.podsync.sync.portable

Tests cover document validation, avatar normalization, defaults, camelCase
serialization, and the partial input models used by push and append.
"""

import pytest
from pydantic import ValidationError

from social.quotevote.podsync.sync.portable import (
    PORTABLE_SCHEMA_VERSION,
    ActivityEventInput,
    ActivityLedger,
    PortablePreferencesInput,
    PortableProfile,
    PortableProfileInput,
    PortableStateInput,
    default_portable_state,
    default_preferences,
    default_profile,
    normalize_avatar,
    partial_fields,
    validate_preferences,
    validate_profile,
)


PREFERENCES = {
    "theme": "light",
    "notifications": {"email": True, "push": False, "inApp": True},
    "accessibility": {"reduceMotion": False, "fontScale": "normal"},
}


class TestValidation:
    def test_valid_profile(self):
        assert validate_profile(
            {"displayName": "Alice", "avatarUrl": "https://a.example/x.png", "bio": None}
        )

    @pytest.mark.parametrize(
        "profile",
        [
            {"displayName": "Alice", "avatarUrl": None},
            {"displayName": None, "avatarUrl": None, "bio": None},
            {"displayName": 1, "avatarUrl": None, "bio": None},
            "Alice",
            None,
        ],
    )
    def test_invalid_profile(self, profile):
        assert validate_profile(profile) is False

    def test_valid_preferences(self):
        assert validate_preferences(PREFERENCES)

    @pytest.mark.parametrize(
        "change",
        [
            {"theme": "blue"},
            {"notifications": None},
            {"accessibility": {"reduceMotion": "maybe", "fontScale": "normal"}},
            {"accessibility": {"reduceMotion": False, "fontScale": "huge"}},
        ],
    )
    def test_invalid_preferences(self, change):
        assert validate_preferences({**PREFERENCES, **change}) is False


class TestAvatar:
    @pytest.mark.parametrize(
        "value, expected",
        [
            ("https://a.example/x.png", "https://a.example/x.png"),
            ({"url": "https://a.example/x.png"}, "https://a.example/x.png"),
            ({"url": None}, None),
            ("", None),
            (None, None),
        ],
    )
    def test_normalize_avatar(self, value, expected):
        assert normalize_avatar(value) == expected

    def test_invalid_avatar(self):
        with pytest.raises(ValueError):
            normalize_avatar(42)

    def test_profile_normalizes_avatar_object(self):
        profile = PortableProfile.model_validate(
            {"displayName": "A", "avatarUrl": {"url": "https://a.example/x.png"}, "bio": None}
        )
        assert profile.avatar_url == "https://a.example/x.png"


class TestDefaults:
    def test_default_profile(self):
        assert default_profile().to_json() == {
            "displayName": "",
            "avatarUrl": None,
            "bio": None,
        }

    def test_default_preferences(self):
        assert default_preferences().to_json() == {
            "theme": "system",
            "notifications": {"email": True, "push": True, "inApp": True},
            "accessibility": {"reduceMotion": False, "fontScale": "normal"},
        }

    def test_default_state_omits_ledger(self):
        state = default_portable_state().to_json()

        assert state["portableSchemaVersion"] == PORTABLE_SCHEMA_VERSION
        assert "activityLedger" not in state
        assert set(state) == {
            "portableSchemaVersion",
            "profile",
            "preferences",
            "updatedAt",
        }

    def test_state_with_ledger(self):
        state = default_portable_state()
        state.activity_ledger = ActivityLedger()
        assert state.to_json()["activityLedger"] == {"events": []}


class TestInputs:
    def test_partial_profile(self):
        profile_input = PortableProfileInput.model_validate({"bio": "hi"})
        assert partial_fields(profile_input) == {"bio": "hi"}

    def test_display_name_cannot_be_null(self):
        with pytest.raises(ValidationError):
            PortableProfileInput.model_validate({"displayName": None})

    def test_avatar_can_be_cleared(self):
        profile_input = PortableProfileInput.model_validate({"avatarUrl": ""})
        assert partial_fields(profile_input) == {"avatarUrl": None}

    def test_partial_preferences(self):
        preferences_input = PortablePreferencesInput.model_validate(
            {"theme": "dark", "notifications": {"push": False}}
        )
        assert partial_fields(preferences_input) == {
            "theme": "dark",
            "notifications": {"push": False},
        }

    def test_partial_none(self):
        assert partial_fields(None) == {}

    def test_snake_case_is_accepted(self):
        state_input = PortableStateInput.model_validate(
            {"profile": {"display_name": "Alice"}}
        )
        assert partial_fields(state_input.profile) == {"displayName": "Alice"}

    def test_invalid_theme(self):
        with pytest.raises(ValidationError):
            PortableStateInput.model_validate({"preferences": {"theme": "blue"}})


class TestActivityEventInput:
    def test_object_payload(self):
        event = ActivityEventInput.model_validate(
            {
                "type": "VoteCast",
                "instanceId": "quote.vote",
                "resourceUrl": "https://quote.vote/posts/1",
                "payload": {"vote": "up"},
            }
        )
        assert event.payload == {"vote": "up"}

    def test_string_payload_is_decoded(self):
        event = ActivityEventInput.model_validate(
            {
                "type": "PostCreated",
                "instanceId": "quote.vote",
                "resourceUrl": "https://quote.vote/posts/1",
                "payload": '{"title": "Hello"}',
            }
        )
        assert event.payload == {"title": "Hello"}

    def test_missing_payload(self):
        event = ActivityEventInput.model_validate(
            {
                "type": "BookmarkAdded",
                "instanceId": "quote.vote",
                "resourceUrl": "https://quote.vote/posts/1",
                "payload": None,
            }
        )
        assert event.payload == {}

    @pytest.mark.parametrize(
        "change",
        [
            {"type": "Unknown"},
            {"payload": "{not json"},
            {"resourceUrl": None},
        ],
    )
    def test_invalid_event(self, change):
        event = {
            "type": "VoteCast",
            "instanceId": "quote.vote",
            "resourceUrl": "https://quote.vote/posts/1",
            **change,
        }
        with pytest.raises(ValidationError):
            ActivityEventInput.model_validate(event)
