"""Tests for humanization profile storage."""

import pytest

from macro_humanizer.errors import NotFoundError, ValidationError
from macro_humanizer.profile_storage import DEFAULT_PROFILES


def _defaults(profiles):
    return [p for p in profiles if p.is_default]


def test_seed_default_profiles_once(profile_storage):
    assert profile_storage.create_default_profiles() == len(DEFAULT_PROFILES)
    assert profile_storage.create_default_profiles() == 0

    profiles = profile_storage.get_all_profiles()
    assert [p.name for p in profiles] == [p["name"] for p in DEFAULT_PROFILES]
    assert [p.name for p in _defaults(profiles)] == ["Average User"]


def test_create_and_fetch(profile_storage):
    created = profile_storage.create_profile({
        "name": "Tester",
        "typingSpeed": "fast",
        "mouseAccuracy": 0.7,
        "settings": {"delayVariation": 30, "typingErrors": 2},
    })

    fetched = profile_storage.get_profile_by_name("Tester")
    assert fetched.profile_id == created.profile_id
    assert fetched.typing_speed == "fast"
    assert fetched.settings.delay_variation == 30
    assert fetched.settings.typing_errors == 2
    assert fetched.is_default is False


def test_duplicate_name_rejected(profile_storage):
    profile_storage.create_profile({"name": "Twin"})
    with pytest.raises(ValidationError):
        profile_storage.create_profile({"name": "Twin"})


@pytest.mark.parametrize("data", [
    {},
    {"name": ""},
    {"name": "Bad speed", "typingSpeed": "warp"},
    {"name": "Bad accuracy", "mouseAccuracy": 1.5},
    {"name": "Bad settings", "settings": {"typingErrors": 50}},
])
def test_invalid_profiles_rejected(profile_storage, data):
    with pytest.raises(ValidationError):
        profile_storage.create_profile(data)


def test_single_default_on_create(profile_storage):
    profile_storage.create_default_profiles()
    profile_storage.create_profile({"name": "New Default", "isDefault": True})

    defaults = _defaults(profile_storage.get_all_profiles())
    assert [p.name for p in defaults] == ["New Default"]
    assert profile_storage.get_default_profile().name == "New Default"


def test_single_default_on_update(profile_storage):
    profile_storage.create_default_profiles()
    expert = profile_storage.get_profile_by_name("Expert User")

    profile_storage.update_profile(expert.profile_id, {"isDefault": True})

    defaults = _defaults(profile_storage.get_all_profiles())
    assert [p.name for p in defaults] == ["Expert User"]


def test_update_settings_and_name(profile_storage):
    created = profile_storage.create_profile({"name": "Old"})

    updated = profile_storage.update_profile(created.profile_id, {
        "name": "New",
        "settings": {"hesitationPauses": 40},
    })

    assert updated.name == "New"
    assert updated.settings.hesitation_pauses == 40
    with pytest.raises(NotFoundError):
        profile_storage.get_profile_by_name("Old")


def test_update_unknown_profile(profile_storage):
    with pytest.raises(NotFoundError):
        profile_storage.update_profile(404, {"name": "ghost"})


def test_delete_profile(profile_storage):
    created = profile_storage.create_profile({"name": "Temp"})

    assert profile_storage.delete_profile(created.profile_id) is True
    assert profile_storage.delete_profile(created.profile_id) is False
    with pytest.raises(NotFoundError):
        profile_storage.get_profile(created.profile_id)


def test_no_default_profile(profile_storage):
    assert profile_storage.get_default_profile() is None


def test_resolve_settings_applies_typing_speed(profile_storage):
    profile_storage.create_default_profiles()
    novice = profile_storage.get_profile_by_name("Novice User")

    settings = profile_storage.resolve_settings(novice.profile_id)

    assert settings.delay_variation == 75
    assert settings.hesitation_pauses == 53
