"""Tests for settings validation and the humanization transform."""

import random

import pytest

from macro_humanizer.command_model import Command, delay, keyboard, mouse
from macro_humanizer.errors import ValidationError
from macro_humanizer.humanizer import (
    HumanizationSettings,
    Humanizer,
    round_half_up,
    validate_settings,
)


class MidpointRandom:
    """Always hits every chance, draws range midpoints and first choices."""

    def random(self):
        return 0.0

    def uniform(self, low, high):
        return (low + high) / 2

    def choice(self, seq):
        return seq[0]


def _quiet_settings(**overrides):
    data = {"typingErrors": 0, "hesitationPauses": 0}
    data.update(overrides)
    return HumanizationSettings.from_dict(data)


# ============================================================================
# Settings
# ============================================================================

def test_settings_defaults():
    settings = HumanizationSettings.from_dict({})

    assert settings.delay_variation == 10
    assert settings.typing_errors == 1
    assert settings.hesitation_pauses == 5
    assert settings.remove_mouse_on_upload is True
    assert settings.min_delay == 10
    assert settings.max_delay == 100
    assert settings.excluded_keys == []


@pytest.mark.parametrize("bad", [
    {"delayVariation": 0},
    {"delayVariation": 101},
    {"typingErrors": 11},
    {"hesitationPauses": -1},
    {"timeExtensionFactor": 6},
    {"minDelay": 80, "maxDelay": 50},
    {"maxDelay": 5},
])
def test_out_of_range_settings_rejected(bad):
    with pytest.raises(ValidationError):
        validate_settings(bad)


def test_settings_dict_round_trip():
    settings = HumanizationSettings.from_dict({"delayVariation": 40, "excludedKeys": ["Enter"]})
    assert HumanizationSettings.from_dict(settings.to_dict()) == settings


def test_null_excluded_keys_becomes_empty():
    assert HumanizationSettings.from_dict({"excludedKeys": None}).excluded_keys == []


def test_typing_speed_adjustment():
    settings = HumanizationSettings.from_dict({"delayVariation": 25, "hesitationPauses": 15})

    slow = settings.adjusted_for_speed("slow")
    fast = settings.adjusted_for_speed("fast")

    assert (slow.delay_variation, slow.hesitation_pauses) == (38, 23)
    assert (fast.delay_variation, fast.hesitation_pauses) == (15, 9)
    assert settings.adjusted_for_speed("medium").delay_variation == 25
    assert settings.delay_variation == 25

    with pytest.raises(ValidationError):
        settings.adjusted_for_speed("ludicrous")


def test_round_half_up():
    assert round_half_up(2.5) == 3
    assert round_half_up(0.5) == 1
    assert round_half_up(2.4) == 2


# ============================================================================
# Transform
# ============================================================================

def test_mouse_commands_removed():
    commands = [mouse(1, 2), keyboard("a"), mouse(3, 4, "LeftButtonDown"), keyboard("a", "keyup")]

    output, stats = Humanizer(random.Random(3)).humanize_with_stats(commands, _quiet_settings())

    assert not [c for c in output if c.type == "mouse"]
    assert stats.mouse_removed == 2


def test_mouse_commands_kept_when_disabled():
    commands = [mouse(1, 2), keyboard("a")]
    output = Humanizer(random.Random(3)).humanize(commands, _quiet_settings(removeMouseOnUpload=False))
    assert output[0] == mouse(1, 2)


def test_delays_within_bounds(typing_sequence):
    settings = _quiet_settings(delayVariation=20, minDelay=30, maxDelay=60, timeExtensionFactor=2)
    output = Humanizer(random.Random(99)).humanize(typing_sequence * 20, settings)

    delays = [c.delay for c in output if c.type == "delay"]
    assert delays
    assert all(48 <= d <= 144 for d in delays)


def test_one_fresh_delay_per_gap(typing_sequence):
    output = Humanizer(random.Random(5)).humanize(typing_sequence, _quiet_settings())

    kinds = [c.type for c in output]
    assert kinds == ["keyboard", "delay", "keyboard", "delay", "keyboard", "delay", "keyboard"]
    assert [c.key for c in output if c.type == "keyboard"] == ["h", "h", "i", "i"]


def test_seeded_output_is_reproducible(typing_sequence):
    settings = HumanizationSettings.from_dict({"typingErrors": 10, "hesitationPauses": 50})

    first = Humanizer(random.Random(42)).humanize(typing_sequence * 5, settings)
    second = Humanizer(random.Random(42)).humanize(typing_sequence * 5, settings)

    assert first == second


def test_input_not_modified(typing_sequence):
    original = list(typing_sequence)
    Humanizer(random.Random(1)).humanize(typing_sequence, HumanizationSettings())
    assert typing_sequence == original


def test_error_detour_and_hesitation():
    settings = HumanizationSettings.from_dict({"typingErrors": 10, "hesitationPauses": 50})
    commands = [keyboard("a"), keyboard("a", "keyup")]

    output, stats = Humanizer(MidpointRandom()).humanize_with_stats(commands, settings)

    assert output == [
        Command(type="delay", action="pause", delay=550),
        keyboard("s"), delay(55), keyboard("s", "keyup"), delay(55),
        keyboard("BackSpace"), delay(55), keyboard("BackSpace", "keyup"), delay(55),
        keyboard("a"), delay(55), keyboard("a", "keyup"),
    ]
    assert stats.hesitations == 1
    assert stats.typing_errors == 1
    assert stats.delays_synthesized == 5


def test_excluded_keys_untouched():
    settings = HumanizationSettings.from_dict({
        "typingErrors": 10,
        "hesitationPauses": 50,
        "excludedKeys": ["A"],
    })
    commands = [keyboard("a"), keyboard("a", "keyup")]

    output = Humanizer(MidpointRandom()).humanize(commands, settings)

    assert output == [keyboard("a"), delay(55), keyboard("a", "keyup")]


def test_same_keys_pressed_after_corrections(typing_sequence):
    settings = HumanizationSettings.from_dict({"typingErrors": 10, "hesitationPauses": 20})
    output = Humanizer(random.Random(8)).humanize(typing_sequence * 10, settings)

    typed = [c.key for c in output if c.type == "keyboard" and c.action == "keydown"]
    kept = []
    for key in typed:
        if key == "BackSpace":
            kept.pop()
        else:
            kept.append(key)
    assert kept == ["h", "i"] * 10


def test_text_commands_pass_through():
    text_cmd = Command(type="text", action="type", text="hello")
    output = Humanizer(random.Random(2)).humanize([text_cmd], HumanizationSettings())
    assert output == [text_cmd]


def test_jitter_never_negative():
    humanizer = Humanizer(random.Random(0))
    settings = HumanizationSettings.from_dict({"delayVariation": 100, "minDelay": 0, "maxDelay": 10})
    assert all(humanizer.jitter(0.0, settings) == 0 for _ in range(10))
    assert all(humanizer.synthesize_delay(settings).delay >= 0 for _ in range(50))
