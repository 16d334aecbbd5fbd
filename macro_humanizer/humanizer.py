"""
Humanization transform for macro recordings.

Rewrites a recording so every playback looks slightly different while the
same keys still end up pressed in the same order:
1. Optionally strip all mouse commands
2. Replace every gap between commands with a freshly drawn delay
3. Occasionally hit a neighbouring key first and correct it with BackSpace
4. Occasionally pause before a keystroke as if thinking

All randomness comes from one injectable random.Random so a seeded
instance reproduces the same output.
"""

import logging
import math
import random
from dataclasses import dataclass, field, replace
from typing import List, Dict, Optional, Tuple

import voluptuous as vol

from .command_model import Command
from .const import (
    BACKSPACE_KEY,
    COMMAND_DELAY,
    COMMAND_KEYBOARD,
    COMMAND_MOUSE,
    DELAY_ACTION,
    HESITATION_ACTION,
    HESITATION_MAX_MULTIPLIER,
    HESITATION_MIN_MULTIPLIER,
    KEY_DOWN_ACTION,
    KEY_UP_ACTION,
    TYPING_SPEED_MULTIPLIERS,
)
from .errors import ValidationError

_LOGGER = logging.getLogger(__name__)


# ============================================================================
# Settings
# ============================================================================

def _number(minimum: float, maximum: float):
    return vol.All(vol.Coerce(float), vol.Range(min=minimum, max=maximum))


def _delay_bounds_ordered(settings: Dict) -> Dict:
    if settings["minDelay"] > settings["maxDelay"]:
        raise vol.Invalid("minDelay must not exceed maxDelay", path=["minDelay"])
    return settings


SETTINGS_SCHEMA = vol.All(
    vol.Schema({
        vol.Optional("delayVariation", default=10): _number(1, 100),
        vol.Optional("typingErrors", default=1): _number(0, 10),
        vol.Optional("hesitationPauses", default=5): _number(0, 50),
        vol.Optional("preserveStructure", default=True): vol.Boolean(),
        vol.Optional("excludedKeys", default=list): vol.Any(None, [vol.Coerce(str)]),
        vol.Optional("removeMouseOnUpload", default=True): vol.Boolean(),
        vol.Optional("timeExtensionFactor", default=1.0): _number(1, 5),
        vol.Optional("minDelay", default=10): _number(0, 100),
        vol.Optional("maxDelay", default=100): _number(10, 1000),
        vol.Optional("requiredImageId"): vol.Any(None, vol.Coerce(str)),
    }),
    _delay_bounds_ordered,
)


def validate_settings(data: Optional[Dict]) -> Dict:
    """
    Validate a settings dictionary at the boundary.

    Out-of-range values are rejected, never clamped.

    Raises:
        ValidationError: with the offending field in the message
    """
    try:
        return SETTINGS_SCHEMA(dict(data or {}))
    except vol.Invalid as e:
        raise ValidationError(f"Invalid humanization settings: {e}") from e


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


@dataclass
class HumanizationSettings:
    """Validated numeric settings driving the transform."""
    delay_variation: float = 10
    typing_errors: float = 1
    hesitation_pauses: float = 5
    preserve_structure: bool = True
    excluded_keys: List[str] = field(default_factory=list)
    remove_mouse_on_upload: bool = True
    time_extension_factor: float = 1.0
    min_delay: float = 10
    max_delay: float = 100
    required_image_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "HumanizationSettings":
        """Validate and build from the persisted camelCase form."""
        valid = validate_settings(data)
        return cls(
            delay_variation=valid["delayVariation"],
            typing_errors=valid["typingErrors"],
            hesitation_pauses=valid["hesitationPauses"],
            preserve_structure=valid["preserveStructure"],
            excluded_keys=list(valid["excludedKeys"] or []),
            remove_mouse_on_upload=valid["removeMouseOnUpload"],
            time_extension_factor=valid["timeExtensionFactor"],
            min_delay=valid["minDelay"],
            max_delay=valid["maxDelay"],
            required_image_id=valid.get("requiredImageId"),
        )

    def to_dict(self) -> Dict:
        """Persisted camelCase form."""
        result = {
            "delayVariation": self.delay_variation,
            "typingErrors": self.typing_errors,
            "hesitationPauses": self.hesitation_pauses,
            "preserveStructure": self.preserve_structure,
            "excludedKeys": list(self.excluded_keys),
            "removeMouseOnUpload": self.remove_mouse_on_upload,
            "timeExtensionFactor": self.time_extension_factor,
            "minDelay": self.min_delay,
            "maxDelay": self.max_delay,
        }
        if self.required_image_id is not None:
            result["requiredImageId"] = self.required_image_id
        return result

    def adjusted_for_speed(self, typing_speed: str) -> "HumanizationSettings":
        """
        Copy with delayVariation and hesitationPauses scaled by typing speed.

        The adjusted copy is only meant for immediate use and may exceed the
        stored bounds (e.g. 80% variation on a slow profile becomes 120%).
        """
        if typing_speed not in TYPING_SPEED_MULTIPLIERS:
            raise ValidationError(f"Unknown typing speed: {typing_speed!r}")

        multiplier = TYPING_SPEED_MULTIPLIERS[typing_speed]
        return replace(
            self,
            delay_variation=round_half_up(self.delay_variation * multiplier),
            hesitation_pauses=round_half_up(self.hesitation_pauses * multiplier),
            excluded_keys=list(self.excluded_keys),
        )

    def is_excluded(self, key: Optional[str]) -> bool:
        if not key or not self.excluded_keys:
            return False
        return key.lower() in {k.lower() for k in self.excluded_keys}


# ============================================================================
# Keyboard Layout
# ============================================================================

QWERTY_ROWS = ["1234567890", "qwertyuiop", "asdfghjkl", "zxcvbnm"]
FALLBACK_KEYS = "abcdefghijklmnopqrstuvwxyz"


def _build_neighbour_map() -> Dict[str, str]:
    neighbours = {}
    for row_idx, row in enumerate(QWERTY_ROWS):
        for col, char in enumerate(row):
            near = []
            if col > 0:
                near.append(row[col - 1])
            if col < len(row) - 1:
                near.append(row[col + 1])
            for other_idx in (row_idx - 1, row_idx + 1):
                if 0 <= other_idx < len(QWERTY_ROWS) and col < len(QWERTY_ROWS[other_idx]):
                    near.append(QWERTY_ROWS[other_idx][col])
            neighbours[char] = "".join(near)
    return neighbours


NEIGHBOUR_KEYS = _build_neighbour_map()


# ============================================================================
# Data Models
# ============================================================================

@dataclass
class HumanizationStats:
    """What one humanize run changed."""
    input_commands: int = 0
    output_commands: int = 0
    mouse_removed: int = 0
    delays_synthesized: int = 0
    typing_errors: int = 0
    hesitations: int = 0

    def to_dict(self) -> Dict:
        return {
            "input_commands": self.input_commands,
            "output_commands": self.output_commands,
            "mouse_removed": self.mouse_removed,
            "delays_synthesized": self.delays_synthesized,
            "typing_errors": self.typing_errors,
            "hesitations": self.hesitations,
        }


# ============================================================================
# Humanizer
# ============================================================================

class Humanizer:
    """
    Applies humanization settings to a command sequence.

    Args:
        rng: Random source; pass random.Random(seed) for reproducible output
    """

    def __init__(self, rng: Optional[random.Random] = None):
        self.rng = rng or random.Random()

    def humanize(self, commands: List[Command], settings: HumanizationSettings) -> List[Command]:
        """
        Produce a humanized copy of a command sequence.

        Args:
            commands: Original sequence (not modified)
            settings: Resolved settings (typing speed already applied)

        Returns:
            New command sequence
        """
        output, _ = self.humanize_with_stats(commands, settings)
        return output

    def humanize_with_stats(
        self,
        commands: List[Command],
        settings: HumanizationSettings,
    ) -> Tuple[List[Command], HumanizationStats]:
        stats = HumanizationStats(input_commands=len(commands))

        source = self._strip_mouse(commands, settings, stats)
        output: List[Command] = []

        for cmd in source:
            # Recorded delays only mark gaps; each gap gets a fresh delay below
            if cmd.type == COMMAND_DELAY:
                continue

            if output:
                output.append(self.synthesize_delay(settings))
                stats.delays_synthesized += 1

            if cmd.is_keystroke and not settings.is_excluded(cmd.key):
                if self._chance(settings.hesitation_pauses):
                    output.append(self.hesitation_pause(settings))
                    stats.hesitations += 1

                if self._chance(settings.typing_errors):
                    detour = self._error_detour(cmd, settings)
                    output.extend(detour)
                    stats.typing_errors += 1
                    stats.delays_synthesized += sum(1 for c in detour if c.type == COMMAND_DELAY)

            output.append(cmd.copy())

        stats.output_commands = len(output)
        _LOGGER.debug(f"Humanized sequence: {stats.to_dict()}")
        return output, stats

    def _strip_mouse(
        self,
        commands: List[Command],
        settings: HumanizationSettings,
        stats: HumanizationStats,
    ) -> List[Command]:
        if not settings.remove_mouse_on_upload:
            return list(commands)

        kept = [cmd for cmd in commands if cmd.type != COMMAND_MOUSE]
        stats.mouse_removed = len(commands) - len(kept)
        return kept

    def _chance(self, percent: float) -> bool:
        return percent > 0 and self.rng.random() * 100 < percent

    # ========================================================================
    # Delays
    # ========================================================================

    def base_delay(self, settings: HumanizationSettings) -> float:
        """Uniform draw from [minDelay, maxDelay], scaled by timeExtensionFactor."""
        return self.rng.uniform(settings.min_delay, settings.max_delay) * settings.time_extension_factor

    def jitter(self, base: float, settings: HumanizationSettings) -> int:
        """Shift by up to +/- delayVariation percent, clamp at 0, whole milliseconds."""
        spread = base * settings.delay_variation / 100.0
        return max(0, round_half_up(base + self.rng.uniform(-spread, spread)))

    def synthesize_delay(self, settings: HumanizationSettings) -> Command:
        return Command(
            type=COMMAND_DELAY,
            action=DELAY_ACTION,
            delay=self.jitter(self.base_delay(settings), settings),
        )

    def hesitation_pause(self, settings: HumanizationSettings) -> Command:
        """A thinking pause, several times longer than the longest normal gap."""
        upper = settings.max_delay * settings.time_extension_factor
        pause = self.rng.uniform(upper * HESITATION_MIN_MULTIPLIER, upper * HESITATION_MAX_MULTIPLIER)
        return Command(type=COMMAND_DELAY, action=HESITATION_ACTION, delay=round_half_up(pause))

    # ========================================================================
    # Typing Errors
    # ========================================================================

    def wrong_key_for(self, key: str) -> str:
        """A plausible mistyped key: a QWERTY neighbour, keeping case."""
        lower = key.lower()
        candidates = NEIGHBOUR_KEYS.get(lower)
        if not candidates:
            candidates = FALLBACK_KEYS.replace(lower, "")

        wrong = self.rng.choice(candidates)
        return wrong.upper() if key.isupper() else wrong

    def _error_detour(self, cmd: Command, settings: HumanizationSettings) -> List[Command]:
        """Wrong key, BackSpace, each with its gaps, ending before the real key."""
        wrong = self.wrong_key_for(cmd.key)
        detour = []

        for key in (wrong, BACKSPACE_KEY):
            detour.append(Command(type=COMMAND_KEYBOARD, action=cmd.action, key=key))
            detour.append(self.synthesize_delay(settings))
            if cmd.action.lower() == KEY_DOWN_ACTION:
                detour.append(Command(type=COMMAND_KEYBOARD, action=KEY_UP_ACTION, key=key))
                detour.append(self.synthesize_delay(settings))

        return detour
