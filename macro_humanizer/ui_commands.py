"""
Turn classified UI elements from a screenshot into a playable macro.

Elements are visited in reading order (top to bottom, left to right within
a row). The pointer moves to each element's centre; buttons are clicked and
text fields are clicked and typed into, with short random waits between
every step.
"""

import functools
import logging
import random
from dataclasses import dataclass
from typing import List, Dict, Optional, Tuple

import voluptuous as vol

from .command_model import Command, delay, keyboard, mouse
from .const import KEY_DOWN_ACTION, KEY_UP_ACTION, SAME_ROW_THRESHOLD_PX, UI_ELEMENT_TYPES
from .errors import ValidationError
from .humanizer import round_half_up

_LOGGER = logging.getLogger(__name__)


# Wait ranges in milliseconds
BETWEEN_ELEMENTS_MS = (200, 500)
AFTER_MOVE_MS = (100, 300)
CLICK_HOLD_MS = (50, 150)
BEFORE_TYPING_MS = (200, 400)
KEY_HOLD_MS = (50, 150)
BETWEEN_KEYS_MS = (30, 100)


ELEMENT_SCHEMA = vol.Schema({
    vol.Required("type"): vol.In(UI_ELEMENT_TYPES),
    vol.Required("bounds"): vol.Schema({
        vol.Required("x"): vol.Coerce(float),
        vol.Required("y"): vol.Coerce(float),
        vol.Required("width"): vol.All(vol.Coerce(float), vol.Range(min=0)),
        vol.Required("height"): vol.All(vol.Coerce(float), vol.Range(min=0)),
    }, extra=vol.ALLOW_EXTRA),
    vol.Optional("text"): vol.Any(None, str),
    vol.Optional("confidence", default=1.0): vol.All(vol.Coerce(float), vol.Range(min=0, max=1)),
}, extra=vol.ALLOW_EXTRA)


@dataclass
class UIElement:
    """A detected UI element with its bounding box."""
    type: str
    x: float
    y: float
    width: float
    height: float
    text: Optional[str] = None
    confidence: float = 1.0

    @property
    def center(self) -> Tuple[int, int]:
        return (
            round_half_up(self.x + self.width / 2),
            round_half_up(self.y + self.height / 2),
        )

    @classmethod
    def from_dict(cls, data: Dict) -> "UIElement":
        try:
            valid = ELEMENT_SCHEMA(data)
        except vol.Invalid as e:
            raise ValidationError(f"Invalid UI element: {e}") from e

        bounds = valid["bounds"]
        return cls(
            type=valid["type"],
            x=bounds["x"],
            y=bounds["y"],
            width=bounds["width"],
            height=bounds["height"],
            text=valid.get("text"),
            confidence=valid["confidence"],
        )

    def to_dict(self) -> Dict:
        return {
            "type": self.type,
            "bounds": {"x": self.x, "y": self.y, "width": self.width, "height": self.height},
            "text": self.text,
            "confidence": self.confidence,
        }


def _reading_order(first: UIElement, second: UIElement) -> float:
    if abs(first.y - second.y) < SAME_ROW_THRESHOLD_PX:
        return first.x - second.x
    return first.y - second.y


def sort_reading_order(elements: List[UIElement]) -> List[UIElement]:
    """Top to bottom; elements less than 50px apart vertically count as one row."""
    return sorted(elements, key=functools.cmp_to_key(_reading_order))


class UICommandGenerator:
    """
    Synthesizes commands for a list of UI elements.

    Args:
        rng: Random source for the waits
    """

    def __init__(self, rng: Optional[random.Random] = None):
        self.rng = rng or random.Random()

    def generate(self, elements: List[UIElement]) -> List[Command]:
        commands: List[Command] = []

        for index, element in enumerate(sort_reading_order(elements)):
            if index > 0:
                commands.append(self._wait(BETWEEN_ELEMENTS_MS))

            x, y = element.center
            commands.append(mouse(x, y, "Move"))
            commands.append(self._wait(AFTER_MOVE_MS))

            if element.type == "button":
                commands.append(mouse(x, y, "LeftButtonDown"))
                commands.append(self._wait(CLICK_HOLD_MS))
                commands.append(mouse(x, y, "LeftButtonUp"))
            elif element.type == "textfield" and element.text:
                commands.append(mouse(x, y, "LeftButtonDown"))
                commands.append(mouse(x, y, "LeftButtonUp"))
                commands.append(self._wait(BEFORE_TYPING_MS))
                commands.extend(self._type_text(element.text))

        _LOGGER.debug(f"Generated {len(commands)} commands from {len(elements)} UI elements")
        return commands

    def _type_text(self, text: str) -> List[Command]:
        typed = []
        for char in text:
            typed.append(keyboard(char, KEY_DOWN_ACTION))
            typed.append(self._wait(KEY_HOLD_MS))
            typed.append(keyboard(char, KEY_UP_ACTION))
            typed.append(self._wait(BETWEEN_KEYS_MS))
        return typed

    def _wait(self, bounds: Tuple[int, int]) -> Command:
        low, high = bounds
        return delay(round_half_up(self.rng.uniform(low, high)))
