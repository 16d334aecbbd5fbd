"""
Command model for macro recordings.

A macro recording is an ordered list of commands. Each command is one of
four kinds (keyboard, mouse, delay, text). Commands are compared through
their canonical key, which keeps only type, action and key so that two
recordings of the same routine match even when timing and cursor positions
differ.

Line format (one command per line):
    Keyboard : A : KeyDown
    DELAY : 50
    Mouse : 120 : 340 : Move : 0 : 0 : 0
    Text : hello world
"""

import logging
from dataclasses import dataclass, replace
from typing import List, Dict, Optional, Iterable

from .const import (
    COMMAND_KEYBOARD,
    COMMAND_MOUSE,
    COMMAND_DELAY,
    COMMAND_TEXT,
    COMMAND_TYPES,
    DELAY_ACTION,
    KEY_UP_ACTION,
)
from .errors import ParseError

_LOGGER = logging.getLogger(__name__)

FIELD_SEPARATOR = " : "
KEY_SEPARATOR = "|"


# ============================================================================
# Data Models
# ============================================================================

@dataclass
class Command:
    """A single macro command."""
    type: str
    action: str
    key: Optional[str] = None
    x: Optional[int] = None
    y: Optional[int] = None
    delay: Optional[int] = None
    text: Optional[str] = None

    def __post_init__(self):
        if self.type not in COMMAND_TYPES:
            raise ValueError(f"Unknown command type: {self.type!r}")

    # ------------------------------------------------------------------
    # Canonical projections
    # ------------------------------------------------------------------

    @property
    def canonical_key(self) -> str:
        """type:action:key, ignoring position, timing and text payload."""
        return f"{self.type}:{self.action}:{self.key or ''}"

    @property
    def state_key(self) -> str:
        """type:key-or-action, the Markov state of this command."""
        return f"{self.type}:{self.key or self.action}"

    def canonically_equals(self, other: "Command") -> bool:
        return (
            self.type == other.type
            and self.action == other.action
            and self.key == other.key
        )

    @property
    def is_keystroke(self) -> bool:
        """Keyboard command that starts a key press (anything but a release)."""
        return (
            self.type == COMMAND_KEYBOARD
            and bool(self.key)
            and self.action.lower() != KEY_UP_ACTION
        )

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict:
        """Convert to dictionary, omitting unset fields."""
        result = {"type": self.type, "action": self.action}
        for name in ("key", "x", "y", "delay", "text"):
            value = getattr(self, name)
            if value is not None:
                result[name] = value
        return result

    @classmethod
    def from_dict(cls, data: Dict) -> "Command":
        """Create from dictionary."""
        return cls(
            type=data["type"],
            action=data["action"],
            key=data.get("key"),
            x=data.get("x"),
            y=data.get("y"),
            delay=data.get("delay"),
            text=data.get("text"),
        )

    def copy(self, **changes) -> "Command":
        return replace(self, **changes)

    def __str__(self) -> str:
        return self.canonical_key


def keyboard(key: str, action: str = "keydown") -> Command:
    return Command(type=COMMAND_KEYBOARD, action=action, key=key)


def delay(milliseconds: int, action: str = DELAY_ACTION) -> Command:
    return Command(type=COMMAND_DELAY, action=action, delay=milliseconds)


def mouse(x: int, y: int, action: str = "Move") -> Command:
    return Command(type=COMMAND_MOUSE, action=action, x=x, y=y)


def commands_equal(first: Command, second: Command) -> bool:
    """Canonical equality: type, action and key must match."""
    return first.canonically_equals(second)


def sequence_key(commands: Iterable[Command]) -> str:
    """Canonical key of a whole sequence."""
    return KEY_SEPARATOR.join(cmd.canonical_key for cmd in commands)


def commands_to_dicts(commands: Iterable[Command]) -> List[Dict]:
    return [cmd.to_dict() for cmd in commands]


def commands_from_dicts(data: Iterable[Dict]) -> List[Command]:
    return [Command.from_dict(item) for item in data]


# ============================================================================
# Line Codec
# ============================================================================

class MacroCodec:
    """
    Parses and writes the macro line format.

    Field names are matched case-insensitively. Blank lines and lines
    starting with '#' are skipped. Any malformed line raises ParseError
    carrying its 1-based line number.
    """

    ENCODING = "utf-8-sig"

    # ========================================================================
    # Parsing
    # ========================================================================

    def parse(self, content) -> List[Command]:
        """
        Parse macro content.

        Args:
            content: Raw bytes or already decoded text

        Returns:
            List of commands in execution order
        """
        text = self._decode(content)
        commands = []

        for line_number, raw_line in enumerate(text.splitlines(), start=1):
            line = raw_line.strip()
            if not line or line.startswith("#"):
                continue
            commands.append(self._parse_line(line, line_number))

        _LOGGER.debug(f"Parsed {len(commands)} commands")
        return commands

    def _decode(self, content) -> str:
        if isinstance(content, str):
            return content
        try:
            return bytes(content).decode(self.ENCODING)
        except UnicodeDecodeError as e:
            raise ParseError(f"content is not valid UTF-8: {e}") from e

    def _parse_line(self, line: str, line_number: int) -> Command:
        head, _, rest = line.partition(":")
        kind = head.strip().lower()

        if kind == COMMAND_TEXT:
            # Text payload may itself contain the separator
            return Command(type=COMMAND_TEXT, action="type", text=rest.strip())

        fields = [field.strip() for field in rest.split(":")] if rest else []

        if kind == COMMAND_DELAY:
            self._require_fields(fields, 1, "DELAY", line_number)
            return Command(
                type=COMMAND_DELAY,
                action=DELAY_ACTION,
                delay=self._parse_int(fields[0], "delay", line_number),
            )

        if kind == COMMAND_KEYBOARD:
            key, action = self._split_keyboard_fields(rest)
            if not key or not action:
                raise ParseError("Keyboard command needs a key and an action", line_number)
            return Command(type=COMMAND_KEYBOARD, action=action.lower(), key=key)

        if kind == COMMAND_MOUSE:
            self._require_fields(fields, 3, "Mouse", line_number)
            return Command(
                type=COMMAND_MOUSE,
                action=fields[2],
                x=self._parse_int(fields[0], "x", line_number),
                y=self._parse_int(fields[1], "y", line_number),
            )

        raise ParseError(f"unknown command type {head.strip()!r}", line_number)

    def _split_keyboard_fields(self, rest: str):
        # The key itself may be ':' so split the action off the right
        key, separator, action = rest.rpartition(":")
        if not separator:
            return "", ""
        return key.strip(), action.strip()

    def _require_fields(self, fields: List[str], count: int, kind: str, line_number: int):
        if len(fields) < count or any(not f for f in fields[:count]):
            raise ParseError(f"{kind} command needs {count} field(s)", line_number)

    def _parse_int(self, value: str, name: str, line_number: int) -> int:
        try:
            return int(value)
        except ValueError:
            raise ParseError(f"{name} must be an integer, got {value!r}", line_number) from None

    # ========================================================================
    # Writing
    # ========================================================================

    def serialize(self, commands: Iterable[Command]) -> bytes:
        """Write commands back to the line format as UTF-8 bytes."""
        lines = [self._format_command(cmd) for cmd in commands]
        return ("\n".join(lines) + "\n").encode("utf-8") if lines else b""

    def _format_command(self, cmd: Command) -> str:
        if cmd.type == COMMAND_DELAY:
            return f"DELAY{FIELD_SEPARATOR}{int(cmd.delay or 0)}"
        if cmd.type == COMMAND_KEYBOARD:
            return FIELD_SEPARATOR.join(["Keyboard", cmd.key or "", self._title(cmd.action)])
        if cmd.type == COMMAND_MOUSE:
            return FIELD_SEPARATOR.join([
                "Mouse",
                str(int(cmd.x or 0)),
                str(int(cmd.y or 0)),
                cmd.action,
                "0", "0", "0",
            ])
        return f"Text{FIELD_SEPARATOR}{cmd.text or ''}"

    def _title(self, action: str) -> str:
        lookup = {"keydown": "KeyDown", "keyup": "KeyUp", "keypress": "KeyPress"}
        return lookup.get(action.lower(), action)
