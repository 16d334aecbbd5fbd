"""Tests for the command model and the macro line codec."""

import pytest

from macro_humanizer.command_model import (
    Command,
    MacroCodec,
    commands_equal,
    delay,
    keyboard,
    mouse,
    sequence_key,
)
from macro_humanizer.errors import ParseError


def test_canonical_equality_ignores_position_delay_and_text():
    assert commands_equal(mouse(10, 20, "Move"), mouse(300, 400, "Move"))
    assert commands_equal(delay(50), delay(55))
    assert commands_equal(
        Command(type="text", action="type", text="hello"),
        Command(type="text", action="type", text="bye"),
    )


def test_canonical_equality_respects_type_action_and_key():
    assert not commands_equal(keyboard("a"), keyboard("b"))
    assert not commands_equal(keyboard("a", "keydown"), keyboard("a", "keyup"))
    assert not commands_equal(mouse(1, 1, "Move"), mouse(1, 1, "LeftButtonDown"))


def test_state_key_prefers_key_over_action():
    assert keyboard("a").state_key == "keyboard:a"
    assert mouse(1, 2, "LeftButtonDown").state_key == "mouse:LeftButtonDown"
    assert delay(10).state_key == "delay:wait"


def test_sequence_key_joins_canonical_keys():
    assert sequence_key([keyboard("a"), delay(5)]) == "keyboard:keydown:a|delay:wait:"


def test_unknown_command_type_rejected():
    with pytest.raises(ValueError):
        Command(type="joystick", action="tilt")


def test_keystroke_detection():
    assert keyboard("a").is_keystroke
    assert not keyboard("a", "keyup").is_keystroke
    assert not delay(10).is_keystroke


def test_parse_all_command_kinds():
    content = (
        b"Keyboard : A : KeyDown\n"
        b"DELAY : 50\n"
        b"Mouse : 120 : 340 : Move : 0 : 0 : 0\n"
        b"Text : hello : world\n"
    )
    commands = MacroCodec().parse(content)

    assert commands == [
        Command(type="keyboard", action="keydown", key="A"),
        Command(type="delay", action="wait", delay=50),
        Command(type="mouse", action="Move", x=120, y=340),
        Command(type="text", action="type", text="hello : world"),
    ]


def test_parse_skips_blank_and_comment_lines_and_bom():
    content = "\ufeff# recorded macro\n\nkeyboard : Enter : keyup\n".encode("utf-8")
    commands = MacroCodec().parse(content)

    assert len(commands) == 1
    assert commands[0].key == "Enter"
    assert commands[0].action == "keyup"


def test_parse_colon_key():
    commands = MacroCodec().parse("Keyboard : : : KeyDown")
    assert commands[0].key == ":"


@pytest.mark.parametrize("line, line_number", [
    ("Joystick : 1 : 2", 2),
    ("DELAY : soon", 2),
    ("Mouse : 10 : Move", 2),
    ("Keyboard : A", 2),
])
def test_parse_errors_carry_line_number(line, line_number):
    with pytest.raises(ParseError) as exc_info:
        MacroCodec().parse(f"DELAY : 10\n{line}\n")

    assert exc_info.value.line_number == line_number
    assert str(exc_info.value).startswith(f"line {line_number}:")


def test_parse_rejects_invalid_utf8():
    with pytest.raises(ParseError):
        MacroCodec().parse(b"\xff\xfe\xfa")


def test_serialize_then_parse_preserves_canonical_fields():
    codec = MacroCodec()
    commands = [
        keyboard("Shift"), delay(70), keyboard("Shift", "keyup"),
        mouse(5, 6, "LeftButtonDown"),
        Command(type="text", action="type", text="abc"),
    ]

    restored = codec.parse(codec.serialize(commands))

    assert [c.canonical_key for c in restored] == [c.canonical_key for c in commands]
    assert restored[1].delay == 70
    assert (restored[3].x, restored[3].y) == (5, 6)


def test_serialize_formats_lines():
    data = MacroCodec().serialize([keyboard("a"), delay(12)])
    assert data == b"Keyboard : a : KeyDown\nDELAY : 12\n"


def test_dict_round_trip_omits_unset_fields():
    cmd = mouse(1, 2)
    assert cmd.to_dict() == {"type": "mouse", "action": "Move", "x": 1, "y": 2}
    assert Command.from_dict(cmd.to_dict()) == cmd
