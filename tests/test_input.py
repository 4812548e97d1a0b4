import socket
from datetime import timedelta

import pytest

from soxy.input import (
    SERVICE,
    InputError,
    InputHandler,
    Key,
    KeyboardDelay,
    KeyDown,
    KeyPress,
    KeyUp,
    Pause,
    PrintableKey,
    Write,
    key_lookup,
    tcp_handler,
)


class _Channel:
    def __init__(self):
        self.actions = []
        self.settings = []
        self.resets = 0

    def reset_client(self):
        self.resets += 1

    def send_input_action(self, action):
        self.actions.append(action)

    def send_input_setting(self, setting):
        self.settings.append(setting)


def _run(script):
    channel = _Channel()
    local, peer = socket.socketpair()
    with local, peer:
        peer.sendall(script.encode("utf-8"))
        tcp_handler(None, local, channel)
        output = b""
        while True:
            part = peer.recv(65536)
            if not part:
                break
            output += part
    return channel, output.decode("utf-8")


@pytest.mark.parametrize(
    "name, key",
    [
        ("alt", Key.ALT_LEFT),
        ("Alt_L", Key.ALT_LEFT),
        ("ALT_RIGHT", Key.ALT_RIGHT),
        ("enter", Key.RETURN),
        ("Return", Key.RETURN),
        ("ctrl", Key.CONTROL),
        ("del", Key.DELETE),
        ("esc", Key.ESCAPE),
        ("f11", Key.F11),
        ("hyper_r", Key.HYPER_RIGHT),
        ("windows", Key.WINDOWS),
    ],
)
def test_key_lookup(name, key):
    assert key_lookup(name) is key


@pytest.mark.parametrize("name", ["f12", "", "level3shift", "a"])
def test_key_lookup_unknown(name):
    assert key_lookup(name) is None


def test_key_display():
    assert str(key_lookup("alt")) == "AltLeft"
    assert str(key_lookup("hyper_right")) == "HyperRight"
    assert str(Key.LEVEL3_SHIFT) == "Level3Shift"


def test_printable_key_display():
    assert str(PrintableKey("a")) == "Printable('a')"


def test_input_error_display():
    assert str(InputError("x")) == "keyboard error: x"


def test_input_handler_is_abstract():
    with pytest.raises(TypeError):
        InputHandler()


def test_input_handler_subclass():
    class Recorder(InputHandler):
        def __init__(self):
            self.played = []
            self.delay = None

        def set(self, setting):
            self.delay = setting.delay

        def play(self, action):
            self.played.append(action)

        def reset(self):
            self.delay = None

    handler = Recorder()
    handler.set(KeyboardDelay(timedelta(milliseconds=5)))
    handler.play(Write("x"))
    assert handler.delay == timedelta(milliseconds=5)
    assert handler.played == [Write("x")]
    handler.reset()
    assert handler.delay is None


def test_console_commands():
    channel, output = _run(
        "delay 50\r\n"
        "key enter\n"
        "keydown shift\n"
        "keyup shift\n"
        "write hi there\n"
        "writeln yo\n"
        "pause 20\n"
        "quit\n"
    )
    assert channel.resets == 1
    assert channel.settings == [KeyboardDelay(timedelta(milliseconds=50))]
    assert channel.actions == [
        KeyPress(Key.RETURN),
        KeyDown(Key.SHIFT),
        KeyUp(Key.SHIFT),
        Write("hi there"),
        Write("yo\n"),
        Pause(timedelta(milliseconds=20)),
    ]
    assert "input> " in output


def test_console_errors():
    channel, output = _run("keyup nope\npause x\nsleep\nbogus\n\nexit\n")
    assert channel.actions == []
    assert "unknown key" in output
    assert "failed parse delay: invalid digit found in string" in output
    assert "failed parse delay: cannot parse integer from empty string" in output
    assert "invalid command" in output


def test_console_cat(tmp_path):
    path = tmp_path / "text.txt"
    path.write_text("one\ntwo", encoding="utf-8")
    channel, _ = _run(f"cat {path}\nquit\n")
    assert channel.actions == [Write("one\n"), Write("two")]


def test_console_cat_missing_file(tmp_path):
    channel, output = _run(f"cat {tmp_path / 'missing'}\nquit\n")
    assert channel.actions == []
    assert "failed to open file for reading" in output


def test_console_disconnect_raises():
    channel = _Channel()
    local, peer = socket.socketpair()
    with local, peer:
        peer.shutdown(socket.SHUT_WR)
        with pytest.raises(BrokenPipeError):
            tcp_handler(None, local, channel)


def test_service_definition():
    channel, output = _run("quit\n")
    assert channel.resets == 1
    assert channel.actions == []
    assert "input> " in output
    assert SERVICE.name == "input"
    assert SERVICE.backend is None
    assert SERVICE.frontend.default_port == 1081