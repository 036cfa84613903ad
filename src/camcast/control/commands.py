"""
Control Commands
================

The fixed set of commands the appliance understands, and how external
input maps onto them.

Textual forms (case and surrounding whitespace ignored):
    "start video server", "start"           -> START_STREAM
    "stop video server", "stop"             -> STOP_STREAM
    "capture image", "capture", "still"     -> CAPTURE_STILL

Signal forms (POSIX real-time signals):
    SIGRTMIN+1 -> START_STREAM
    SIGRTMIN+2 -> STOP_STREAM
    SIGRTMIN+3 -> CAPTURE_STILL

Anything else maps to no command.
"""

import signal
from enum import Enum
from typing import Dict, Optional


class Command(str, Enum):
    """
    Control commands.

    Commands are idempotent with respect to stream state: a second
    START_STREAM while already streaming does nothing.
    """

    START_STREAM = "START_STREAM"
    STOP_STREAM = "STOP_STREAM"
    CAPTURE_STILL = "CAPTURE_STILL"


_TEXT_COMMANDS: Dict[str, Command] = {
    "start video server": Command.START_STREAM,
    "start": Command.START_STREAM,
    "stop video server": Command.STOP_STREAM,
    "stop": Command.STOP_STREAM,
    "capture image": Command.CAPTURE_STILL,
    "capture": Command.CAPTURE_STILL,
    "still": Command.CAPTURE_STILL,
}


def parse_command(text: str) -> Optional[Command]:
    """
    Map a line of text to a Command.

    Args:
        text: Raw input (e.g. a stdin line or an HTTP path segment)

    Returns:
        The Command, or None if the input is not recognised.
    """
    if not isinstance(text, str):
        return None
    normalized = " ".join(text.replace("_", " ").replace("-", " ").split()).lower()
    if normalized in _TEXT_COMMANDS:
        return _TEXT_COMMANDS[normalized]
    try:
        return Command(normalized.upper().replace(" ", "_"))
    except ValueError:
        return None


def signal_commands() -> Dict[int, Command]:
    """
    Real-time signal numbers and the commands they trigger.

    Returns an empty mapping on platforms without real-time signals.
    """
    if not hasattr(signal, "SIGRTMIN"):
        return {}
    return {
        signal.SIGRTMIN + 1: Command.START_STREAM,
        signal.SIGRTMIN + 2: Command.STOP_STREAM,
        signal.SIGRTMIN + 3: Command.CAPTURE_STILL,
    }


def command_for_signal(signum: int) -> Optional[Command]:
    """Map a signal number to a Command, or None."""
    return signal_commands().get(signum)
