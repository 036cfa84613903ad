"""
Control Module
==============

Out-of-band control of the appliance.

Components:
    - Command: START_STREAM, STOP_STREAM, CAPTURE_STILL
    - parse_command / command_for_signal: Input -> Command mapping
    - ControlSurface: Queue the main loop drains each iteration
    - install_signal_handlers / StdinCommandReader: Input channels
"""

from camcast.control.commands import (
    Command,
    command_for_signal,
    parse_command,
    signal_commands,
)
from camcast.control.surface import (
    ControlSurface,
    StdinCommandReader,
    install_signal_handlers,
    restore_signal_handlers,
)


__all__ = [
    "Command",
    "parse_command",
    "command_for_signal",
    "signal_commands",
    "ControlSurface",
    "StdinCommandReader",
    "install_signal_handlers",
    "restore_signal_handlers",
]
