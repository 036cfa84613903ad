"""
Control Surface
===============

Command channel between external control inputs and the main loop.

Inputs (any combination may be wired in):
    - Real-time signals (install_signal_handlers)
    - Lines on stdin (StdinCommandReader)
    - The HTTP control API (camcast.main)

Every input funnels into ControlSurface.submit(); the main loop takes
everything queued so far with drain() once per iteration.

Design Rules:
    - Each physical command event is delivered at most once
    - Unrecognised input produces no command and no error
    - submit() is safe from signal handlers and any thread
"""

import logging
import queue
import signal
import sys
import threading
from typing import Callable, Dict, List, Optional, TextIO

from camcast.control.commands import Command, parse_command, signal_commands


logger = logging.getLogger(__name__)


class ControlSurface:
    """
    Thread-safe command queue with an optional wake hook.

    The wake hook lets a submitted command cut the main loop's wait
    short; the main loop installs it when it starts.

    Example:
        control = ControlSurface()
        control.submit(Command.START_STREAM)
        control.submit_text("capture image")

        for command in control.drain():
            handle(command)
    """

    def __init__(self) -> None:
        self._queue: "queue.SimpleQueue[Command]" = queue.SimpleQueue()
        self._wake: Optional[Callable[[], None]] = None

        self.submitted_count = 0
        self.ignored_count = 0

    def set_wake_hook(self, wake: Optional[Callable[[], None]]) -> None:
        self._wake = wake

    def submit(self, command: Command, wake: bool = True) -> None:
        """
        Queue a command for the main loop.

        Args:
            command: Command to deliver
            wake: Whether to wake the main loop now. Signal handlers pass
                False: the loop picks the command up on its next poll.
        """
        self._queue.put(command)
        self.submitted_count += 1
        if wake and self._wake is not None:
            self._wake()

    def submit_text(self, text: str) -> Optional[Command]:
        """
        Parse and queue a textual command.

        Returns:
            The queued Command, or None if the text was not recognised.
        """
        command = parse_command(text)
        if command is None:
            self.ignored_count += 1
            logger.debug(f"Ignoring unrecognised control input: {text!r}")
            return None
        self.submit(command)
        return command

    def drain(self) -> List[Command]:
        """Take every queued command, oldest first."""
        commands = []
        while True:
            try:
                commands.append(self._queue.get_nowait())
            except queue.Empty:
                break
        return commands

    @property
    def pending(self) -> bool:
        return not self._queue.empty()


def install_signal_handlers(control: ControlSurface) -> Dict[int, object]:
    """
    Route the control signals into a ControlSurface.

    Must be called from the main thread.

    Returns:
        Previous handlers by signal number, for restore_signal_handlers().
    """
    mapping = signal_commands()
    previous = {}

    def _handler(signum, frame):
        command = mapping.get(signum)
        if command is not None:
            control.submit(command, wake=False)

    for signum in mapping:
        previous[signum] = signal.signal(signum, _handler)

    if mapping:
        logger.info(
            "Control signals installed: "
            + ", ".join(f"{signum}={command.value}" for signum, command in mapping.items())
        )
    return previous


def restore_signal_handlers(previous: Dict[int, object]) -> None:
    for signum, handler in previous.items():
        signal.signal(signum, handler)


class StdinCommandReader:
    """
    Reads control commands line by line from a text stream.

    Runs on a daemon thread until the stream ends.
    """

    def __init__(self, control: ControlSurface, stream: Optional[TextIO] = None) -> None:
        self.control = control
        self.stream = stream if stream is not None else sys.stdin
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, name="stdin-control", daemon=True)
        self._thread.start()
        logger.info("Reading control commands from stdin")

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def _run(self) -> None:
        for line in self.stream:
            line = line.strip()
            if line:
                self.control.submit_text(line)
        logger.info("Control input closed")
