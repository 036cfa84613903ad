"""
Streaming Appliance
===================

The main loop that ties capture, state machine, encoder and broadcast
server together.

One iteration:
    1. Wait for completed frames (bounded by the poll interval, cut short
       by a stop request or a control command)
    2. Gate each frame: encode it when STREAMING, otherwise just release it
    3. Time out WAITING_FOR_CONNECTION if nobody attached in time
    4. Accept pending client connections
    5. Apply queued control commands
    6. Write a still if one is pending and a frame is at hand
    7. Release this iteration's frames

The loop runs on its own thread behind a start / request_stop / join
task interface. It is the only thread that touches the state machine,
the broadcast server and the encoder; the capture thread only reaches it
through the FrameRelay.

Design Rules:
    - Runtime errors are logged and absorbed, the capture pipeline keeps running
    - A failed listener or encoder start drops the appliance back to IDLE
    - Shutdown finishes the current iteration, stops streaming, stops
      capture and discards the relay backlog
"""

import logging
import threading
import time
from typing import Any, Callable, Dict, Iterable, List, Optional

from camcast.capture.engine import VIDEO_STREAM, CaptureEngine, CaptureError, CaptureFlags
from camcast.capture.handle import FrameHandle
from camcast.control.commands import Command
from camcast.control.surface import ControlSurface
from camcast.encoder.engine import Encoder, EncoderError
from camcast.output.broadcast import BroadcastServer
from camcast.output.still import StillWriter
from camcast.streaming.graph import StreamControlGraph
from camcast.streaming.state import Action, ServerState, StreamEvent
from camcast.streaming.transitions import DEFAULT_WAIT_TIMEOUT_SEC, TransitionResult


logger = logging.getLogger(__name__)


_COMMAND_EVENTS = {
    Command.START_STREAM: StreamEvent.START_STREAM,
    Command.STOP_STREAM: StreamEvent.STOP_STREAM,
    Command.CAPTURE_STILL: StreamEvent.CAPTURE_STILL,
}


class ApplianceMetrics:
    """Counters for the main loop."""

    __slots__ = (
        "iterations",
        "frames_received",
        "frames_encoded",
        "frames_skipped",
        "connections_accepted",
        "commands_handled",
        "stills_requested",
        "errors",
    )

    def __init__(self) -> None:
        self.iterations: int = 0
        self.frames_received: int = 0
        self.frames_encoded: int = 0
        self.frames_skipped: int = 0
        self.connections_accepted: int = 0
        self.commands_handled: int = 0
        self.stills_requested: int = 0
        self.errors: int = 0

    def to_dict(self) -> dict:
        """Export metrics as dict."""
        return {name: getattr(self, name) for name in self.__slots__}


class StreamingAppliance:
    """
    Main loop of the camera-to-network appliance.

    Attributes:
        capture: Capture engine (opened and started by start())
        encoder: Encoder fed while STREAMING
        server: Broadcast server clients attach to
        still_writer: Writer for CAPTURE_STILL
        control: Command channel drained every iteration
        graph: Stream state machine
        metrics: Loop counters
        last_error: Message of the latest streaming failure, if any

    Example:
        appliance = StreamingAppliance(capture, encoder, server, still_writer)
        appliance.start()
        appliance.control.submit(Command.START_STREAM)
        ...
        appliance.stop()
    """

    def __init__(
        self,
        capture: CaptureEngine,
        encoder: Encoder,
        server: BroadcastServer,
        still_writer: Optional[StillWriter] = None,
        control: Optional[ControlSurface] = None,
        wait_timeout_sec: float = DEFAULT_WAIT_TIMEOUT_SEC,
        poll_interval_sec: float = 0.125,
        capture_flags: CaptureFlags = CaptureFlags.NONE,
        stream: str = VIDEO_STREAM,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize the appliance.

        Args:
            capture: Capture engine
            encoder: Encoder backend
            server: Broadcast server (address already validated)
            still_writer: Still image writer (stills disabled if None)
            control: Command channel (a new one if None)
            wait_timeout_sec: Seconds to wait for a first client
            poll_interval_sec: Upper bound on one iteration's wait
            capture_flags: Flags passed to capture.configure()
            stream: Stream that is encoded and written as stills
            clock: Monotonic clock used for the wait timeout
        """
        if poll_interval_sec <= 0:
            raise ValueError("poll_interval_sec must be > 0")

        self.capture = capture
        self.encoder = encoder
        self.server = server
        self.still_writer = still_writer
        self.control = control or ControlSurface()
        self.graph = StreamControlGraph(wait_timeout_sec=wait_timeout_sec)
        self.poll_interval_sec = poll_interval_sec
        self.capture_flags = capture_flags
        self.stream = stream
        self.clock = clock

        self.metrics = ApplianceMetrics()
        self.last_error: Optional[str] = None

        self._still_pending = False
        self._had_clients = False
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._status: Dict[str, Any] = {}
        self._publish_status()

    # -------------------------------------------------------------------------
    # Task interface
    # -------------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def state(self) -> ServerState:
        return self.graph.current_state

    def start(self) -> None:
        """
        Bring up capture and start the main loop thread.

        Raises:
            CaptureError: If the capture engine cannot be started
        """
        if self._thread is not None:
            return

        self.capture.open()
        try:
            self.capture.configure(self.capture_flags)
            self.capture.start()
        except CaptureError:
            self.capture.close()
            raise
        self.control.set_wake_hook(self.capture.wake)

        self._stop_event.clear()
        self._thread = threading.Thread(target=self.run, name="main-loop", daemon=True)
        self._thread.start()
        logger.info("Streaming appliance started")

    def request_stop(self) -> None:
        """Ask the main loop to exit after the current iteration."""
        self._stop_event.set()
        self.capture.wake()

    def join(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for the main loop to finish.

        Returns:
            True if the loop has exited.
        """
        if self._thread is None:
            return True
        self._thread.join(timeout)
        if self._thread.is_alive():
            return False
        self._thread = None
        return True

    def stop(self, timeout: Optional[float] = 5.0) -> bool:
        """Request stop and wait for the loop to exit."""
        self.request_stop()
        stopped = self.join(timeout)
        if not stopped:
            logger.error("Main loop did not exit in time")
        return stopped

    # -------------------------------------------------------------------------
    # Main loop
    # -------------------------------------------------------------------------

    def run(self) -> None:
        """Run iterations until a stop is requested, then tear down."""
        logger.info("Main loop started")
        try:
            while not self._stop_event.is_set():
                try:
                    self.run_once()
                except Exception:
                    self.metrics.errors += 1
                    logger.exception("Main loop iteration failed")
                    self._stop_event.wait(0.1)
        finally:
            self._teardown()
            logger.info("Main loop stopped")

    def run_once(self, timeout: Optional[float] = None) -> List[FrameHandle]:
        """
        Run one iteration.

        Args:
            timeout: Wait bound for this iteration (defaults to the poll interval)

        Returns:
            The frames handled in this iteration (already released).
        """
        wait = self.poll_interval_sec if timeout is None else timeout
        frames = self.capture.wait_for_events(timeout=wait)
        self.metrics.iterations += 1

        try:
            self._dispatch_frames(frames)
            self._check_wait_timeout()
            self._poll_connections()
            self._handle_commands(self.control.drain())
            if self._still_pending and frames:
                self._write_still(frames[-1])
        finally:
            for handle in frames:
                handle.release()
            self._publish_status()

        return frames

    def _dispatch_frames(self, frames: List[FrameHandle]) -> None:
        for handle in frames:
            self.metrics.frames_received += 1

            if self.graph.current_state != ServerState.STREAMING:
                self.metrics.frames_skipped += 1
                continue

            try:
                self.encoder.encode(handle, self.stream)
                self.metrics.frames_encoded += 1
            except EncoderError as e:
                self._fail(f"Encoder failed on frame {handle.sequence}: {e}")

        if self.graph.current_state == ServerState.STREAMING:
            if self.server.is_idle() and self._had_clients:
                self._had_clients = False
                self._process(StreamEvent.CONNECTIONS_CLOSED)
            elif not self.server.is_idle():
                self._had_clients = True

    def _check_wait_timeout(self) -> None:
        if self.graph.is_wait_expired(self.clock()):
            logger.info(
                f"No client within {self.graph.policy.wait_timeout_sec:g}s, giving up"
            )
            self._process(StreamEvent.WAIT_TIMEOUT)

    def _poll_connections(self) -> None:
        while self.server.is_listening and self.server.poll(0):
            connection = self.server.accept_connection()
            if connection is None:
                break
            self.metrics.connections_accepted += 1
            self._had_clients = True
            self._process(StreamEvent.CONNECTION_ACCEPTED)

    def _handle_commands(self, commands: List[Command]) -> None:
        for command in commands:
            self.metrics.commands_handled += 1
            logger.info(f"Control command: {command.value}")
            self._process(_COMMAND_EVENTS[command])

    # -------------------------------------------------------------------------
    # Transitions and actions
    # -------------------------------------------------------------------------

    def _process(self, event: StreamEvent) -> TransitionResult:
        result = self.graph.process(event, self.clock())
        error = self._perform_all(result.actions)
        if error is not None:
            self._fail(f"{event.value} failed: {error}")
        return result

    def _perform_all(self, actions: Iterable[Action]) -> Optional[Exception]:
        """Run every action even if an earlier one fails; return the first error."""
        first_error = None
        for action in actions:
            try:
                self._perform(action)
            except (OSError, EncoderError, CaptureError) as e:
                logger.error(f"Action {action.value} failed: {e}")
                if first_error is None:
                    first_error = e
        return first_error

    def _fail(self, message: str) -> None:
        """Fall back to IDLE after a listener/encoder failure."""
        self.last_error = message
        self.metrics.errors += 1
        logger.error(message)

        result = self.graph.process(StreamEvent.STREAM_FAILED, self.clock())
        self._perform_all(result.actions)
        self._had_clients = False

    def _perform(self, action: Action) -> None:
        if action == Action.OPEN_SERVER:
            self.server.start_listening()
        elif action == Action.CLOSE_SERVER:
            self.server.stop()
        elif action == Action.START_ENCODER:
            self.encoder.set_output_ready_callback(self.server.on_output_ready)
            self.encoder.start()
        elif action == Action.STOP_ENCODER:
            try:
                self.encoder.stop()
            finally:
                self.encoder.set_output_ready_callback(None)
        elif action == Action.WRITE_STILL:
            if self.still_writer is None:
                logger.warning("Still capture requested but no still writer configured")
            else:
                self.metrics.stills_requested += 1
                self._still_pending = True

    def _write_still(self, handle: FrameHandle) -> None:
        self._still_pending = False
        try:
            self.still_writer.capture_still(handle, self.stream)
        except RuntimeError as e:
            logger.error(f"Unable to schedule still capture: {e}")

    def _teardown(self) -> None:
        if self.graph.current_state != ServerState.IDLE:
            self._process(StreamEvent.STOP_STREAM)
        self.server.stop()

        try:
            self.capture.stop()
            self.capture.close()
        except CaptureError as e:
            logger.error(f"Capture shutdown failed: {e}")

        if self.still_writer is not None:
            self.still_writer.close()
        self.control.set_wake_hook(None)
        self._publish_status()

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    def _publish_status(self) -> None:
        stream_state = self.graph.stream_state
        remaining = self.graph.wait_remaining(self.clock())
        self._status = {
            "state": stream_state.server_state.value,
            "reason": stream_state.last_reason.value if stream_state.last_reason else None,
            "transitions": stream_state.transitions,
            "wait_remaining_sec": round(remaining, 1) if remaining is not None else None,
            "server": self.server.metrics(),
            "metrics": self.metrics.to_dict(),
            "last_error": self.last_error,
        }

    def status(self) -> Dict[str, Any]:
        """
        Latest status snapshot.

        Published by the main loop at the end of every iteration, so it is
        safe to read from any thread.
        """
        return dict(self._status)
