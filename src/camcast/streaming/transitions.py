"""
State Transition Logic
======================

Deterministic transition policy for the stream state machine.

The policy is a pure function of (current state, event, clock time). It
never touches sockets or the encoder; it returns the new StreamState and
the list of Actions the main loop has to perform.

Transition Rules:
    IDLE:
        START_STREAM          -> WAITING_FOR_CONNECTION  [OPEN_SERVER]
    WAITING_FOR_CONNECTION:
        CONNECTION_ACCEPTED   -> STREAMING               [START_ENCODER]
        WAIT_TIMEOUT          -> IDLE                    [CLOSE_SERVER]
        STOP_STREAM           -> IDLE                    [CLOSE_SERVER]
        STREAM_FAILED         -> IDLE                    [CLOSE_SERVER]
    STREAMING:
        CONNECTION_ACCEPTED   -> STREAMING (client added)
        CONNECTIONS_CLOSED    -> STREAMING (keeps accepting)
        STOP_STREAM           -> IDLE                    [STOP_ENCODER, CLOSE_SERVER]
        STREAM_FAILED         -> IDLE                    [STOP_ENCODER, CLOSE_SERVER]
    Any state:
        CAPTURE_STILL         -> unchanged               [WRITE_STILL]

Every other (state, event) pair is a no-op.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Optional, Tuple

from camcast.streaming.reason_codes import ReasonCode
from camcast.streaming.state import Action, ServerState, StreamEvent, StreamState


logger = logging.getLogger(__name__)


DEFAULT_WAIT_TIMEOUT_SEC = 600.0


@dataclass
class TransitionResult:
    """Result of a transition evaluation."""

    previous_state: ServerState
    new_state: ServerState
    event: StreamEvent
    reason_code: ReasonCode
    actions: Tuple[Action, ...] = field(default_factory=tuple)

    @property
    def transition_occurred(self) -> bool:
        return self.previous_state != self.new_state

    def __repr__(self) -> str:
        return (
            f"TransitionResult({self.previous_state.value} -> {self.new_state.value}, "
            f"{self.event.value}, {self.reason_code.value}, "
            f"actions={[a.value for a in self.actions]})"
        )


# (state, event) -> (target, reason, actions)
_TABLE = {
    (ServerState.IDLE, StreamEvent.START_STREAM): (
        ServerState.WAITING_FOR_CONNECTION,
        ReasonCode.STREAM_REQUESTED,
        (Action.OPEN_SERVER,),
    ),
    (ServerState.WAITING_FOR_CONNECTION, StreamEvent.CONNECTION_ACCEPTED): (
        ServerState.STREAMING,
        ReasonCode.CLIENT_CONNECTED,
        (Action.START_ENCODER,),
    ),
    (ServerState.WAITING_FOR_CONNECTION, StreamEvent.WAIT_TIMEOUT): (
        ServerState.IDLE,
        ReasonCode.WAIT_TIMEOUT,
        (Action.CLOSE_SERVER,),
    ),
    (ServerState.WAITING_FOR_CONNECTION, StreamEvent.STOP_STREAM): (
        ServerState.IDLE,
        ReasonCode.STOP_REQUESTED,
        (Action.CLOSE_SERVER,),
    ),
    (ServerState.WAITING_FOR_CONNECTION, StreamEvent.STREAM_FAILED): (
        ServerState.IDLE,
        ReasonCode.STREAM_FAILED,
        (Action.CLOSE_SERVER,),
    ),
    (ServerState.STREAMING, StreamEvent.CONNECTION_ACCEPTED): (
        ServerState.STREAMING,
        ReasonCode.CLIENT_JOINED,
        (),
    ),
    (ServerState.STREAMING, StreamEvent.CONNECTIONS_CLOSED): (
        ServerState.STREAMING,
        ReasonCode.CLIENTS_GONE,
        (),
    ),
    (ServerState.STREAMING, StreamEvent.STOP_STREAM): (
        ServerState.IDLE,
        ReasonCode.STOP_REQUESTED,
        (Action.STOP_ENCODER, Action.CLOSE_SERVER),
    ),
    (ServerState.STREAMING, StreamEvent.STREAM_FAILED): (
        ServerState.IDLE,
        ReasonCode.STREAM_FAILED,
        (Action.STOP_ENCODER, Action.CLOSE_SERVER),
    ),
}


class TransitionPolicy:
    """
    Table-driven transition policy.

    Attributes:
        wait_timeout_sec: How long WAITING_FOR_CONNECTION may last
    """

    def __init__(self, wait_timeout_sec: float = DEFAULT_WAIT_TIMEOUT_SEC) -> None:
        """
        Initialize transition policy.

        Args:
            wait_timeout_sec: Seconds to wait for a first client
        """
        if wait_timeout_sec <= 0:
            raise ValueError("wait_timeout_sec must be > 0")
        self.wait_timeout_sec = wait_timeout_sec
        logger.info(f"TransitionPolicy initialized: wait_timeout={wait_timeout_sec:g}s")

    def evaluate(
        self,
        stream_state: StreamState,
        event: StreamEvent,
        current_time: Optional[float] = None,
    ) -> Tuple[StreamState, TransitionResult]:
        """
        Evaluate one event.

        Args:
            stream_state: Current state
            event: Event to apply
            current_time: Clock time (defaults to time.monotonic())

        Returns:
            Tuple of (updated_stream_state, transition_result)
        """
        if current_time is None:
            current_time = time.monotonic()

        current = stream_state.server_state

        if event == StreamEvent.CAPTURE_STILL:
            return self._stay(stream_state, event, ReasonCode.STILL_REQUESTED, (Action.WRITE_STILL,))

        entry = _TABLE.get((current, event))
        if entry is None:
            return self._stay(stream_state, event, self._noop_reason(current, event), ())

        target, reason, actions = entry
        if target == current:
            return self._stay(stream_state, event, reason, actions)

        new_state = stream_state.model_copy(update={
            "server_state": target,
            "state_entered_at": current_time,
            "wait_started_at": (
                current_time if target == ServerState.WAITING_FOR_CONNECTION else None
            ),
            "transitions": stream_state.transitions + 1,
            "last_reason": reason,
        })
        return new_state, TransitionResult(
            previous_state=current,
            new_state=target,
            event=event,
            reason_code=reason,
            actions=actions,
        )

    def is_wait_expired(
        self,
        stream_state: StreamState,
        current_time: Optional[float] = None,
    ) -> bool:
        """Whether the wait for a first client has run out."""
        if stream_state.server_state != ServerState.WAITING_FOR_CONNECTION:
            return False
        if stream_state.wait_started_at is None:
            return False
        if current_time is None:
            current_time = time.monotonic()
        return current_time - stream_state.wait_started_at > self.wait_timeout_sec

    def wait_remaining(
        self,
        stream_state: StreamState,
        current_time: Optional[float] = None,
    ) -> Optional[float]:
        """Seconds left before the wait times out, or None if not waiting."""
        if (
            stream_state.server_state != ServerState.WAITING_FOR_CONNECTION
            or stream_state.wait_started_at is None
        ):
            return None
        if current_time is None:
            current_time = time.monotonic()
        elapsed = current_time - stream_state.wait_started_at
        return max(0.0, self.wait_timeout_sec - elapsed)

    def _stay(
        self,
        stream_state: StreamState,
        event: StreamEvent,
        reason: ReasonCode,
        actions: Tuple[Action, ...],
    ) -> Tuple[StreamState, TransitionResult]:
        current = stream_state.server_state
        new_state = stream_state.model_copy(update={"last_reason": reason})
        return new_state, TransitionResult(
            previous_state=current,
            new_state=current,
            event=event,
            reason_code=reason,
            actions=actions,
        )

    @staticmethod
    def _noop_reason(current: ServerState, event: StreamEvent) -> ReasonCode:
        if event == StreamEvent.START_STREAM:
            return ReasonCode.ALREADY_ACTIVE
        if current == ServerState.IDLE:
            return ReasonCode.NOT_ACTIVE
        return ReasonCode.IGNORED
