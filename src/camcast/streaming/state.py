"""
Stream State Models
===================

State representation for the stream state machine.

Core Concepts:
    - ServerState: Discrete appliance states (IDLE, WAITING_FOR_CONNECTION, STREAMING)
    - StreamEvent: Everything that can drive a transition
    - Action: Side effects the main loop performs for a transition
    - StreamState: Current state plus the data that goes with it

Transitions:
    IDLE      -- START_STREAM --------> WAITING    open listener, start wait clock
    WAITING   -- CONNECTION_ACCEPTED -> STREAMING  start encoder
    WAITING   -- WAIT_TIMEOUT --------> IDLE       close listener
    WAITING   -- STOP_STREAM ---------> IDLE       close listener
    STREAMING -- STOP_STREAM ---------> IDLE       stop encoder, close clients
    any       -- CAPTURE_STILL -------> (same)     write the latest frame

Only STREAMING sends frames to the encoder.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from camcast.streaming.reason_codes import ReasonCode


class ServerState(str, Enum):
    """
    Discrete states of the streaming appliance.

    Attributes:
        IDLE: Not serving; frames are received and released unencoded
        WAITING_FOR_CONNECTION: Listening, encoder off until a client attaches
        STREAMING: Encoder on, output fanned out to every client
    """

    IDLE = "IDLE"
    WAITING_FOR_CONNECTION = "WAITING_FOR_CONNECTION"
    STREAMING = "STREAMING"


class StreamEvent(str, Enum):
    """
    Inputs to the state machine.

    Commands come from the control surface; the rest are observed by the
    main loop. STREAM_FAILED is raised internally when starting the
    listener or the encoder fails.
    """

    START_STREAM = "START_STREAM"
    STOP_STREAM = "STOP_STREAM"
    CAPTURE_STILL = "CAPTURE_STILL"
    CONNECTION_ACCEPTED = "CONNECTION_ACCEPTED"
    CONNECTIONS_CLOSED = "CONNECTIONS_CLOSED"
    WAIT_TIMEOUT = "WAIT_TIMEOUT"
    STREAM_FAILED = "STREAM_FAILED"


class Action(str, Enum):
    """Side effects requested by a transition, performed in order."""

    OPEN_SERVER = "OPEN_SERVER"
    CLOSE_SERVER = "CLOSE_SERVER"
    START_ENCODER = "START_ENCODER"
    STOP_ENCODER = "STOP_ENCODER"
    WRITE_STILL = "WRITE_STILL"


class StreamState(BaseModel):
    """
    Full state of the stream state machine.

    Attributes:
        server_state: Current discrete state
        state_entered_at: Clock time the current state was entered
        wait_started_at: Clock time waiting began (only while waiting)
        transitions: Number of state changes so far
        last_reason: Reason code of the latest evaluation
    """

    server_state: ServerState = Field(
        default=ServerState.IDLE,
        description="Current discrete state",
    )

    state_entered_at: float = Field(
        default=0.0,
        description="Clock time the current state was entered",
    )

    wait_started_at: Optional[float] = Field(
        default=None,
        description="Clock time waiting for a client began (WAITING only)",
    )

    transitions: int = Field(
        default=0,
        ge=0,
        description="Number of state changes so far",
    )

    last_reason: Optional[ReasonCode] = Field(
        default=None,
        description="Reason code of the latest evaluation",
    )

    class Config:
        """Pydantic model configuration."""

        use_enum_values = False  # Keep enum as enum, not string
