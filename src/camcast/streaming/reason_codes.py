"""
Reason Codes
============

Fixed set of machine-readable reasons for state machine decisions.

Each evaluation produces exactly ONE reason code, logged with the
transition and exposed in the status payload.
"""

from enum import Enum


class ReasonCode(str, Enum):
    """
    Machine-readable decision explanation codes.

    Attributes:
        STREAM_REQUESTED: START_STREAM accepted, now waiting for a client
        CLIENT_CONNECTED: First client attached, streaming begins
        CLIENT_JOINED: Another client attached while streaming
        CLIENTS_GONE: Every client left; stays streaming
        WAIT_TIMEOUT: Nobody attached within the wait window
        STOP_REQUESTED: STOP_STREAM accepted
        STREAM_FAILED: Listener or encoder failed; fell back to IDLE
        STILL_REQUESTED: Still capture scheduled, state unchanged
        ALREADY_ACTIVE: START_STREAM while already waiting or streaming
        NOT_ACTIVE: STOP_STREAM (or similar) while idle
        IGNORED: Event has no meaning in the current state
    """

    STREAM_REQUESTED = "STREAM_REQUESTED"
    CLIENT_CONNECTED = "CLIENT_CONNECTED"
    CLIENT_JOINED = "CLIENT_JOINED"
    CLIENTS_GONE = "CLIENTS_GONE"
    WAIT_TIMEOUT = "WAIT_TIMEOUT"
    STOP_REQUESTED = "STOP_REQUESTED"
    STREAM_FAILED = "STREAM_FAILED"
    STILL_REQUESTED = "STILL_REQUESTED"
    ALREADY_ACTIVE = "ALREADY_ACTIVE"
    NOT_ACTIVE = "NOT_ACTIVE"
    IGNORED = "IGNORED"
