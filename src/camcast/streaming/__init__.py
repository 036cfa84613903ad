"""
Streaming Module
================

Stream lifecycle and the main loop.

Components:
    - ServerState / StreamEvent / Action / StreamState: State models
    - ReasonCode: Why each evaluation ended where it did
    - TransitionPolicy: Table-driven transition rules
    - StreamControlGraph: LangGraph wrapper that owns the current state
    - StreamingAppliance: Main loop gating frames into encoder and server
"""

from camcast.streaming.reason_codes import ReasonCode
from camcast.streaming.state import Action, ServerState, StreamEvent, StreamState
from camcast.streaming.transitions import (
    DEFAULT_WAIT_TIMEOUT_SEC,
    TransitionPolicy,
    TransitionResult,
)
from camcast.streaming.graph import StreamControlGraph, create_initial_state
from camcast.streaming.appliance import ApplianceMetrics, StreamingAppliance


__all__ = [
    "ReasonCode",
    "Action",
    "ServerState",
    "StreamEvent",
    "StreamState",
    "DEFAULT_WAIT_TIMEOUT_SEC",
    "TransitionPolicy",
    "TransitionResult",
    "StreamControlGraph",
    "create_initial_state",
    "ApplianceMetrics",
    "StreamingAppliance",
]
