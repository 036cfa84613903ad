"""
Stream Control Graph
====================

LangGraph state machine for the stream lifecycle.

LangGraph is used for CONTROL FLOW only: the graph has a single node that
applies the TransitionPolicy to one event and records the result.

Graph Structure:
    START -> evaluate_event -> END

The graph is evaluated once per event (commands, accepted connections,
timeouts), not once per frame. Per-frame gating only reads
`current_state`.
"""

import logging
import time
from typing import Any, Dict, Optional, TypedDict

from langgraph.graph import END, StateGraph

from camcast.streaming.state import ServerState, StreamEvent, StreamState
from camcast.streaming.transitions import (
    DEFAULT_WAIT_TIMEOUT_SEC,
    TransitionPolicy,
    TransitionResult,
)


logger = logging.getLogger(__name__)


class StreamGraphState(TypedDict):
    """
    State passed through the control graph.

    Attributes:
        stream_state: Persistent state across events
        event: Event being evaluated
        result: Output of the evaluation
        timestamp: Clock time of the event
    """
    stream_state: StreamState
    event: Optional[StreamEvent]
    result: Optional[TransitionResult]
    timestamp: float


def create_initial_state(timestamp: Optional[float] = None) -> StreamGraphState:
    """Create initial graph state (IDLE)."""
    now = time.monotonic() if timestamp is None else timestamp
    return {
        "stream_state": StreamState(state_entered_at=now),
        "event": None,
        "result": None,
        "timestamp": now,
    }


class StreamControlGraph:
    """
    LangGraph-based stream state machine.

    - Receives one StreamEvent at a time
    - Applies the TransitionPolicy
    - Returns a TransitionResult naming the actions to perform

    The graph owns the current StreamState; only the main loop calls
    process().
    """

    def __init__(
        self,
        wait_timeout_sec: float = DEFAULT_WAIT_TIMEOUT_SEC,
        policy: Optional[TransitionPolicy] = None,
    ) -> None:
        """
        Initialize the control graph.

        Args:
            wait_timeout_sec: Seconds to wait for a first client
            policy: Transition policy (built from wait_timeout_sec if None)
        """
        self.policy = policy or TransitionPolicy(wait_timeout_sec)
        self._graph = self._build_graph()
        self._state: StreamGraphState = create_initial_state()

        logger.info("StreamControlGraph initialized")

    def _build_graph(self):
        """Build the LangGraph workflow."""
        workflow = StateGraph(StreamGraphState)

        workflow.add_node("evaluate_event", self._evaluate_event_node)

        workflow.set_entry_point("evaluate_event")
        workflow.add_edge("evaluate_event", END)

        return workflow.compile()

    def _evaluate_event_node(self, state: StreamGraphState) -> Dict[str, Any]:
        """Apply the transition policy to the pending event."""
        stream_state = state["stream_state"]
        event = state.get("event")
        current_time = state.get("timestamp", time.monotonic())

        if event is None:
            return {"result": None}

        new_stream_state, result = self.policy.evaluate(stream_state, event, current_time)

        if result.transition_occurred:
            logger.warning(
                f"STREAM STATE CHANGE: {result.previous_state.value} -> "
                f"{result.new_state.value} | event={event.value} "
                f"reason={result.reason_code.value}"
            )
        else:
            logger.debug(f"Stream state unchanged: {result!r}")

        return {
            "stream_state": new_stream_state,
            "result": result,
        }

    def process(
        self,
        event: StreamEvent,
        timestamp: Optional[float] = None,
    ) -> TransitionResult:
        """
        Evaluate one event and advance the state.

        Args:
            event: Event to apply
            timestamp: Clock time (defaults to time.monotonic())

        Returns:
            TransitionResult with the new state and actions to perform
        """
        if timestamp is None:
            timestamp = time.monotonic()

        self._state["event"] = event
        self._state["timestamp"] = timestamp

        result = self._graph.invoke(self._state)

        self._state = result
        return result["result"]

    def is_wait_expired(self, timestamp: Optional[float] = None) -> bool:
        return self.policy.is_wait_expired(self._state["stream_state"], timestamp)

    def wait_remaining(self, timestamp: Optional[float] = None) -> Optional[float]:
        return self.policy.wait_remaining(self._state["stream_state"], timestamp)

    @property
    def current_state(self) -> ServerState:
        """Get current server state."""
        return self._state["stream_state"].server_state

    @property
    def stream_state(self) -> StreamState:
        """Get full stream state."""
        return self._state["stream_state"]

    @property
    def last_result(self) -> Optional[TransitionResult]:
        return self._state.get("result")

    def reset(self) -> None:
        """Reset to IDLE."""
        self._state = create_initial_state()
        logger.info("StreamControlGraph reset")
