"""
Streaming Appliance Tests
=========================

The main loop driven one iteration at a time with fake capture and a
real loopback broadcast server.
"""

import socket
import time

import pytest

from conftest import expected_chunks, recv_exactly, recv_until_closed


def _run_until(appliance, predicate, attempts=200):
    for _ in range(attempts):
        if predicate():
            return True
        appliance.run_once(timeout=0.01)
    return predicate()


def _start_streaming(appliance):
    """START_STREAM, connect one client, run until STREAMING."""
    from camcast.control import Command
    from camcast.streaming import ServerState

    appliance.control.submit(Command.START_STREAM)
    appliance.run_once(timeout=0)
    assert appliance.state == ServerState.WAITING_FOR_CONNECTION

    client = socket.create_connection(("127.0.0.1", appliance.server.port), timeout=5.0)
    assert _run_until(appliance, lambda: appliance.state == ServerState.STREAMING)
    return client


class TestGating:
    """Frames reach the encoder only while STREAMING."""

    def test_idle_frames_are_released_unencoded(self, appliance, fake_capture, sequence_encoder):
        from camcast.streaming import ServerState

        fake_capture.emit(3)
        frames = appliance.run_once(timeout=0)

        assert len(frames) == 3
        assert appliance.state == ServerState.IDLE
        assert sequence_encoder.frames_encoded == 0
        assert appliance.metrics.frames_skipped == 3
        assert all(h.recycled for h in frames)
        assert fake_capture.arena.free_count == fake_capture.buffer_count

    def test_waiting_frames_are_not_encoded(self, appliance, fake_capture, sequence_encoder):
        from camcast.control import Command
        from camcast.streaming import ServerState

        appliance.control.submit(Command.START_STREAM)
        appliance.run_once(timeout=0)
        assert appliance.state == ServerState.WAITING_FOR_CONNECTION
        assert appliance.server.is_listening

        fake_capture.emit(2)
        appliance.run_once(timeout=0)

        assert sequence_encoder.frames_encoded == 0
        assert not sequence_encoder.running
        assert fake_capture.arena.free_count == fake_capture.buffer_count

    def test_streaming_frames_are_encoded(self, appliance, fake_capture, sequence_encoder):
        client = _start_streaming(appliance)
        assert sequence_encoder.running

        fake_capture.emit(4)
        appliance.run_once(timeout=0)

        assert sequence_encoder.frames_encoded == 4
        assert fake_capture.arena.free_count == fake_capture.buffer_count
        client.close()


class TestEndToEnd:
    """Start, connect, stream, stop."""

    def test_ten_chunks_then_stop(self, appliance, fake_capture):
        """A client receives exactly the chunks encoded while it was attached."""
        from camcast.control import Command
        from camcast.streaming import ReasonCode, ServerState

        client = _start_streaming(appliance)

        sent = fake_capture.emit(10)
        appliance.run_once(timeout=0)
        expected = expected_chunks(sent)
        assert recv_exactly(client, len(expected)) == expected

        appliance.control.submit(Command.STOP_STREAM)
        appliance.run_once(timeout=0)

        assert appliance.state == ServerState.IDLE
        assert appliance.graph.stream_state.last_reason == ReasonCode.STOP_REQUESTED
        assert not appliance.server.is_listening
        assert recv_until_closed(client) == b""
        client.close()

        fake_capture.emit(2)
        appliance.run_once(timeout=0)
        assert appliance.metrics.frames_encoded == 10

    def test_second_client_joins_midstream(self, appliance, fake_capture):
        from camcast.streaming import ServerState

        first = _start_streaming(appliance)
        early = fake_capture.emit(3)
        appliance.run_once(timeout=0)

        second = socket.create_connection(("127.0.0.1", appliance.server.port), timeout=5.0)
        assert _run_until(appliance, lambda: appliance.server.client_count == 2)
        late = fake_capture.emit(3)
        appliance.run_once(timeout=0)

        assert appliance.state == ServerState.STREAMING
        assert recv_exactly(first, 30) == expected_chunks(early + late)
        assert recv_exactly(second, 15) == expected_chunks(late)
        first.close()
        second.close()

    def test_start_while_streaming_is_ignored(self, appliance, fake_capture):
        from camcast.control import Command
        from camcast.streaming import ReasonCode, ServerState

        client = _start_streaming(appliance)
        transitions = appliance.graph.stream_state.transitions

        appliance.control.submit(Command.START_STREAM)
        appliance.run_once(timeout=0)

        assert appliance.state == ServerState.STREAMING
        assert appliance.graph.stream_state.transitions == transitions
        assert appliance.graph.stream_state.last_reason == ReasonCode.ALREADY_ACTIVE
        client.close()

    def test_all_clients_leaving_keeps_streaming(self, appliance, fake_capture):
        """STREAMING survives its last client and accepts a new one."""
        from camcast.streaming import ReasonCode, ServerState

        client = _start_streaming(appliance)
        client.close()

        for _ in range(100):
            fake_capture.emit(1)
            appliance.run_once(timeout=0)
            if appliance.server.is_idle():
                break
            time.sleep(0.01)

        assert appliance.server.is_idle()
        assert appliance.state == ServerState.STREAMING
        assert appliance.graph.stream_state.last_reason == ReasonCode.CLIENTS_GONE
        assert appliance.server.is_listening

        again = socket.create_connection(("127.0.0.1", appliance.server.port), timeout=5.0)
        assert _run_until(appliance, lambda: appliance.server.client_count == 1)
        again.close()


class TestWaitTimeout:
    """WAITING_FOR_CONNECTION gives up after the configured time."""

    def test_timeout_returns_to_idle(self, appliance, fake_clock):
        from camcast.control import Command
        from camcast.streaming import ReasonCode, ServerState

        appliance.control.submit(Command.START_STREAM)
        appliance.run_once(timeout=0)
        assert appliance.status()["wait_remaining_sec"] == 30.0

        fake_clock.advance(30.0)
        appliance.run_once(timeout=0)
        assert appliance.state == ServerState.WAITING_FOR_CONNECTION

        fake_clock.advance(0.1)
        appliance.run_once(timeout=0)

        assert appliance.state == ServerState.IDLE
        assert appliance.graph.stream_state.last_reason == ReasonCode.WAIT_TIMEOUT
        assert not appliance.server.is_listening

    def test_stop_while_waiting(self, appliance):
        from camcast.control import Command
        from camcast.streaming import ServerState

        appliance.control.submit(Command.START_STREAM)
        appliance.control.submit(Command.STOP_STREAM)
        appliance.run_once(timeout=0)

        assert appliance.state == ServerState.IDLE
        assert not appliance.server.is_listening


class TestFailures:
    """Listener and encoder failures fall back to IDLE."""

    def test_listener_bind_failure(self, fake_capture, sequence_encoder, fake_clock):
        from camcast.control import Command
        from camcast.output import BroadcastServer
        from camcast.streaming import ReasonCode, ServerState, StreamingAppliance

        blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        blocker.bind(("127.0.0.1", 0))
        blocker.listen(1)
        port = blocker.getsockname()[1]

        appliance = StreamingAppliance(
            capture=fake_capture,
            encoder=sequence_encoder,
            server=BroadcastServer(f"tcp://127.0.0.1:{port}"),
            clock=fake_clock,
        )
        appliance.control.submit(Command.START_STREAM)
        appliance.run_once(timeout=0)

        assert appliance.state == ServerState.IDLE
        assert appliance.graph.stream_state.last_reason == ReasonCode.STREAM_FAILED
        assert appliance.last_error is not None
        assert appliance.status()["last_error"] == appliance.last_error
        blocker.close()

    def test_encoder_start_failure(self, fake_capture, loopback_server, fake_clock):
        from camcast.control import Command
        from camcast.encoder import BaseEncoder, EncoderError
        from camcast.streaming import ServerState, StreamingAppliance

        class BrokenEncoder(BaseEncoder):
            def start(self):
                raise EncoderError("hardware encoder unavailable")

        appliance = StreamingAppliance(
            capture=fake_capture,
            encoder=BrokenEncoder(),
            server=loopback_server,
            clock=fake_clock,
        )

        appliance.control.submit(Command.START_STREAM)
        appliance.run_once(timeout=0)
        client = socket.create_connection(("127.0.0.1", loopback_server.port), timeout=5.0)
        assert _run_until(appliance, lambda: appliance.metrics.connections_accepted == 1)

        assert appliance.state == ServerState.IDLE
        assert "hardware encoder unavailable" in appliance.last_error
        assert not loopback_server.is_listening
        assert recv_until_closed(client) == b""
        client.close()

    def test_encode_failure_mid_stream(self, appliance, fake_capture, sequence_encoder):
        from camcast.streaming import ServerState

        client = _start_streaming(appliance)

        def _fail(buffer):
            raise ValueError("bad pixels")

        sequence_encoder._encode_buffer = _fail
        fake_capture.emit(2)
        appliance.run_once(timeout=0)

        assert appliance.state == ServerState.IDLE
        assert not sequence_encoder.running
        assert fake_capture.arena.free_count == fake_capture.buffer_count
        assert appliance.metrics.frames_encoded == 0
        client.close()

    def test_encoder_stop_failure_still_closes_server(self, fake_capture, loopback_server, fake_clock):
        """A failing STOP_ENCODER does not leave the listener or clients behind."""
        from conftest import SequenceEncoder
        from camcast.control import Command
        from camcast.encoder import EncoderError
        from camcast.streaming import ServerState, StreamingAppliance

        class StuckEncoder(SequenceEncoder):
            def stop(self):
                raise EncoderError("encoder wedged")

        encoder = StuckEncoder()
        appliance = StreamingAppliance(
            capture=fake_capture,
            encoder=encoder,
            server=loopback_server,
            clock=fake_clock,
        )
        client = _start_streaming(appliance)

        appliance.control.submit(Command.STOP_STREAM)
        appliance.run_once(timeout=0)

        assert appliance.state == ServerState.IDLE
        assert not loopback_server.is_listening
        assert loopback_server.client_count == 0
        assert "encoder wedged" in appliance.last_error
        assert recv_until_closed(client) == b""
        client.close()

        fake_capture.emit(2)
        appliance.run_once(timeout=0)
        assert encoder.frames_encoded == 0


class TestStill:
    """CAPTURE_STILL writes the most recent frame without touching state."""

    def test_still_from_next_frame(self, fake_capture, sequence_encoder, loopback_server, fake_clock, tmp_path):
        from camcast.control import Command
        from camcast.output import StillWriter
        from camcast.streaming import ServerState, StreamingAppliance

        writer = StillWriter(output=str(tmp_path / "still-%d.png"), fmt="png")
        appliance = StreamingAppliance(
            capture=fake_capture,
            encoder=sequence_encoder,
            server=loopback_server,
            still_writer=writer,
            clock=fake_clock,
        )

        appliance.control.submit(Command.CAPTURE_STILL)
        appliance.run_once(timeout=0)
        assert writer.written_count == 0

        sequences = fake_capture.emit(3)
        appliance.run_once(timeout=0)
        writer.close()

        assert appliance.state == ServerState.IDLE
        assert (tmp_path / f"still-{sequences[-1]}.png").exists()
        assert writer.written_count == 1
        assert fake_capture.arena.free_count == fake_capture.buffer_count

    def test_still_without_writer_is_ignored(self, appliance, fake_capture):
        from camcast.control import Command

        appliance.control.submit(Command.CAPTURE_STILL)
        fake_capture.emit(1)
        appliance.run_once(timeout=0)

        assert appliance.metrics.stills_requested == 0


class TestTaskLifecycle:
    """start / request_stop / join on a real thread."""

    def test_start_and_stop_from_streaming(self, sequence_encoder, loopback_server):
        from camcast.control import Command
        from camcast.streaming import ServerState, StreamingAppliance
        from conftest import FakeCaptureEngine

        capture = FakeCaptureEngine()
        appliance = StreamingAppliance(
            capture=capture,
            encoder=sequence_encoder,
            server=loopback_server,
            poll_interval_sec=0.02,
        )
        appliance.start()
        assert appliance.running
        assert capture.started

        appliance.control.submit(Command.START_STREAM)
        deadline = time.monotonic() + 5.0
        while loopback_server.port is None and time.monotonic() < deadline:
            time.sleep(0.01)
        client = socket.create_connection(("127.0.0.1", loopback_server.port), timeout=5.0)
        while appliance.state != ServerState.STREAMING and time.monotonic() < deadline:
            time.sleep(0.01)
        assert appliance.state == ServerState.STREAMING

        assert appliance.stop(timeout=5.0)

        assert not appliance.running
        assert appliance.state == ServerState.IDLE
        assert capture.closed
        assert capture.relay.size == 0
        assert recv_until_closed(client) == b""
        client.close()

    def test_command_wakes_the_loop(self, sequence_encoder, loopback_server):
        from conftest import FakeCaptureEngine
        from camcast.control import Command
        from camcast.streaming import StreamingAppliance

        capture = FakeCaptureEngine()
        appliance = StreamingAppliance(
            capture=capture,
            encoder=sequence_encoder,
            server=loopback_server,
            poll_interval_sec=0.5,
        )
        appliance.start()
        appliance.control.submit(Command.START_STREAM)

        assert capture.wake_count >= 1
        appliance.stop(timeout=5.0)

    def test_capture_failure_is_fatal_at_start(self, sequence_encoder, loopback_server):
        from camcast.capture import CaptureError
        from camcast.streaming import StreamingAppliance
        from conftest import FakeCaptureEngine

        class NoCamera(FakeCaptureEngine):
            def open(self):
                raise CaptureError("no camera")

        appliance = StreamingAppliance(
            capture=NoCamera(),
            encoder=sequence_encoder,
            server=loopback_server,
        )
        with pytest.raises(CaptureError):
            appliance.start()
        assert not appliance.running

    def test_device_closed_when_start_fails(self, sequence_encoder, loopback_server):
        from camcast.capture import CaptureError
        from camcast.streaming import StreamingAppliance
        from conftest import FakeCaptureEngine

        class NoStream(FakeCaptureEngine):
            def start(self):
                raise CaptureError("stream refused")

        capture = NoStream()
        appliance = StreamingAppliance(
            capture=capture,
            encoder=sequence_encoder,
            server=loopback_server,
        )
        with pytest.raises(CaptureError, match="stream refused"):
            appliance.start()

        assert capture.closed
        assert not appliance.running

    def test_invalid_poll_interval(self, fake_capture, sequence_encoder, loopback_server):
        from camcast.streaming import StreamingAppliance

        with pytest.raises(ValueError):
            StreamingAppliance(fake_capture, sequence_encoder, loopback_server, poll_interval_sec=0)
