"""
Encoder and Still Writer Tests
==============================
"""

import cv2
import numpy as np
import pytest


class TestEncoders:
    """Tests for the encoder submit path."""

    def test_encode_requires_start(self, make_frame):
        from camcast.capture import VIDEO_STREAM
        from camcast.encoder import EncoderError, RawEncoder

        encoder = RawEncoder()
        handle = make_frame()

        with pytest.raises(EncoderError):
            encoder.encode(handle, VIDEO_STREAM)
        with pytest.raises(EncoderError):
            encoder.start()  # no callback registered
        handle.release()

    def test_raw_encoder_emits_buffer_bytes(self, make_frame):
        from camcast.capture import VIDEO_STREAM
        from camcast.encoder import RawEncoder

        chunks = []
        encoder = RawEncoder()
        encoder.set_output_ready_callback(lambda chunk, ts, key: chunks.append((chunk, key)))
        encoder.start()

        handle = make_frame()
        handle.frame.buffer(VIDEO_STREAM)[:] = 7
        encoder.encode(handle, VIDEO_STREAM)

        assert chunks == [(bytes([7]) * 48, True)]
        assert handle.refcount == 1
        assert encoder.bytes_out == 48
        handle.release()

    def test_encoder_holds_no_reference_after_encode(self, make_frame):
        """The frame recycles as soon as the caller releases it."""
        from camcast.capture import VIDEO_STREAM
        from camcast.encoder import RawEncoder

        encoder = RawEncoder()
        encoder.set_output_ready_callback(lambda *args: None)
        encoder.start()

        handle = make_frame()
        encoder.encode(handle, VIDEO_STREAM)
        handle.release()

        assert handle.recycled
        assert make_frame.arena.free_count == 4

    def test_unknown_stream_is_encoder_error(self, make_frame):
        from camcast.encoder import EncoderError, RawEncoder

        encoder = RawEncoder()
        encoder.set_output_ready_callback(lambda *args: None)
        encoder.start()
        handle = make_frame()

        with pytest.raises(EncoderError):
            encoder.encode(handle, "raw")
        assert handle.refcount == 1
        handle.release()

    def test_mjpeg_chunks_are_jpegs(self, make_frame):
        from camcast.capture import VIDEO_STREAM
        from camcast.encoder import MJPEGEncoder

        chunks = []
        encoder = MJPEGEncoder(quality=70)
        encoder.set_output_ready_callback(lambda chunk, ts, key: chunks.append(chunk))
        encoder.start()

        handle = make_frame()
        encoder.encode(handle, VIDEO_STREAM)
        handle.release()

        assert chunks[0][:2] == b"\xff\xd8"
        decoded = cv2.imdecode(np.frombuffer(chunks[0], np.uint8), cv2.IMREAD_COLOR)
        assert decoded.shape == (4, 4, 3)
        encoder.stop()
        assert not encoder.running

    def test_mjpeg_rejects_bad_quality(self):
        from camcast.encoder import MJPEGEncoder

        with pytest.raises(ValueError):
            MJPEGEncoder(quality=0)


class TestStillWriter:
    """Tests for background still capture."""

    def test_writes_jpeg_and_releases(self, make_frame, tmp_path):
        from camcast.capture import VIDEO_STREAM
        from camcast.output import StillWriter

        writer = StillWriter(output=tmp_path / "snap.jpg")
        handle = make_frame(sequence=3)

        future = writer.capture_still(handle, VIDEO_STREAM)
        assert handle.refcount >= 1
        handle.release()
        path = future.result(timeout=5.0)

        assert path == tmp_path / "snap.jpg"
        assert path.read_bytes()[:2] == b"\xff\xd8"
        assert handle.recycled
        writer.close()

    def test_sequence_placeholder(self, make_frame, tmp_path):
        from camcast.capture import VIDEO_STREAM
        from camcast.output import StillWriter

        writer = StillWriter(output=str(tmp_path / "stills" / "frame-%d.png"), fmt="png")
        handle = make_frame(sequence=42)

        path = writer.capture_still(handle, VIDEO_STREAM).result(timeout=5.0)
        handle.release()

        assert path.name == "frame-42.png"
        assert path.read_bytes()[:4] == b"\x89PNG"
        assert writer.written_count == 1
        writer.close()

    def test_failure_still_releases(self, make_frame, tmp_path):
        from camcast.output import StillWriter

        writer = StillWriter(output=tmp_path / "x.jpg")
        handle = make_frame()

        future = writer.capture_still(handle, "missing")
        with pytest.raises(KeyError):
            future.result(timeout=5.0)
        handle.release()

        assert handle.recycled
        assert writer.failed_count == 1
        writer.close()

    def test_unknown_format(self):
        from camcast.output import StillWriter

        with pytest.raises(ValueError):
            StillWriter(fmt="gif")
