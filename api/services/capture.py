"""Microphone capture for stress checks.

Audio is read from the default (or configured) input device through
:mod:`sounddevice`, kept in memory, and encoded as 16-bit PCM WAV when the
recording ends. A recording stops by itself once ``max_seconds`` elapse.

Example::

    capture = AudioCapture(max_seconds=60)
    capture.start_capture()
    for level in capture.amplitude_samples():
        draw_meter(level)          # returns when the recording ends
    payload, media_type = capture.stop_capture()
"""

from __future__ import annotations

import base64
import io
import logging
import queue
import threading
from typing import Any, Callable, Iterator, List, Optional, Tuple

import numpy as np
import soundfile as sf

from lib.error_handler import CaptureError

logger = logging.getLogger(__name__)

MEDIA_TYPE = "audio/wav"


def _default_input_stream(**kwargs):
    import sounddevice as sd

    return sd.InputStream(**kwargs)


def _default_query_input_device(device):
    import sounddevice as sd

    return sd.query_devices(device, kind="input")


class AudioCapture:
    """Exclusive owner of one microphone stream for one recording at a time.

    ``input_stream`` and ``query_input_device`` default to :mod:`sounddevice`
    and can be replaced, which is how the tests drive it without hardware.
    """

    def __init__(
        self,
        max_seconds: float = 60.0,
        samplerate: int = 16000,
        channels: int = 1,
        device: Any = None,
        blocksize: int = 1024,
        input_stream: Callable[..., Any] = _default_input_stream,
        query_input_device: Callable[[Any], Any] = _default_query_input_device,
        on_auto_stop: Optional[Callable[[Tuple[str, str]], None]] = None,
    ) -> None:
        self.max_seconds = max_seconds
        self.samplerate = samplerate
        self.channels = channels
        self.device = device
        self.blocksize = blocksize
        self._input_stream = input_stream
        self._query_input_device = query_input_device
        self.on_auto_stop = on_auto_stop

        self._lock = threading.RLock()
        self._stream = None
        self._timer: Optional[threading.Timer] = None
        self._frames: List[np.ndarray] = []
        self._levels: "queue.Queue[float]" = queue.Queue(maxsize=256)
        self._active = threading.Event()
        self._finished = threading.Event()
        self._result: Optional[Tuple[str, str]] = None
        self._error: Optional[CaptureError] = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    @property
    def is_active(self) -> bool:
        return self._active.is_set()

    def start_capture(self):
        """Open the microphone and begin recording. Returns the stream handle."""
        with self._lock:
            if self._active.is_set():
                raise CaptureError(CaptureError.ALREADY_RECORDING)

            self._check_device()
            self._frames = []
            self._levels = queue.Queue(maxsize=256)
            self._result = None
            self._error = None
            self._finished.clear()

            try:
                stream = self._input_stream(
                    samplerate=self.samplerate,
                    channels=self.channels,
                    dtype="float32",
                    blocksize=self.blocksize,
                    device=self.device,
                    callback=self._audio_callback,
                )
                stream.start()
            except Exception as e:
                logger.error(f"Could not open microphone stream: {e}")
                raise CaptureError(self._classify_open_error(e), detail=str(e)) from e

            self._stream = stream
            self._active.set()
            self._timer = threading.Timer(self.max_seconds, self._auto_stop)
            self._timer.daemon = True
            self._timer.start()
            logger.info(f"Recording started (limit {self.max_seconds:.0f}s, {self.samplerate} Hz)")
            return stream

    def stop_capture(self) -> Tuple[str, str]:
        """Stop recording and return ``(base64_wav, "audio/wav")``.

        After an automatic stop this returns the already finalized payload.
        """
        with self._lock:
            if not self._active.is_set():
                if self._result is not None:
                    return self._result
                if self._error is not None:
                    raise self._error
                raise CaptureError(CaptureError.NO_AUDIO_DATA, detail="stop requested with no recording")
            return self._finalize()

    def cancel(self) -> None:
        """Abandon the recording, release the microphone, emit nothing."""
        with self._lock:
            if not self._active.is_set():
                return
            self._release()
            self._frames = []
            logger.info("Recording cancelled")

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the recording has been stopped, cancelled or auto-stopped."""
        return self._finished.wait(timeout)

    def amplitude_samples(self, poll_interval: float = 0.1) -> Iterator[float]:
        """Yield RMS levels (0.0-1.0) while recording.

        Each call returns a fresh generator, so a renderer can restart.
        """
        while self._active.is_set():
            try:
                yield self._levels.get(timeout=poll_interval)
            except queue.Empty:
                continue

    def __enter__(self) -> "AudioCapture":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.cancel()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _check_device(self) -> None:
        try:
            info = self._query_input_device(self.device)
        except Exception as e:
            logger.error(f"No usable input device: {e}")
            raise CaptureError(CaptureError.NO_DEVICE, detail=str(e)) from e
        if not info or int(info.get("max_input_channels", 0)) < 1:
            raise CaptureError(CaptureError.NO_DEVICE, detail=f"device has no input channels: {info}")

    @staticmethod
    def _classify_open_error(error: Exception) -> str:
        text = str(error).lower()
        if "device unavailable" in text or "invalid device" in text or "no device" in text:
            return CaptureError.NO_DEVICE
        return CaptureError.PERMISSION_DENIED

    def _audio_callback(self, indata, frames, time_info, status) -> None:
        if status:
            logger.warning(f"Audio callback status: {status}")
        if not self._active.is_set():
            return
        chunk = np.array(indata, dtype=np.float32, copy=True)
        self._frames.append(chunk)
        level = float(np.sqrt(np.mean(np.square(chunk)))) if chunk.size else 0.0
        try:
            self._levels.put_nowait(min(1.0, level))
        except queue.Full:
            pass

    def _auto_stop(self) -> None:
        with self._lock:
            if not self._active.is_set():
                return
            logger.info(f"Maximum recording duration of {self.max_seconds:.0f}s reached")
            try:
                result = self._finalize()
            except CaptureError as e:
                self._error = e
                return
        if self.on_auto_stop:
            self.on_auto_stop(result)

    def _finalize(self) -> Tuple[str, str]:
        self._release()
        frames = self._frames
        self._frames = []

        if not frames or not any(chunk.size for chunk in frames):
            logger.error("Recording finished with no audio data")
            raise CaptureError(CaptureError.NO_AUDIO_DATA)

        audio = np.concatenate(frames, axis=0)
        buffer = io.BytesIO()
        sf.write(buffer, audio, self.samplerate, format="WAV", subtype="PCM_16")
        wav_bytes = buffer.getvalue()
        self._result = (base64.b64encode(wav_bytes).decode("ascii"), MEDIA_TYPE)
        logger.info(
            f"Recording finalized: {len(audio) / self.samplerate:.1f}s, {len(wav_bytes)} bytes"
        )
        return self._result

    def _release(self) -> None:
        self._active.clear()
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        stream = self._stream
        self._stream = None
        if stream is not None:
            try:
                if getattr(stream, "active", False):
                    stream.stop()
                stream.close()
                logger.info("Audio stream stopped and closed")
            except Exception as e:
                logger.error(f"Error stopping/closing audio stream: {e}")
        self._finished.set()
