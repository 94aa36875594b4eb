import base64
import io
import pytest
import threading
from itertools import islice

import numpy as np
import soundfile as sf

from api.services.capture import MEDIA_TYPE, AudioCapture
from lib.error_handler import CaptureError

SAMPLE_RATE = 16000

class FakeStream:
    """Stands in for sounddevice.InputStream; tests push blocks with feed()."""

    def __init__(self, callback=None, **kwargs):
        self.callback = callback
        self.kwargs = kwargs
        self.active = False
        self.closed = False

    def start(self):
        self.active = True

    def stop(self):
        self.active = False

    def close(self):
        self.closed = True

    def feed(self, seconds=0.1, amplitude=0.5):
        frames = int(SAMPLE_RATE * seconds)
        block = np.full((frames, 1), amplitude, dtype=np.float32)
        self.callback(block, frames, None, None)

class StreamFactory:
    def __init__(self, error=None):
        self.error = error
        self.streams = []

    def __call__(self, **kwargs):
        if self.error:
            raise self.error
        stream = FakeStream(**kwargs)
        self.streams.append(stream)
        return stream

def microphone(device=None):
    return {'name': 'Built-in Microphone', 'max_input_channels': 1}

def make_capture(factory=None, **kwargs):
    return AudioCapture(
        samplerate=SAMPLE_RATE,
        input_stream=factory or StreamFactory(),
        query_input_device=kwargs.pop('query_input_device', microphone),
        **kwargs
    )

def test_recording_produces_wav_payload():
    capture = make_capture()
    stream = capture.start_capture()
    assert capture.is_active
    assert stream.kwargs['samplerate'] == SAMPLE_RATE
    for _ in range(10):
        stream.feed(0.1)

    payload, media_type = capture.stop_capture()

    assert media_type == MEDIA_TYPE == 'audio/wav'
    wav_bytes = base64.b64decode(payload)
    assert wav_bytes[:4] == b'RIFF'
    audio, rate = sf.read(io.BytesIO(wav_bytes))
    assert rate == SAMPLE_RATE
    assert len(audio) == SAMPLE_RATE
    assert stream.closed
    assert not capture.is_active

def test_stop_without_audio_raises_no_audio_data():
    capture = make_capture()
    capture.start_capture()
    with pytest.raises(CaptureError) as exc_info:
        capture.stop_capture()
    assert exc_info.value.user_message == CaptureError.NO_AUDIO_DATA

def test_recording_stops_automatically_at_max_duration():
    emitted = []
    delivered = threading.Event()

    def on_auto_stop(result):
        emitted.append(result)
        delivered.set()

    capture = make_capture(max_seconds=0.05, on_auto_stop=on_auto_stop)
    stream = capture.start_capture()
    stream.feed(0.02)

    assert capture.wait(timeout=2)
    assert delivered.wait(timeout=2)
    assert not capture.is_active
    assert stream.closed
    assert len(emitted) == 1
    assert capture.stop_capture() == emitted[0]

def test_auto_stop_without_audio_reports_on_stop():
    capture = make_capture(max_seconds=0.05)
    capture.start_capture()
    assert capture.wait(timeout=2)
    with pytest.raises(CaptureError) as exc_info:
        capture.stop_capture()
    assert exc_info.value.user_message == CaptureError.NO_AUDIO_DATA

def no_devices(device):
    raise ValueError("No input device matching None")

def output_only(device):
    return {'name': 'Speakers', 'max_input_channels': 0}

@pytest.mark.parametrize('query', [no_devices, output_only])
def test_missing_microphone(query):
    factory = StreamFactory()
    capture = make_capture(factory, query_input_device=query)
    with pytest.raises(CaptureError) as exc_info:
        capture.start_capture()
    assert exc_info.value.user_message == CaptureError.NO_DEVICE
    assert factory.streams == []
    assert not capture.is_active

def test_denied_microphone():
    capture = make_capture(StreamFactory(error=OSError("Error opening InputStream: Access denied")))
    with pytest.raises(CaptureError) as exc_info:
        capture.start_capture()
    assert exc_info.value.user_message == CaptureError.PERMISSION_DENIED

def test_unavailable_device_on_open():
    capture = make_capture(StreamFactory(error=OSError("Device unavailable [PaErrorCode -9985]")))
    with pytest.raises(CaptureError) as exc_info:
        capture.start_capture()
    assert exc_info.value.user_message == CaptureError.NO_DEVICE

def test_cancel_releases_microphone_and_emits_nothing():
    emitted = []
    capture = make_capture(on_auto_stop=emitted.append)
    stream = capture.start_capture()
    stream.feed(0.1)

    capture.cancel()

    assert stream.closed
    assert not capture.is_active
    assert emitted == []
    with pytest.raises(CaptureError):
        capture.stop_capture()

def test_second_start_is_rejected():
    capture = make_capture()
    capture.start_capture()
    with pytest.raises(CaptureError) as exc_info:
        capture.start_capture()
    assert exc_info.value.user_message == CaptureError.ALREADY_RECORDING
    capture.cancel()

def test_capture_can_be_restarted_after_stop():
    factory = StreamFactory()
    capture = make_capture(factory)
    capture.start_capture().feed(0.1)
    capture.stop_capture()

    capture.start_capture().feed(0.2)
    payload, _ = capture.stop_capture()
    audio, _ = sf.read(io.BytesIO(base64.b64decode(payload)))
    assert len(audio) == int(SAMPLE_RATE * 0.2)
    assert len(factory.streams) == 2

def test_amplitude_samples_follow_input_level():
    capture = make_capture()
    stream = capture.start_capture()
    stream.feed(0.1, amplitude=0.25)
    stream.feed(0.1, amplitude=0.0)

    levels = list(islice(capture.amplitude_samples(poll_interval=0.01), 2))
    assert levels[0] == pytest.approx(0.25)
    assert levels[1] == 0.0

    capture.cancel()
    assert list(capture.amplitude_samples(poll_interval=0.01)) == []

def test_context_manager_cancels_active_recording():
    with make_capture() as capture:
        stream = capture.start_capture()
        stream.feed(0.1)
    assert stream.closed
    assert not capture.is_active
