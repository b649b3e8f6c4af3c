import asyncio
import io

import numpy as np
import pytest
import soundfile as sf

from mintflow.events import EventCollector, PipelineEvent
from mintflow.recording.audio_utils import samples_to_wav_bytes, trim_to_duration
from mintflow.routes import events as event_routes


class RecordingSocket:
    def __init__(self, fail: bool = False) -> None:
        self.sent: list[dict] = []
        self.fail = fail

    async def send_json(self, data: dict) -> None:
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(data)


@pytest.fixture
def sockets():
    event_routes._sockets.clear()
    yield event_routes._sockets
    event_routes._sockets.clear()


def test_collector_keeps_order_and_survives_bad_listener():
    seen = []

    def broken(events):
        raise RuntimeError("listener bug")

    collector = EventCollector()
    collector.subscribe(broken)
    collector.subscribe(seen.extend)
    collector([PipelineEvent("capture.recording", "s1"), PipelineEvent("capture.finalized", "s1")])

    assert collector.kinds() == ["capture.recording", "capture.finalized"]
    assert [e.kind for e in seen] == ["capture.recording", "capture.finalized"]


def test_event_dict_flattens_data():
    event = PipelineEvent("mint.submitted", "m1", "sent", {"tx_hash": "0xabc"})
    assert event.to_dict() == {
        "type": "mint.submitted",
        "subject": "m1",
        "message": "sent",
        "tx_hash": "0xabc",
    }


@pytest.mark.asyncio
async def test_broadcast_filters_by_subject(sockets) -> None:
    everything, only_m1 = RecordingSocket(), RecordingSocket()
    sockets[everything] = None
    sockets[only_m1] = "m1"

    event_routes.broadcast([PipelineEvent("mint.submitted", "m1"), PipelineEvent("mint.submitted", "m2")])
    await asyncio.gather(*event_routes._pending)

    assert [m["subject"] for m in everything.sent] == ["m1", "m2"]
    assert [m["subject"] for m in only_m1.sent] == ["m1"]


@pytest.mark.asyncio
async def test_broadcast_drops_dead_socket(sockets) -> None:
    dead, alive = RecordingSocket(fail=True), RecordingSocket()
    sockets[dead] = None
    sockets[alive] = None

    event_routes.broadcast([PipelineEvent("access.granted", "0xabc")])
    await asyncio.gather(*event_routes._pending)

    assert dead not in sockets
    assert len(alive.sent) == 1


def test_broadcast_without_clients_is_a_noop(sockets):
    # no running loop needed when nobody listens
    event_routes.broadcast([PipelineEvent("capture.finalized", "s1")])
    assert not event_routes._pending


def test_trim_to_duration_cuts_late_block():
    samples = np.zeros(16000 * 3, dtype=np.float32)
    assert len(trim_to_duration(samples, 16000, 2.5)) == 40000
    assert trim_to_duration(samples, 16000, 10) is samples


def test_wav_encoding_round_trips_length():
    samples = np.linspace(-0.5, 0.5, 1600, dtype=np.float32)
    data = samples_to_wav_bytes(samples, 16000)
    assert data[:4] == b"RIFF"
    decoded, rate = sf.read(io.BytesIO(data))
    assert rate == 16000
    assert len(decoded) == 1600


def test_collector_retention_is_bounded():
    seen = []
    collector = EventCollector(max_events=2)
    silent = EventCollector(max_events=0)
    silent.subscribe(seen.extend)

    for i in range(5):
        collector([PipelineEvent("mint.submitted", f"m{i}")])
        silent([PipelineEvent("mint.submitted", f"m{i}")])

    assert [e.subject for e in collector.events] == ["m3", "m4"]
    assert not silent.events
    assert len(seen) == 5
