"""
API tests over the REST and WebSocket surfaces.
"""

import asyncio
import threading

import numpy as np
import pytest
from fastapi.testclient import TestClient

from biostream.api.main import create_app
from biostream.api.websocket import MessageBridge
from biostream.pipeline.bandpower_worker import BandPowerWorker
from biostream.pipeline.channel_data import ChannelDataPipeline
from biostream.pipeline.scheduler import ManualTickSource


@pytest.fixture
def channel_pipeline():
    return ChannelDataPipeline(n_channels=4, tick_source=ManualTickSource(), adc_bits=14)


@pytest.fixture
def client(channel_pipeline):
    app = create_app(channel_pipeline, BandPowerWorker(sample_rate=500, fft_size=256))
    with TestClient(app) as test_client:
        yield test_client


class TestHealth:
    def test_health(self, client):
        response = client.get("/api/v1/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["components"]["pipeline"] == "running"
        assert body["components"]["bandpower_worker"] == "running"

    def test_degraded_when_worker_closed(self, client):
        client.app.state.worker.close()
        body = client.get("/api/v1/health").json()
        assert body["status"] == "degraded"
        assert body["components"]["bandpower_worker"] == "closed"

    def test_root(self, client):
        body = client.get("/").json()
        assert body["status"] == "running"
        assert body["api"]["stream"] == "/ws/stream"


class TestPipelineRoutes:
    """Configuration, ingestion and buffer reads."""

    def test_set_channels(self, client):
        response = client.put("/api/v1/pipeline/channels", json={"channels": [2, 0]})
        assert response.status_code == 200
        assert response.json() == {"channels": [0, 2]}

    def test_set_channel_ids(self, client):
        response = client.put("/api/v1/pipeline/channels", json={"channelIds": ["channel-2"]})
        assert response.json() == {"channels": [1]}

    def test_invalid_channel_returns_error_body(self, client):
        response = client.put("/api/v1/pipeline/channels", json={"channels": [99]})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_ingest_and_read_buffer(self, client):
        client.put("/api/v1/pipeline/channels", json={"channels": [0]})
        records = [{"ch0": 8192, "counter": i} for i in range(10)]
        response = client.post("/api/v1/pipeline/samples", json={"records": records, "flush": True})
        assert response.json() == {"accepted": 10, "flushed": 10, "pending": 0}

        body = client.get("/api/v1/pipeline/buffers/0", params={"last": 4}).json()
        assert body["channel"] == 0
        assert body["samples"] == [0.0, 0.0, 0.0, 0.0]

    def test_unregistered_buffer_is_404(self, client):
        assert client.get("/api/v1/pipeline/buffers/3").status_code == 404

    def test_pending_without_flush(self, client):
        response = client.post("/api/v1/pipeline/samples", json={"records": [{"ch0": 1}] * 3})
        assert response.json()["pending"] == 3

    def test_configure_filters(self, client):
        response = client.put(
            "/api/v1/pipeline/filters",
            json={"filters": {"0": {"filterKeys": ["hp-0.5", "notch-50"], "samplingRate": 500}}}
        )
        assert response.status_code == 200
        body = response.json()
        assert body["changed"] == [0]

    def test_unknown_filter_key_is_bypassed(self, client):
        response = client.put(
            "/api/v1/pipeline/filters",
            json={"filters": {"0": {"filterKeys": ["bandpass-7", "hp-0.5"], "samplingRate": 500}}}
        )
        assert response.status_code == 200
        chain = response.json()["filters"]["0"]
        assert chain["bypassed_filters"] == ["bandpass-7"]
        assert chain["active_filters"] == ["hp-0.5"]

    def test_invalid_filter_channel(self, client):
        response = client.put(
            "/api/v1/pipeline/filters",
            json={"filters": {"9": {"filterKeys": ["hp-0.5"]}}}
        )
        assert response.status_code == 400

    def test_filter_catalog(self, client):
        rates = client.get("/api/v1/pipeline/filters/catalog").json()["rates"]
        assert "notch-50" in rates["500"]
        assert "notch-60" in rates["250"]

    def test_sampling_rate(self, client):
        client.put(
            "/api/v1/pipeline/filters",
            json={"filters": {"1": {"filterKeys": ["notch-60"]}}}
        )
        response = client.put("/api/v1/pipeline/sampling-rate", json={"samplingRate": 500})
        assert response.json()["affected_channels"] == [1]

    def test_clear_buffers(self, client):
        client.post("/api/v1/pipeline/samples", json={"records": [{"ch0": 1}] * 5})
        response = client.delete("/api/v1/pipeline/buffers")
        assert response.json() == {"cleared": True, "discarded": 5}

    def test_status(self, client):
        client.post("/api/v1/pipeline/samples", json={"records": [{"ch0": 1}], "flush": True})
        body = client.get("/api/v1/pipeline/status").json()
        assert body["scheduler"]["flushes"] == 1
        assert body["n_channels"] == 4


class TestOutputRoutes:
    def test_publish_and_read(self, client):
        response = client.post("/api/v1/outputs/w1", json={"frames": [[1, 2, 3], 4]})
        assert response.json() == {"name": "w1", "published": 2}
        assert client.get("/api/v1/outputs/w1").json()["frames"] == [[1.0, 2.0, 3.0], 4.0]
        assert client.get("/api/v1/outputs").json() == {"outputs": ["w1"]}

    def test_unknown_output_is_empty(self, client):
        assert client.get("/api/v1/outputs/none").json()["frames"] == []


class TestBandPowerRoute:
    def signal(self, n=512):
        t = np.arange(n) / 500.0
        return np.sin(2 * np.pi * 10 * t).tolist()

    def test_direct(self, client):
        response = client.post("/api/v1/bandpower", json={"signal": self.signal(256)})
        assert response.status_code == 200
        body = response.json()
        assert set(body) == {"raw", "relative", "smooth"}
        assert max(body["relative"], key=body["relative"].get) == "alpha"

    def test_welch_has_db(self, client):
        response = client.post(
            "/api/v1/bandpower",
            json={"signal": self.signal(), "method": "welch", "segmentLength": 128}
        )
        body = response.json()
        assert "dB" in body
        assert body["dB"]["alpha"] > body["dB"]["gamma"]

    def test_stream_selects_smoother(self, client):
        client.post("/api/v1/bandpower", json={"signal": self.signal(256), "stream": "left"})
        client.post("/api/v1/bandpower", json={"signal": self.signal(256)})
        assert client.app.state.worker.streams == ["default", "left"]

    def test_closed_worker_is_unavailable(self, client):
        client.app.state.worker.close()
        response = client.post("/api/v1/bandpower", json={"signal": self.signal(256)})
        assert response.status_code == 503
        assert response.json()["error"]["code"] == "PROCESSING_ERROR"

    def test_unknown_method(self, client):
        response = client.post("/api/v1/bandpower", json={"signal": [0.0], "method": "fft"})
        assert response.status_code == 422


class TestWebSocket:
    def test_output_stream_replays_history(self, client):
        client.post("/api/v1/outputs/w1", json={"frames": [[1, 2, 3], [4, 5, 6]]})
        with client.websocket_connect("/ws/outputs/w1") as ws:
            message = ws.receive_json()
            assert message["type"] == "output"
            assert message["frames"] == [[1, 2, 3], [4, 5, 6]]

    def test_stream_batch_then_ack(self, client):
        client.put("/api/v1/pipeline/channels", json={"channels": [0]})
        with client.websocket_connect("/ws/stream") as ws:
            ws.send_json({"type": "samples", "records": [{"ch0": 8192}], "flush": True})
            batch = ws.receive_json()
            assert batch["type"] == "batch"
            assert batch["samples"][0]["ch0"] == 0.0
            assert batch["samples"][0]["seq"] == 0

            ack = ws.receive_json()
            assert ack == {"type": "ack", "accepted": 1}

    def test_ping(self, client):
        with client.websocket_connect("/ws/stream") as ws:
            ws.send_json({"type": "ping"})
            assert ws.receive_json() == {"type": "pong"}

    def test_unknown_message(self, client):
        with client.websocket_connect("/ws/stream") as ws:
            ws.send_json({"type": "subscribe"})
            assert ws.receive_json()["code"] == "UNKNOWN_MESSAGE_TYPE"


class TestMessageBridge:
    """Thread-to-loop hand-off used by the WebSocket endpoints."""

    @pytest.mark.asyncio
    async def test_push_from_worker_thread(self):
        bridge = MessageBridge(asyncio.get_running_loop())
        thread = threading.Thread(target=bridge.push, args=({"type": "pong"},))
        thread.start()
        thread.join()

        message = await asyncio.wait_for(bridge.queue.get(), timeout=2.0)
        assert message == {"type": "pong"}

    @pytest.mark.asyncio
    async def test_full_queue_drops_oldest(self):
        bridge = MessageBridge(asyncio.get_running_loop(), maxsize=2)
        for i in range(3):
            bridge.push({"type": "batch", "i": i})
        await asyncio.sleep(0.05)

        assert bridge.dropped == 1
        assert bridge.queue.get_nowait()["i"] == 1
        assert bridge.queue.get_nowait()["i"] == 2
