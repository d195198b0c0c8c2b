from __future__ import annotations

import threading
from typing import List, Optional

from fastapi.testclient import TestClient

from shelfscale.acquisition import AcquisitionLoop
from shelfscale.api import create_app
from shelfscale.config import ProductConfig
from shelfscale.errors import CalibrationInProgressError
from shelfscale.orchestrator import CalibrationOrchestrator
from shelfscale.store import LoadCell, MemoryCalibrationStore


class FakeTransport:
    def __init__(self, replies: List[object], default: str = ">110,80,70<END>"):
        self._replies = list(replies)
        self._default = default
        self._guard = threading.Lock()

    def send_and_await(self, command: str, timeout: Optional[float] = None) -> str:
        with self._guard:
            reply = self._replies.pop(0) if self._replies else self._default
        if isinstance(reply, Exception):
            raise reply
        return reply


def _client(replies: List[object], products=(), orchestrator=None):
    store = MemoryCalibrationStore(
        [
            LoadCell(1, 10.0, 0.5, weight=400.0),
            LoadCell(2, 20.0, 0.6, weight=-3.0),
            LoadCell(3, 15.0, 0.55, weight=700.0),
        ]
    )
    loop = AcquisitionLoop(FakeTransport(replies), store, poll_interval=60.0)
    orchestrator = orchestrator or CalibrationOrchestrator(loop)
    app = create_app(store, loop, orchestrator, cell_ids=[1, 2, 3, 4], products=products)
    return TestClient(app), store, loop


def test_get_weights_lists_configured_cells() -> None:
    client, _, _ = _client([])
    response = client.get("/weights")
    assert response.status_code == 200
    assert response.json() == [
        {"load_cell_id": 1, "weight": 400.0, "offset": 10.0},
        {"load_cell_id": 2, "weight": -3.0, "offset": 20.0},
        {"load_cell_id": 3, "weight": 700.0, "offset": 15.0},
    ]


def test_post_calibrate_updates_offsets_and_resumes() -> None:
    client, store, loop = _client([">111,82,70<END>"])
    try:
        response = client.post("/calibrate")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["offsets"] == {"1": 111.0, "2": 82.0, "3": 70.0}
        assert store.get(1).offset == 111.0
        assert client.get("/health").json()["loop"] == "running"
    finally:
        loop.stop(wait=True)


def test_post_calibrate_failure_returns_503() -> None:
    client, store, loop = _client([TimeoutError("no response")])
    try:
        response = client.post("/calibrate")
        assert response.status_code == 503
        assert "no response" in response.json()["detail"]["message"]
        assert store.get(1).offset == 10.0
    finally:
        loop.stop(wait=True)


def test_post_calibrate_while_busy_returns_409() -> None:
    class BusyOrchestrator:
        in_progress = True

        def recalibrate(self):
            raise CalibrationInProgressError("Calibration already in progress")

    client, _, _ = _client([], orchestrator=BusyOrchestrator())
    response = client.post("/calibrate")
    assert response.status_code == 409
    assert client.get("/health").json()["calibrating"] is True


def test_inventory_counts_products() -> None:
    products = [
        ProductConfig(name="Soda", unit_weight=350.0, from_cell=1, to_cell=2, warning=10, alarm=5),
        ProductConfig(name="Water", unit_weight=0.0, from_cell=3, to_cell=3),
    ]
    client, _, _ = _client([], products=products)
    response = client.get("/inventory")
    assert response.status_code == 200
    soda, water = response.json()
    assert soda == {"name": "Soda", "live_weight": 400.0, "count": 1, "status": 2, "status_label": "Alarm"}
    assert water["count"] == 0
    assert water["status_label"] == "Out of Stock"


def test_health_reports_stopped_loop() -> None:
    client, _, _ = _client([])
    body = client.get("/health").json()
    assert body["loop"] == "stopped"
    assert body["calibrating"] is False
    assert body["stats"]["cycles"] == 0


def test_inventory_survives_zero_multiplier_cell() -> None:
    products = [ProductConfig(name="Soda", unit_weight=100.0, from_cell=1, to_cell=2, warning=10, alarm=5)]
    client, store, loop = _client([">110,25,70<END>"], products=products)
    store.upsert(2, 20.0, 0.0)
    result = loop.run_one_shot()
    assert result.written[2] == float("inf")
    response = client.get("/inventory")
    assert response.status_code == 200
    (soda,) = response.json()
    assert soda["live_weight"] == 200.0
    assert soda["count"] == 2
