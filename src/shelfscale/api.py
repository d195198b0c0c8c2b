"""HTTP surface read by the shelf dashboard."""
from __future__ import annotations

import logging
from typing import Dict, List, Optional, Sequence

import uvicorn
from fastapi import FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from .acquisition import AcquisitionLoop
from .config import ProductConfig
from .errors import CalibrationInProgressError, CalibrationOrchestrationError, StoreError
from .inventory import compute_stock
from .orchestrator import CalibrationOrchestrator
from .store import CalibrationStore

logger = logging.getLogger(__name__)


class WeightOut(BaseModel):
    load_cell_id: int
    weight: float
    offset: float


class CalibrateResponse(BaseModel):
    status: str
    message: str
    offsets: Dict[int, float] = {}
    skipped: List[int] = []


class ProductStockOut(BaseModel):
    name: str
    live_weight: float
    count: int
    status: int
    status_label: str


class HealthOut(BaseModel):
    loop: str
    calibrating: bool
    last_cycle_at: Optional[float] = None
    stats: Dict[str, int] = {}


def create_app(
    store: CalibrationStore,
    loop: AcquisitionLoop,
    orchestrator: CalibrationOrchestrator,
    *,
    cell_ids: Sequence[int],
    products: Sequence[ProductConfig] = (),
    cors_origins: Sequence[str] = ("*",),
) -> FastAPI:
    app = FastAPI(title="Shelf Scale API")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(cors_origins),
        allow_methods=["*"],
        allow_headers=["*"],
    )
    ids = list(cell_ids)

    def read_cells():
        try:
            return store.list_cells(ids)
        except StoreError as exc:
            logger.error("Failed to read load cells: %s", exc)
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    @app.get("/weights", response_model=List[WeightOut])
    def get_weights() -> List[WeightOut]:
        return [WeightOut(load_cell_id=cell.id, weight=cell.weight, offset=cell.offset) for cell in read_cells()]

    @app.post("/calibrate", response_model=CalibrateResponse)
    async def post_calibrate() -> CalibrateResponse:
        try:
            report = await run_in_threadpool(orchestrator.recalibrate)
        except CalibrationInProgressError as exc:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
        except CalibrationOrchestrationError as exc:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail={
                    "message": str(exc),
                    "failed_cells": {str(k): v for k, v in exc.failed_cells.items()},
                    "offsets": {str(k): v for k, v in exc.offsets.items()},
                },
            ) from exc
        return CalibrateResponse(
            status="ok",
            message=f"Zero calibration stored for {len(report.offsets)} load cells",
            offsets=report.offsets,
            skipped=report.skipped,
        )

    @app.get("/inventory", response_model=List[ProductStockOut])
    def get_inventory() -> List[ProductStockOut]:
        return [
            ProductStockOut(
                name=item.name,
                live_weight=item.live_weight,
                count=item.count,
                status=int(item.status),
                status_label=item.status.label,
            )
            for item in compute_stock(products, read_cells())
        ]

    @app.get("/health", response_model=HealthOut)
    def get_health() -> HealthOut:
        return HealthOut(
            loop=loop.state.value,
            calibrating=orchestrator.in_progress,
            last_cycle_at=loop.last_cycle_at,
            stats=loop.stats(),
        )

    return app


def serve(app: FastAPI, host: str, port: int, log_level: str = "info") -> None:
    """Run the API in the foreground until interrupted."""
    config = uvicorn.Config(app, host=host, port=port, log_level=log_level)
    server = uvicorn.Server(config)
    server.run()
