import logging
from typing import Any, Callable, List, Sequence

from fastapi import Body, FastAPI, Request
from fastapi.responses import JSONResponse

from .analytics import AnalyticsAggregator
from .db import make_engine
from .errors import NotFoundError, StorageError, ValidationError
from .ingest import IngestionCoordinator
from .mqtt_handler import start_mqtt, stop_mqtt
from .schemas import (
    BatchResult, MeterIngestResult, MeterLiveStateOut, PerformanceMetrics,
    VehicleIngestResult, VehicleLiveStateOut, parse_meter_reading, parse_vehicle_reading,
)
from .settings import Settings, settings
from .storage import TelemetryStorage

log = logging.getLogger("api")

def _validated_batch(raw: Sequence[Any], parse: Callable, run: Callable[[list], BatchResult]) -> BatchResult:
    # items are validated one by one so a bad item only fails itself
    readings, invalid = [], 0
    for i, item in enumerate(raw):
        try:
            readings.append(parse(item))
        except ValidationError as e:
            invalid += 1
            log.warning("batch item %d rejected: %s", i, e)
    res = run(readings)
    return BatchResult(total=len(raw), successful=res.successful, failed=res.failed + invalid)

def create_app(storage: TelemetryStorage | None = None, config: Settings = settings) -> FastAPI:
    app = FastAPI(title="Energy Telemetry API", version="0.1.0")
    app.state.storage = storage
    app.state.mqtt_client = None

    @app.on_event("startup")
    def on_startup():
        logging.basicConfig(level=config.log_level)
        if app.state.storage is None:
            app.state.storage = TelemetryStorage(make_engine(config.database_url, echo=config.database_echo))
        app.state.storage.init_schema()
        app.state.ingest = IngestionCoordinator(app.state.storage, max_workers=config.batch_max_workers)
        app.state.analytics = AnalyticsAggregator(app.state.storage)
        if config.mqtt_enabled:
            try:
                app.state.mqtt_client = start_mqtt(app.state.ingest, config)
            except OSError as e:
                log.error("MQTT failed to start: %s", e)

    @app.on_event("shutdown")
    def on_shutdown():
        if app.state.mqtt_client is not None:
            stop_mqtt(app.state.mqtt_client)
            app.state.mqtt_client = None

    @app.exception_handler(NotFoundError)
    async def not_found(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(ValidationError)
    async def bad_input(request: Request, exc: ValidationError):
        return JSONResponse(status_code=400, content={"detail": str(exc), "errors": exc.errors})

    @app.exception_handler(StorageError)
    async def storage_failure(request: Request, exc: StorageError):
        return JSONResponse(status_code=500, content={"detail": "Storage failure"})

    # ---------------- ingest ----------------
    @app.post("/v1/ingest/meter", response_model=MeterIngestResult, status_code=201)
    def ingest_meter(body: Any = Body(...)):
        # validated here so bad input maps to 400 like the batch items
        return app.state.ingest.ingest_meter(parse_meter_reading(body))

    @app.post("/v1/ingest/vehicle", response_model=VehicleIngestResult, status_code=201)
    def ingest_vehicle(body: Any = Body(...)):
        return app.state.ingest.ingest_vehicle(parse_vehicle_reading(body))

    @app.post("/v1/ingest/meter/batch", response_model=BatchResult, status_code=201)
    def ingest_meter_batch(body: List[Any]):
        return _validated_batch(body, parse_meter_reading, app.state.ingest.ingest_meter_batch)

    @app.post("/v1/ingest/vehicle/batch", response_model=BatchResult, status_code=201)
    def ingest_vehicle_batch(body: List[Any]):
        return _validated_batch(body, parse_vehicle_reading, app.state.ingest.ingest_vehicle_batch)

    # ---------------- analytics ----------------
    @app.get("/v1/analytics/performance/{vehicle_id}", response_model=PerformanceMetrics)
    def performance(vehicle_id: str):
        return app.state.analytics.get_vehicle_performance(vehicle_id)

    @app.get("/v1/analytics/vehicle/{vehicle_id}/live", response_model=VehicleLiveStateOut)
    def vehicle_live(vehicle_id: str):
        return app.state.analytics.get_vehicle_live_state(vehicle_id)

    @app.get("/v1/analytics/meter/{meter_id}/live", response_model=MeterLiveStateOut)
    def meter_live(meter_id: str):
        return app.state.analytics.get_meter_live_state(meter_id)

    return app

app = create_app()
