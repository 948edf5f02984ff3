import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Sequence, TypeVar

from .errors import StorageError
from .schemas import BatchResult, MeterIngestResult, MeterReading, VehicleIngestResult, VehicleReading
from .storage import TelemetryStorage

log = logging.getLogger("ingest")

R = TypeVar("R")

class IngestionCoordinator:
    """Applies validated readings to storage, one at a time or as a batch.

    Batch items are independent: each runs its own dual-write transaction on a
    pool capped at ``max_workers``, and a failing item is only counted.
    """

    def __init__(self, storage: TelemetryStorage, max_workers: int = 8) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self.storage = storage
        self.max_workers = max_workers

    def ingest_meter(self, reading: MeterReading) -> MeterIngestResult:
        try:
            self.storage.write_meter_reading(reading)
        except StorageError as e:
            log.error("Failed to ingest meter telemetry: %s", e)
            raise
        log.info("Meter %s telemetry ingested", reading.meterId)
        return MeterIngestResult(success=True, meterId=reading.meterId)

    def ingest_vehicle(self, reading: VehicleReading) -> VehicleIngestResult:
        try:
            self.storage.write_vehicle_reading(reading)
        except StorageError as e:
            log.error("Failed to ingest vehicle telemetry: %s", e)
            raise
        log.info("Vehicle %s telemetry ingested", reading.vehicleId)
        return VehicleIngestResult(success=True, vehicleId=reading.vehicleId)

    def ingest_meter_batch(self, readings: Sequence[MeterReading]) -> BatchResult:
        return self._run_batch("meter", self.ingest_meter, readings)

    def ingest_vehicle_batch(self, readings: Sequence[VehicleReading]) -> BatchResult:
        return self._run_batch("vehicle", self.ingest_vehicle, readings)

    def _run_batch(self, kind: str, ingest_one: Callable[[R], object], readings: Sequence[R]) -> BatchResult:
        items = list(readings)
        if not items:
            return BatchResult(total=0, successful=0, failed=0)

        def settle(item: R) -> bool:
            try:
                ingest_one(item)
                return True
            except StorageError:
                return False  # already logged by ingest_one
            except Exception:
                log.exception("Unexpected error in %s batch item", kind)
                return False

        workers = min(self.max_workers, len(items))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"ingest-{kind}") as pool:
            outcomes = list(pool.map(settle, items))

        successful = sum(outcomes)
        result = BatchResult(total=len(items), successful=successful, failed=len(items) - successful)
        log.info("%s batch: total=%d successful=%d failed=%d", kind, result.total, result.successful, result.failed)
        return result
