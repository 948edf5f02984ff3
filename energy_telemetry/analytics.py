import math
from datetime import datetime, timedelta, timezone

from .errors import NotFoundError
from .schemas import (
    DataPoints, MeterLiveStateOut, PerformanceMetrics, Period, VehicleLiveStateOut, as_utc,
)
from .storage import TelemetryStorage

PERFORMANCE_WINDOW = timedelta(hours=24)

def round_half_up(x: float) -> float:
    """Round to hundredths with ties going up (20.125 -> 20.13, -2.125 -> -2.12)."""
    return math.floor(x * 100 + 0.5) / 100

def efficiency_percent(delivered_dc: float, consumed_ac: float) -> float:
    """DC delivered over AC consumed as a percentage; 0 when no AC was drawn."""
    if consumed_ac <= 0:
        return 0.0
    return round_half_up(delivered_dc / consumed_ac * 100)

class AnalyticsAggregator:
    def __init__(self, storage: TelemetryStorage) -> None:
        self.storage = storage

    def get_vehicle_performance(self, vehicle_id: str, now: datetime | None = None) -> PerformanceMetrics:
        """Trailing 24h performance for a vehicle, window bounds inclusive.

        Only the live-state row decides whether the vehicle exists. Meter
        history is looked up with the vehicle id as meter id: there is no
        vehicle-to-meter mapping, a charger is assumed to share its vehicle's id.
        """
        end = as_utc(now) if now is not None else datetime.now(timezone.utc)
        start = end - PERFORMANCE_WINDOW

        if self.storage.read_vehicle_live_state(vehicle_id) is None:
            raise NotFoundError("vehicle", vehicle_id)

        vehicle = self.storage.aggregate_vehicle_history(vehicle_id, start, end)
        meter = self.storage.aggregate_meter_history(vehicle_id, start, end)

        delivered = vehicle.kwh_delivered_dc or 0.0
        consumed = meter.kwh_consumed_ac or 0.0
        avg_temp = vehicle.avg_battery_temp or 0.0

        return PerformanceMetrics(
            vehicleId=vehicle_id,
            period=Period(start=start, end=end),
            energyConsumedAc=consumed,
            energyDeliveredDc=delivered,
            efficiencyRatio=efficiency_percent(delivered, consumed),
            averageBatteryTemp=round_half_up(avg_temp),
            dataPoints=DataPoints(vehicle=vehicle.count, meter=meter.count),
        )

    def get_vehicle_live_state(self, vehicle_id: str) -> VehicleLiveStateOut:
        row = self.storage.read_vehicle_live_state(vehicle_id)
        if row is None:
            raise NotFoundError("vehicle", vehicle_id)
        return VehicleLiveStateOut.from_row(row)

    def get_meter_live_state(self, meter_id: str) -> MeterLiveStateOut:
        row = self.storage.read_meter_live_state(meter_id)
        if row is None:
            raise NotFoundError("meter", meter_id)
        return MeterLiveStateOut.from_row(row)
