from datetime import datetime, timezone
from typing import Any, Mapping

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, field_validator

from .errors import ValidationError
from .models import MeterLiveState, VehicleLiveState

def as_utc(ts: datetime) -> datetime:
    """Naive instants are taken to be UTC; aware ones are converted to UTC."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)

class _Reading(BaseModel):
    timestamp: datetime

    @field_validator("timestamp")
    @classmethod
    def _utc_timestamp(cls, v: datetime) -> datetime:
        return as_utc(v)

class MeterReading(_Reading):
    meterId: str = Field(min_length=1, max_length=50)
    kwhConsumedAc: float = Field(ge=0)
    voltage: float = Field(ge=0)

class VehicleReading(_Reading):
    vehicleId: str = Field(min_length=1, max_length=50)
    soc: float = Field(ge=0, le=100)  # state of charge, %
    kwhDeliveredDc: float = Field(ge=0)
    batteryTemp: float

def _parse(model: type[_Reading], payload: Mapping[str, Any]):
    try:
        return model.model_validate(payload)
    except PydanticValidationError as e:
        errors = [{"loc": list(err["loc"]), "msg": err["msg"]} for err in e.errors()]
        raise ValidationError(f"invalid {model.__name__}: {e.error_count()} error(s)", errors=errors) from e

def parse_meter_reading(payload: Mapping[str, Any]) -> MeterReading:
    return _parse(MeterReading, payload)

def parse_vehicle_reading(payload: Mapping[str, Any]) -> VehicleReading:
    return _parse(VehicleReading, payload)

class MeterLiveStateOut(BaseModel):
    meterId: str
    kwhConsumedAc: float
    voltage: float
    lastUpdatedAt: datetime

    @classmethod
    def from_row(cls, row: MeterLiveState) -> "MeterLiveStateOut":
        return cls(
            meterId=row.meter_id, kwhConsumedAc=row.kwh_consumed_ac,
            voltage=row.voltage, lastUpdatedAt=as_utc(row.last_updated_at),
        )

class VehicleLiveStateOut(BaseModel):
    vehicleId: str
    soc: float
    kwhDeliveredDc: float
    batteryTemp: float
    lastUpdatedAt: datetime

    @classmethod
    def from_row(cls, row: VehicleLiveState) -> "VehicleLiveStateOut":
        return cls(
            vehicleId=row.vehicle_id, soc=row.soc, kwhDeliveredDc=row.kwh_delivered_dc,
            batteryTemp=row.battery_temp, lastUpdatedAt=as_utc(row.last_updated_at),
        )

class MeterIngestResult(BaseModel):
    success: bool
    meterId: str

class VehicleIngestResult(BaseModel):
    success: bool
    vehicleId: str

class BatchResult(BaseModel):
    total: int
    successful: int
    failed: int

class Period(BaseModel):
    start: datetime
    end: datetime

class DataPoints(BaseModel):
    vehicle: int
    meter: int

class PerformanceMetrics(BaseModel):
    vehicleId: str
    period: Period
    energyConsumedAc: float
    energyDeliveredDc: float
    efficiencyRatio: float  # percentage
    averageBatteryTemp: float
    dataPoints: DataPoints
