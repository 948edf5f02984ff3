from __future__ import annotations

from collections.abc import Iterator
from datetime import datetime, timedelta, timezone

import pytest
from sqlmodel import Session, SQLModel, select

from energy_telemetry.db import make_engine
from energy_telemetry.schemas import MeterReading, VehicleReading
from energy_telemetry.storage import TelemetryStorage

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def storage(tmp_path) -> Iterator[TelemetryStorage]:
    engine = make_engine(f"sqlite:///{tmp_path / 'telemetry.db'}")
    store = TelemetryStorage(engine)
    store.init_schema()
    yield store
    engine.dispose()


def meter(meter_id: str = "M1", kwh: float = 10.0, voltage: float = 230.0, at: datetime = NOW) -> MeterReading:
    return MeterReading(meterId=meter_id, kwhConsumedAc=kwh, voltage=voltage, timestamp=at)


def vehicle(
    vehicle_id: str = "V1",
    kwh: float = 8.0,
    soc: float = 50.0,
    temp: float = 25.0,
    at: datetime = NOW,
) -> VehicleReading:
    return VehicleReading(vehicleId=vehicle_id, soc=soc, kwhDeliveredDc=kwh, batteryTemp=temp, timestamp=at)


def hours_ago(h: float) -> datetime:
    return NOW - timedelta(hours=h)


def history_rows(storage: TelemetryStorage, model: type[SQLModel]) -> list:
    with Session(storage.engine) as session:
        return list(session.exec(select(model).order_by(model.id)).all())
