from __future__ import annotations

from datetime import timedelta

import pytest
from sqlmodel import Session

from conftest import NOW, hours_ago, meter, vehicle
from energy_telemetry.analytics import AnalyticsAggregator, efficiency_percent, round_half_up
from energy_telemetry.errors import NotFoundError
from energy_telemetry.models import VehicleTelemetryHistory
from energy_telemetry.storage import TelemetryStorage


def test_window_excludes_rows_older_than_24h(storage: TelemetryStorage) -> None:
    for h, kwh in ((25, 10.0), (23, 20.0), (1, 30.0)):
        storage.write_vehicle_reading(vehicle("V", kwh=kwh, at=hours_ago(h)))

    metrics = AnalyticsAggregator(storage).get_vehicle_performance("V", NOW)

    assert metrics.energyDeliveredDc == pytest.approx(50.0)
    assert metrics.dataPoints.vehicle == 2
    assert metrics.period.start == NOW - timedelta(hours=24)
    assert metrics.period.end == NOW


def test_efficiency_ratio_uses_meter_sharing_the_vehicle_id(storage: TelemetryStorage) -> None:
    storage.write_vehicle_reading(vehicle("EV1", kwh=10.0, temp=20.0, at=hours_ago(2)))
    storage.write_vehicle_reading(vehicle("EV1", kwh=11.5, temp=30.0, at=hours_ago(1)))
    # deliberate simplification: the charger meter is looked up under the vehicle id
    storage.write_meter_reading(meter("EV1", kwh=12.5, at=hours_ago(2)))
    storage.write_meter_reading(meter("EV1", kwh=13.0, at=hours_ago(1)))
    storage.write_meter_reading(meter("OTHER", kwh=500.0, at=hours_ago(1)))

    metrics = AnalyticsAggregator(storage).get_vehicle_performance("EV1", NOW)

    assert metrics.energyDeliveredDc == pytest.approx(21.5)
    assert metrics.energyConsumedAc == pytest.approx(25.5)
    assert metrics.efficiencyRatio == 84.31
    assert metrics.averageBatteryTemp == 25.0
    assert metrics.dataPoints.model_dump() == {"vehicle": 2, "meter": 2}


def test_zero_ac_gives_zero_efficiency(storage: TelemetryStorage) -> None:
    storage.write_vehicle_reading(vehicle("V", kwh=12.0, at=hours_ago(1)))
    storage.write_meter_reading(meter("V", kwh=0.0, at=hours_ago(1)))

    metrics = AnalyticsAggregator(storage).get_vehicle_performance("V", NOW)

    assert metrics.energyConsumedAc == 0.0
    assert metrics.efficiencyRatio == 0.0
    assert metrics.dataPoints.meter == 1


def test_known_vehicle_without_recent_history_gets_zero_metrics(storage: TelemetryStorage) -> None:
    storage.write_vehicle_reading(vehicle("V", kwh=12.0, temp=40.0, at=hours_ago(48)))

    metrics = AnalyticsAggregator(storage).get_vehicle_performance("V", NOW)

    assert metrics.energyDeliveredDc == 0.0
    assert metrics.energyConsumedAc == 0.0
    assert metrics.efficiencyRatio == 0.0
    assert metrics.averageBatteryTemp == 0.0
    assert metrics.dataPoints.model_dump() == {"vehicle": 0, "meter": 0}


def test_average_battery_temp_is_rounded(storage: TelemetryStorage) -> None:
    storage.write_vehicle_reading(vehicle("V", temp=20.123, at=hours_ago(3)))
    storage.write_vehicle_reading(vehicle("V", temp=30.0, at=hours_ago(2)))
    storage.write_vehicle_reading(vehicle("V", temp=-5.0, at=hours_ago(1)))

    metrics = AnalyticsAggregator(storage).get_vehicle_performance("V", NOW)

    assert metrics.averageBatteryTemp == 15.04


def test_history_alone_does_not_make_a_vehicle_known(storage: TelemetryStorage) -> None:
    with Session(storage.engine) as session:
        session.add(VehicleTelemetryHistory(
            vehicle_id="UNKNOWN", soc=50.0, kwh_delivered_dc=3.0, battery_temp=20.0,
            timestamp=hours_ago(1), ingested_at=NOW,
        ))
        session.commit()

    analytics = AnalyticsAggregator(storage)
    with pytest.raises(NotFoundError):
        analytics.get_vehicle_live_state("UNKNOWN")
    with pytest.raises(NotFoundError) as info:
        analytics.get_vehicle_performance("UNKNOWN", NOW)
    assert str(info.value) == "Vehicle UNKNOWN not found"


def test_live_state_lookups(storage: TelemetryStorage) -> None:
    storage.write_meter_reading(meter("M1", kwh=3.5, voltage=229.5, at=hours_ago(1)))
    storage.write_vehicle_reading(vehicle("V1", kwh=2.0, soc=80.0, temp=-3.0, at=hours_ago(2)))
    analytics = AnalyticsAggregator(storage)

    m = analytics.get_meter_live_state("M1")
    v = analytics.get_vehicle_live_state("V1")

    assert m.model_dump() == {
        "meterId": "M1", "kwhConsumedAc": 3.5, "voltage": 229.5, "lastUpdatedAt": hours_ago(1),
    }
    assert v.model_dump() == {
        "vehicleId": "V1", "soc": 80.0, "kwhDeliveredDc": 2.0, "batteryTemp": -3.0, "lastUpdatedAt": hours_ago(2),
    }
    assert v.lastUpdatedAt.utcoffset() == timedelta(0)

    with pytest.raises(NotFoundError) as info:
        analytics.get_meter_live_state("M404")
    assert info.value.kind == "meter"


def test_naive_now_is_treated_as_utc(storage: TelemetryStorage) -> None:
    storage.write_vehicle_reading(vehicle("V", kwh=4.0, at=hours_ago(1)))

    metrics = AnalyticsAggregator(storage).get_vehicle_performance("V", NOW.replace(tzinfo=None))

    assert metrics.energyDeliveredDc == 4.0
    assert metrics.period.end == NOW


@pytest.mark.parametrize(
    ("dc", "ac", "expected"),
    [(21.5, 25.5, 84.31), (5.0, 0.0, 0.0), (0.0, 10.0, 0.0), (9.0, 10.0, 90.0)],
)
def test_efficiency_percent(dc: float, ac: float, expected: float) -> None:
    assert efficiency_percent(dc, ac) == expected


def test_average_battery_temp_ties_round_up(storage: TelemetryStorage) -> None:
    # sensors reporting in 1/8 degree steps produce exact binary ties
    storage.write_vehicle_reading(vehicle("V", temp=20.125, at=hours_ago(1)))

    metrics = AnalyticsAggregator(storage).get_vehicle_performance("V", NOW)

    assert metrics.averageBatteryTemp == 20.13


@pytest.mark.parametrize(
    ("value", "expected"),
    [(20.125, 20.13), (20.375, 20.38), (-2.125, -2.12), (84.3137, 84.31), (0.0, 0.0)],
)
def test_round_half_up(value: float, expected: float) -> None:
    assert round_half_up(value) == expected
