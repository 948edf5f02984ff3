"""
Dual-persistence storage engine.

Every reading is written as one transaction holding exactly two statements:
an INSERT into the append-only history table followed by an UPSERT of the
device's live-state row. Readers therefore see both or neither.

History tables are indexed on (deviceId, timestamp) and (timestamp), so the
windowed aggregates below are index range scans bounded by id and window.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator, NamedTuple

from sqlalchemy import Table, func, insert, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, SQLModel, select

from .db import init_db, session_factory
from .errors import StorageError
from .models import MeterLiveState, MeterTelemetryHistory, VehicleLiveState, VehicleTelemetryHistory
from .schemas import MeterReading, VehicleReading, as_utc

log = logging.getLogger("storage")

_UPSERT_INSERTS = {"postgresql": pg_insert, "sqlite": sqlite_insert}

class MeterAggregate(NamedTuple):
    kwh_consumed_ac: float | None  # None when no row matched
    count: int

class VehicleAggregate(NamedTuple):
    kwh_delivered_dc: float | None
    avg_battery_temp: float | None
    count: int

# ---------------- statements ----------------
def meter_live_stmt(meter_id: str):
    return select(MeterLiveState).where(MeterLiveState.meter_id == meter_id)

def vehicle_live_stmt(vehicle_id: str):
    return select(VehicleLiveState).where(VehicleLiveState.vehicle_id == vehicle_id)

def meter_window_stmt(meter_id: str, start: datetime, end: datetime):
    h = MeterTelemetryHistory
    return select(func.sum(h.kwh_consumed_ac), func.count(h.id)).where(
        h.meter_id == meter_id,
        h.timestamp >= as_utc(start),
        h.timestamp <= as_utc(end),
    )

def vehicle_window_stmt(vehicle_id: str, start: datetime, end: datetime):
    h = VehicleTelemetryHistory
    return select(func.sum(h.kwh_delivered_dc), func.avg(h.battery_temp), func.count(h.id)).where(
        h.vehicle_id == vehicle_id,
        h.timestamp >= as_utc(start),
        h.timestamp <= as_utc(end),
    )

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)

# ---------------- engine ----------------
class TelemetryStorage:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self._session = session_factory(engine)

    def init_schema(self) -> None:
        with self._guard("init_schema"):
            init_db(self.engine)

    @contextmanager
    def _guard(self, operation: str) -> Iterator[None]:
        try:
            yield
        except SQLAlchemyError as e:
            log.warning("%s failed: %s", operation, e.__class__.__name__)
            raise StorageError(f"{operation} failed: {e}", operation=operation) from e

    # -------- writes --------
    def write_meter_reading(self, reading: MeterReading) -> None:
        ts = as_utc(reading.timestamp)
        history = MeterTelemetryHistory(
            meter_id=reading.meterId,
            kwh_consumed_ac=reading.kwhConsumedAc,
            voltage=reading.voltage,
            timestamp=ts,
            ingested_at=_utcnow(),
        )
        live = {
            "meterId": reading.meterId,
            "kwhConsumedAc": reading.kwhConsumedAc,
            "voltage": reading.voltage,
            "lastUpdatedAt": ts,
        }
        self._dual_write("write_meter_reading", history, MeterLiveState.__table__, live)

    def write_vehicle_reading(self, reading: VehicleReading) -> None:
        ts = as_utc(reading.timestamp)
        history = VehicleTelemetryHistory(
            vehicle_id=reading.vehicleId,
            soc=reading.soc,
            kwh_delivered_dc=reading.kwhDeliveredDc,
            battery_temp=reading.batteryTemp,
            timestamp=ts,
            ingested_at=_utcnow(),
        )
        live = {
            "vehicleId": reading.vehicleId,
            "soc": reading.soc,
            "kwhDeliveredDc": reading.kwhDeliveredDc,
            "batteryTemp": reading.batteryTemp,
            "lastUpdatedAt": ts,
        }
        self._dual_write("write_vehicle_reading", history, VehicleLiveState.__table__, live)

    def _dual_write(self, operation: str, history: SQLModel, live_table: Table, live: dict[str, Any]) -> None:
        with self._guard(operation):
            with self._session() as session, session.begin():
                session.add(history)
                session.flush()  # history INSERT goes out before the upsert
                self._upsert(session, live_table, live)

    def _upsert(self, session: Session, table: Table, values: dict[str, Any]) -> None:
        """Overwrite every mutable column of the keyed row, creating it on first sight."""
        pk = next(iter(table.primary_key))
        conn = session.connection()
        make_insert = _UPSERT_INSERTS.get(conn.dialect.name)
        if make_insert is not None:
            stmt = make_insert(table).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=[pk],
                set_={k: stmt.excluded[k] for k in values if k != pk.key},
            )
            conn.execute(stmt)
            return
        # no native upsert: both statements still share the caller's transaction
        res = conn.execute(update(table).where(pk == values[pk.key]).values(**values))
        if res.rowcount == 0:
            conn.execute(insert(table).values(**values))

    # -------- reads --------
    def read_meter_live_state(self, meter_id: str) -> MeterLiveState | None:
        with self._guard("read_meter_live_state"), self._session() as session:
            return session.exec(meter_live_stmt(meter_id)).first()

    def read_vehicle_live_state(self, vehicle_id: str) -> VehicleLiveState | None:
        with self._guard("read_vehicle_live_state"), self._session() as session:
            return session.exec(vehicle_live_stmt(vehicle_id)).first()

    def aggregate_meter_history(self, meter_id: str, start: datetime, end: datetime) -> MeterAggregate:
        with self._guard("aggregate_meter_history"), self._session() as session:
            total, count = session.exec(meter_window_stmt(meter_id, start, end)).one()
        return MeterAggregate(total, count)

    def aggregate_vehicle_history(self, vehicle_id: str, start: datetime, end: datetime) -> VehicleAggregate:
        with self._guard("aggregate_vehicle_history"), self._session() as session:
            total, avg_temp, count = session.exec(vehicle_window_stmt(vehicle_id, start, end)).one()
        return VehicleAggregate(total, avg_temp, count)
