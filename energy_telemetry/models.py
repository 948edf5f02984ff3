from typing import Optional
from datetime import datetime
from sqlalchemy import BigInteger, CheckConstraint, DateTime, Double, Index, Integer, String, func
from sqlmodel import SQLModel, Field, Column

# Column names are camelCase to stay compatible with existing energy_db
# stores; Python attributes are snake_case.

# BIGSERIAL on PostgreSQL, rowid alias on SQLite
_HistoryId = BigInteger().with_variant(Integer, "sqlite")

def _tstz(name: str, **kw) -> Column:
    return Column(name, DateTime(timezone=True), nullable=False, **kw)

class MeterLiveState(SQLModel, table=True):
    __tablename__ = "meter_live_state"
    __table_args__ = (
        Index("meter_live_state_lastUpdatedAt_idx", "lastUpdatedAt"),
        CheckConstraint('"kwhConsumedAc" >= 0', name="meter_live_state_kwhConsumedAc_check"),
        CheckConstraint('"voltage" >= 0', name="meter_live_state_voltage_check"),
    )

    meter_id: str = Field(sa_column=Column("meterId", String(50), primary_key=True))
    kwh_consumed_ac: float = Field(sa_column=Column("kwhConsumedAc", Double, nullable=False))
    voltage: float = Field(sa_column=Column("voltage", Double, nullable=False))
    last_updated_at: datetime = Field(sa_column=_tstz("lastUpdatedAt", server_default=func.now()))

class VehicleLiveState(SQLModel, table=True):
    __tablename__ = "vehicle_live_state"
    __table_args__ = (
        Index("vehicle_live_state_lastUpdatedAt_idx", "lastUpdatedAt"),
        CheckConstraint('"soc" >= 0 AND "soc" <= 100', name="vehicle_live_state_soc_check"),
        CheckConstraint('"kwhDeliveredDc" >= 0', name="vehicle_live_state_kwhDeliveredDc_check"),
    )

    vehicle_id: str = Field(sa_column=Column("vehicleId", String(50), primary_key=True))
    soc: float = Field(sa_column=Column("soc", Double, nullable=False))
    kwh_delivered_dc: float = Field(sa_column=Column("kwhDeliveredDc", Double, nullable=False))
    battery_temp: float = Field(sa_column=Column("batteryTemp", Double, nullable=False))
    last_updated_at: datetime = Field(sa_column=_tstz("lastUpdatedAt", server_default=func.now()))

class MeterTelemetryHistory(SQLModel, table=True):
    __tablename__ = "meter_telemetry_history"
    __table_args__ = (
        Index("meter_telemetry_history_meterId_timestamp_idx", "meterId", "timestamp"),
        Index("meter_telemetry_history_timestamp_idx", "timestamp"),
        CheckConstraint('"kwhConsumedAc" >= 0', name="meter_telemetry_history_kwhConsumedAc_check"),
        CheckConstraint('"voltage" >= 0', name="meter_telemetry_history_voltage_check"),
    )

    id: Optional[int] = Field(default=None, sa_column=Column("id", _HistoryId, primary_key=True, autoincrement=True))
    meter_id: str = Field(sa_column=Column("meterId", String(50), nullable=False))
    kwh_consumed_ac: float = Field(sa_column=Column("kwhConsumedAc", Double, nullable=False))
    voltage: float = Field(sa_column=Column("voltage", Double, nullable=False))
    timestamp: datetime = Field(sa_column=_tstz("timestamp"))
    ingested_at: datetime = Field(sa_column=_tstz("ingestedAt", server_default=func.now()))

class VehicleTelemetryHistory(SQLModel, table=True):
    __tablename__ = "vehicle_telemetry_history"
    __table_args__ = (
        Index("vehicle_telemetry_history_vehicleId_timestamp_idx", "vehicleId", "timestamp"),
        Index("vehicle_telemetry_history_timestamp_idx", "timestamp"),
        CheckConstraint('"soc" >= 0 AND "soc" <= 100', name="vehicle_telemetry_history_soc_check"),
        CheckConstraint('"kwhDeliveredDc" >= 0', name="vehicle_telemetry_history_kwhDeliveredDc_check"),
    )

    id: Optional[int] = Field(default=None, sa_column=Column("id", _HistoryId, primary_key=True, autoincrement=True))
    vehicle_id: str = Field(sa_column=Column("vehicleId", String(50), nullable=False))
    soc: float = Field(sa_column=Column("soc", Double, nullable=False))
    kwh_delivered_dc: float = Field(sa_column=Column("kwhDeliveredDc", Double, nullable=False))
    battery_temp: float = Field(sa_column=Column("batteryTemp", Double, nullable=False))
    timestamp: datetime = Field(sa_column=_tstz("timestamp"))
    ingested_at: datetime = Field(sa_column=_tstz("ingestedAt", server_default=func.now()))
