import datetime as dt

from sqlalchemy import (Boolean, Column, Double, Integer, JSON, Text,
                        DateTime, UniqueConstraint, Index, TypeDecorator)
from sqlalchemy.sql import func

from fleet_guardian.database import Base

UTC = dt.timezone.utc


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes, including on backends that drop tzinfo."""
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        value = value.astimezone(UTC)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return value.replace(tzinfo=UTC) if value.tzinfo is None else value.astimezone(UTC)


class Device(Base):
    __tablename__ = "devices"
    id        = Column(Integer, primary_key=True)
    device_id = Column(Text, unique=True, index=True, nullable=False)
    name      = Column(Text)
    active    = Column(Boolean, nullable=False, default=True)
    created_at = Column(UTCDateTime, server_default=func.now())


class PositionSample(Base):
    __tablename__ = "position_samples"
    __table_args__ = (
        UniqueConstraint("device_id", "observed_at", name="uq_position_samples_device_observed"),
    )
    id              = Column(Integer, primary_key=True)
    device_id       = Column(Text, index=True, nullable=False)
    observed_at     = Column(UTCDateTime, nullable=False)
    latitude        = Column(Double)               # null when the report had no usable fix
    longitude       = Column(Double)
    speed_kmh       = Column(Double, nullable=False, default=0.0)
    heading         = Column(Double)
    battery_percent = Column(Double)
    raw_status      = Column(Text)                 # numeric bitfield as text, or the free-text status
    status_text     = Column(Text)
    total_distance_m = Column(Double)
    ignition_on         = Column(Boolean)          # null when method is "unknown"
    ignition_confidence = Column(Double, nullable=False, default=0.0)
    ignition_method     = Column(Text, nullable=False, default="unknown")
    ignition_signals    = Column(JSON)
    data_quality    = Column(Text)
    events_evaluated = Column(Boolean, nullable=False, default=False)  # flipped after the event engine ran
    ingested_at     = Column(UTCDateTime, server_default=func.now())


class Trip(Base):
    __tablename__ = "trips"
    __table_args__ = (
        UniqueConstraint("device_id", "start_time", "end_time", name="uq_trips_device_bounds"),
    )
    id            = Column(Integer, primary_key=True)
    device_id     = Column(Text, index=True, nullable=False)
    start_time    = Column(UTCDateTime, nullable=False)
    end_time      = Column(UTCDateTime, nullable=False)
    start_lat     = Column(Double)
    start_lon     = Column(Double)
    end_lat       = Column(Double)
    end_lon       = Column(Double)
    distance_km   = Column(Double)
    distance_from_provider = Column(Boolean, nullable=False, default=False)
    max_speed_kmh = Column(Double)
    avg_speed_kmh = Column(Double)
    duration_s    = Column(Integer)
    source        = Column(Text, nullable=False, default="provider")  # provider / reconciled
    coordinates_backfilled = Column(Boolean, nullable=False, default=False)
    synced_at     = Column(UTCDateTime)


class Event(Base):
    __tablename__ = "events"
    __table_args__ = (
        Index("ix_events_device_type_created", "device_id", "event_type", "created_at"),
    )
    id           = Column(Integer, primary_key=True)
    device_id    = Column(Text, nullable=False)
    event_type   = Column(Text, nullable=False)
    severity     = Column(Text, nullable=False)    # info / warning / error / critical
    title        = Column(Text)
    description  = Column(Text)
    created_at   = Column(UTCDateTime, nullable=False)
    observed_at  = Column(UTCDateTime)             # timestamp of the triggering sample
    latitude     = Column(Double)
    longitude    = Column(Double)
    value_before = Column(Double)
    value_after  = Column(Double)
    threshold    = Column(Double)
    meta         = Column("metadata", JSON)
    notified     = Column(Boolean, nullable=False, default=False, index=True)
    notified_at  = Column(UTCDateTime)


class Geofence(Base):
    __tablename__ = "geofences"
    id         = Column(Integer, primary_key=True)
    device_id  = Column(Text, index=True)          # NULL applies to every device
    name       = Column(Text, nullable=False)
    latitude   = Column(Double, nullable=False)
    longitude  = Column(Double, nullable=False)
    radius_m   = Column(Double, nullable=False, default=500.0)
    trigger_on = Column(Text, nullable=False, default="both")  # enter / exit / both
    active     = Column(Boolean, nullable=False, default=True)
    created_at = Column(UTCDateTime, server_default=func.now())


class TripSyncStatus(Base):
    __tablename__ = "trip_sync_status"
    device_id        = Column(Text, primary_key=True)
    sync_status      = Column(Text)                # syncing / completed / error
    last_sync_at     = Column(UTCDateTime)
    last_trip_synced = Column(UTCDateTime)         # window end of the last successful sync
    trips_synced_count = Column(Integer, default=0)
    error_message    = Column(Text)
