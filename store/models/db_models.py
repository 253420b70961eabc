"""
SQLAlchemy ORM models for the air quality store.
Tables: locations, sensors, measurements

Rows are written once during an import and never updated. Measurement rows
keep a snapshot of their location and sensor as they were at capture time.
"""

from sqlalchemy import (
    BigInteger, Boolean, Column, DateTime, Float, ForeignKey, Index, Integer,
    String, Text, UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func


Base = declarative_base()


class Location(Base):
    __tablename__ = "locations"

    id = Column(BigInteger, primary_key=True, autoincrement=False)  # provider id
    name = Column(Text, nullable=True)
    locality = Column(Text, nullable=True)  # usually the city
    country_code = Column(String(2), nullable=False)
    country_name = Column(Text, nullable=True)
    timezone = Column(Text, nullable=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    datetime_first = Column(DateTime(timezone=True), nullable=True)
    datetime_last = Column(DateTime(timezone=True), nullable=True)
    is_mobile = Column(Boolean, nullable=False, default=False)
    is_monitor = Column(Boolean, nullable=False, default=False)
    owner_name = Column(Text, nullable=True)
    provider_name = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    sensors = relationship("Sensor", back_populates="location", passive_deletes=True)

    __table_args__ = (
        Index("ix_locations_country_code", "country_code"),
    )


class Sensor(Base):
    __tablename__ = "sensors"

    id = Column(BigInteger, primary_key=True, autoincrement=False)  # provider id
    location_id = Column(
        BigInteger, ForeignKey("locations.id", ondelete="CASCADE"), nullable=False
    )
    name = Column(Text, nullable=False)
    parameter_id = Column(Integer, nullable=False)
    parameter_name = Column(String(50), nullable=False)
    units = Column(String(50), nullable=False)
    display_name = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    location = relationship("Location", back_populates="sensors")

    __table_args__ = (
        Index("ix_sensors_location_id", "location_id"),
        Index("ix_sensors_parameter_name", "parameter_name"),
    )


class DailyMeasurement(Base):
    __tablename__ = "measurements"

    id = Column(Integer, primary_key=True, autoincrement=True)
    sensor_id = Column(
        BigInteger, ForeignKey("sensors.id", ondelete="CASCADE"), nullable=False
    )
    date_utc = Column(DateTime(timezone=True), nullable=False)  # start of the day
    date_local = Column(Text, nullable=False)
    parameter_id = Column(Integer, nullable=False)
    parameter_name = Column(String(50), nullable=False)
    parameter_display_name = Column(Text, nullable=True)
    value_avg = Column(Float, nullable=True)
    value_min = Column(Float, nullable=True)
    value_max = Column(Float, nullable=True)
    measurement_count = Column(Integer, nullable=True)
    unit = Column(String(50), nullable=False)
    # Snapshot taken at capture time
    location_id = Column(BigInteger, nullable=False)
    location_name = Column(Text, nullable=False)
    sensor_name = Column(Text, nullable=False)
    country = Column(String(2), nullable=False)
    city = Column(Text, nullable=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    is_mobile = Column(Boolean, nullable=False, default=False)
    is_monitor = Column(Boolean, nullable=False, default=False)
    owner_name = Column(Text, nullable=True)
    provider_name = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint("sensor_id", "date_utc", name="uq_measurements_sensor_date"),
        Index("ix_measurements_country", "country"),
        Index("ix_measurements_sensor_id", "sensor_id"),
        Index("ix_measurements_parameter_id", "parameter_id"),
        Index("ix_measurements_parameter_name", "parameter_name"),
        Index("ix_measurements_date_utc", "date_utc"),
        Index("ix_measurements_country_parameter_date", "country", "parameter_name", "date_utc"),
    )
