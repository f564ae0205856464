import json
from datetime import datetime, timezone

from flask_sqlalchemy import SQLAlchemy
from sqlalchemy.orm import validates

from transform import deserialize_daily

db = SQLAlchemy()

MAX_ADDRESS_LENGTH = 255


# Naive UTC, the form SQLite hands back for DateTime columns.
def utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ForecastRecord(db.Model):
    __tablename__ = "forecasts"
    __table_args__ = (
        db.UniqueConstraint("postal_code", "queried_at", name="uq_forecasts_postal_code_queried_at"),
        db.Index("ix_forecasts_normalized_key_queried_at", "normalized_key", "queried_at"),
        db.Index("ix_forecasts_postal_code_queried_at", "postal_code", "queried_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    raw_address = db.Column(db.String(MAX_ADDRESS_LENGTH), nullable=False)
    normalized_key = db.Column(db.String(MAX_ADDRESS_LENGTH), nullable=False)
    postal_code = db.Column(db.String(10), nullable=True)

    # Celsius only; display conversion happens outside the cache.
    current_temp_c = db.Column(db.Integer, nullable=False)
    high_temp_c = db.Column(db.Integer, nullable=False)
    low_temp_c = db.Column(db.Integer, nullable=False)
    conditions = db.Column(db.String(255), nullable=True)
    extended_forecast = db.Column(db.Text, nullable=False, default="[]")

    location_name = db.Column(db.String(120), nullable=True)
    country = db.Column(db.String(120), nullable=True)
    timezone = db.Column(db.String(64), nullable=True)

    queried_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    @validates("queried_at")
    def _freeze_queried_at(self, key, value):
        if self.queried_at is not None and value != self.queried_at:
            raise ValueError("queried_at is immutable once set")
        return value

    @validates("current_temp_c", "high_temp_c", "low_temp_c")
    def _integer_celsius(self, key, value):
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError(f"{key} must be an integer in Celsius, got {value!r}")
        return value

    def daily_forecast(self):
        return deserialize_daily(json.loads(self.extended_forecast or "[]"))

    def to_dict(self, from_cache=False):
        return {
            "id": self.id,
            "raw_address": self.raw_address,
            "normalized_key": self.normalized_key,
            "postal_code": self.postal_code,
            "current_temp_c": self.current_temp_c,
            "high_temp_c": self.high_temp_c,
            "low_temp_c": self.low_temp_c,
            "conditions": self.conditions,
            "location_name": self.location_name,
            "country": self.country,
            "timezone": self.timezone,
            "daily_forecast": [day.to_dict() for day in self.daily_forecast()],
            "queried_at": self.queried_at.isoformat() if self.queried_at else None,
            "from_cache": from_cache,
        }

    def __repr__(self):
        return f"<ForecastRecord {self.id} {self.normalized_key} {self.queried_at}>"
