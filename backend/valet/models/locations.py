from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class Location(db.Model):
    """
    A valet stand (hotel, venue) with its own rate schedule.

    pricing_tiers is an embedded JSON list of
    {"max_hours": int | None, "rate_cents": int, "in_out_allowed": bool},
    ascending by max_hours with exactly one null (unlimited) tier last.
    Tiers are never referenced on their own; they are validated and
    normalized by location_service before being stored.
    """
    __tablename__ = "locations"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    identifier = db.Column(db.String(64), nullable=False, unique=True, index=True)

    overnight_rate_cents = db.Column(db.Integer, nullable=False)
    overnight_in_out_allowed = db.Column(db.Boolean, nullable=False, default=True)

    # Basis points (0-10000)
    tax_rate_bps = db.Column(db.Integer, nullable=False, default=2325)
    revenue_share_bps = db.Column(db.Integer, nullable=False, default=500)

    pricing_tiers = db.Column(db.JSON, nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Location id={self.id} identifier={self.identifier!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "identifier": self.identifier,
            "overnight_rate_cents": self.overnight_rate_cents,
            "overnight_in_out_allowed": self.overnight_in_out_allowed,
            "tax_rate_bps": self.tax_rate_bps,
            "revenue_share_bps": self.revenue_share_bps,
            "pricing_tiers": list(self.pricing_tiers or []),
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
