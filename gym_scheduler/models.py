# models.py
import sqlalchemy
from gym_scheduler.database import metadata

# owner ids refer to users held by the identity service; no foreign keys here

reservations = sqlalchemy.Table(
    "reservations",
    metadata,
    sqlalchemy.Column("id", sqlalchemy.Integer, primary_key=True),
    sqlalchemy.Column("owner_id", sqlalchemy.Integer, nullable=False),
    sqlalchemy.Column("start_time", sqlalchemy.DateTime(timezone=True), nullable=False),
    # stored so overlap tests stay plain column comparisons on every engine
    sqlalchemy.Column("end_time", sqlalchemy.DateTime(timezone=True), nullable=False),
    sqlalchemy.Column("duration_hours", sqlalchemy.Integer, nullable=False),
    sqlalchemy.Column("attended", sqlalchemy.Boolean, nullable=False, default=False),
    sqlalchemy.Column("penalty_processed", sqlalchemy.Boolean, nullable=False, default=False),
    sqlalchemy.Column("claim_token", sqlalchemy.String(36), nullable=True),
    sqlalchemy.Column("created_at", sqlalchemy.DateTime(timezone=True), nullable=False),
    sqlalchemy.CheckConstraint("duration_hours >= 1", name="ck_reservations_duration"),
    sqlalchemy.Index("ix_reservations_owner_start", "owner_id", "start_time"),
    sqlalchemy.Index("ix_reservations_start", "start_time"),
)

attendance_sessions = sqlalchemy.Table(
    "attendance_sessions",
    metadata,
    sqlalchemy.Column("id", sqlalchemy.Integer, primary_key=True),
    sqlalchemy.Column("owner_id", sqlalchemy.Integer, nullable=False),
    sqlalchemy.Column("reservation_id", sqlalchemy.Integer, nullable=True),
    sqlalchemy.Column("check_in_time", sqlalchemy.DateTime(timezone=True), nullable=False),
    sqlalchemy.Column("check_out_time", sqlalchemy.DateTime(timezone=True), nullable=True),
    sqlalchemy.Column("auto_closed", sqlalchemy.Boolean, nullable=False, default=False),
    sqlalchemy.Column("penalty_processed", sqlalchemy.Boolean, nullable=False, default=False),
    sqlalchemy.Column("claim_token", sqlalchemy.String(36), nullable=True),
    sqlalchemy.Index("ix_sessions_owner_checkout", "owner_id", "check_out_time"),
)

# at most one open session per owner, whatever process writes it
sqlalchemy.Index(
    "uq_sessions_one_open_per_owner",
    attendance_sessions.c.owner_id,
    unique=True,
    sqlite_where=attendance_sessions.c.check_out_time.is_(None),
    postgresql_where=attendance_sessions.c.check_out_time.is_(None),
)

penalty_records = sqlalchemy.Table(
    "penalty_records",
    metadata,
    sqlalchemy.Column("id", sqlalchemy.Integer, primary_key=True),
    sqlalchemy.Column("owner_id", sqlalchemy.Integer, nullable=False),
    sqlalchemy.Column("reason", sqlalchemy.String, nullable=False),
    sqlalchemy.Column("points", sqlalchemy.Integer, nullable=False),
    sqlalchemy.Column("issued_at", sqlalchemy.DateTime(timezone=True), nullable=False),
    # audit references only: deleting the source row leaves the penalty in place
    sqlalchemy.Column("reservation_id", sqlalchemy.Integer, nullable=True),
    sqlalchemy.Column("session_id", sqlalchemy.Integer, nullable=True),
    sqlalchemy.CheckConstraint("points > 0", name="ck_penalty_points_positive"),
    sqlalchemy.Index("ix_penalties_owner_issued", "owner_id", "issued_at"),
)

suspensions = sqlalchemy.Table(
    "suspensions",
    metadata,
    sqlalchemy.Column("owner_id", sqlalchemy.Integer, primary_key=True),
    sqlalchemy.Column("active_until", sqlalchemy.DateTime(timezone=True), nullable=True),
    sqlalchemy.Column("reason", sqlalchemy.String, nullable=True),
    sqlalchemy.Column("source", sqlalchemy.String, nullable=True),
    sqlalchemy.Column("updated_at", sqlalchemy.DateTime(timezone=True), nullable=False),
)

qr_codes = sqlalchemy.Table(
    "qr_codes",
    metadata,
    sqlalchemy.Column("id", sqlalchemy.Integer, primary_key=True),
    # stored upper-cased
    sqlalchemy.Column("code", sqlalchemy.String, nullable=False, unique=True),
    sqlalchemy.Column("name", sqlalchemy.String, nullable=False),
    sqlalchemy.Column("active", sqlalchemy.Boolean, nullable=False, default=True),
    sqlalchemy.Column("created_at", sqlalchemy.DateTime(timezone=True), nullable=False),
    sqlalchemy.Column("updated_at", sqlalchemy.DateTime(timezone=True), nullable=False),
)
