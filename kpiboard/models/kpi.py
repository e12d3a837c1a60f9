"""
KPI Models - headers, KPIs and their targeting sets.

A Kpi row is the root aggregate of the scoring subsystem:

    deliverables       JSON list of deliverable templates (canonical, shared)
    user_statuses      JSON {"<user_id>": "<status>"}
    user_deliverables  JSON {"<user_id>": [UserDeliverableState, ...]}

Per-user JSON is only ever read and written through
``kpiboard.services.kpi.user_state.UserStateStore``, which normalizes it on
load. ``revision`` is the optimistic-concurrency token: every UPDATE is
issued with ``WHERE revision = <loaded value>`` and bumps it.
"""

from datetime import datetime, timezone

from kpiboard.models import db

# ── Constants ─────────────────────────────────────────────────────────────────

STATUS_PENDING = "Pending"
STATUS_IN_PROGRESS = "In Progress"
STATUS_COMPLETED = "Completed"
STATUS_APPROVED = "Approved"
STATUS_NEEDS_REVISION = "Needs Revision"

# Ordered for display
DELIVERABLE_STATUSES = (
    STATUS_PENDING,
    STATUS_IN_PROGRESS,
    STATUS_COMPLETED,
    STATUS_APPROVED,
    STATUS_NEEDS_REVISION,
)


kpi_departments = db.Table(
    "kpi_departments",
    db.Column("kpi_id", db.Integer,
              db.ForeignKey("kpis.id", ondelete="CASCADE"), primary_key=True),
    db.Column("department_id", db.Integer,
              db.ForeignKey("departments.id", ondelete="CASCADE"), primary_key=True),
)

kpi_assigned_users = db.Table(
    "kpi_assigned_users",
    db.Column("kpi_id", db.Integer,
              db.ForeignKey("kpis.id", ondelete="CASCADE"), primary_key=True),
    db.Column("user_id", db.Integer,
              db.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
)


class KpiHeader(db.Model):
    """Named group of KPIs (e.g. "Teaching & Learning")."""

    __tablename__ = "kpi_headers"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    created_by_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    created_by = db.relationship("User", foreign_keys=[created_by_id])
    kpis = db.relationship(
        "Kpi",
        back_populates="header",
        cascade="all, delete-orphan",
        order_by="Kpi.id",
    )

    def to_summary(self):
        return {"id": self.id, "name": self.name, "description": self.description}

    def to_dict(self):
        return {
            **self.to_summary(),
            "createdBy": self.created_by.to_summary() if self.created_by else None,
            "kpiCount": len(self.kpis),
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }


class KpiRoleAssignment(db.Model):
    """Role-based targeting: every user holding ``role`` is an assignee."""

    __tablename__ = "kpi_role_assignments"
    __table_args__ = (
        db.UniqueConstraint("kpi_id", "role", name="uq_kpi_role"),
    )

    id = db.Column(db.Integer, primary_key=True)
    kpi_id = db.Column(
        db.Integer,
        db.ForeignKey("kpis.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    role = db.Column(db.String(120), nullable=False, index=True)

    kpi = db.relationship("Kpi", back_populates="role_assignments")


class Kpi(db.Model):
    __tablename__ = "kpis"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    header_id = db.Column(
        db.Integer,
        db.ForeignKey("kpi_headers.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    status = db.Column(
        db.String(30),
        nullable=False,
        default=STATUS_PENDING,
        comment="Global fallback when a user has no entry in user_statuses",
    )
    academic_year = db.Column(db.String(9), nullable=False, index=True,
                              comment='e.g. "2025-2026"; rolls over in September')
    weight = db.Column(db.Float, nullable=False, default=0.0)

    deliverables = db.Column(db.JSON, nullable=False, default=list)
    user_statuses = db.Column(db.JSON, nullable=False, default=dict)
    user_deliverables = db.Column(db.JSON, nullable=False, default=dict)

    created_by_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    last_updated_by = db.Column(
        db.JSON,
        nullable=True,
        comment='{"user": id, "userType": "creator|assignee", "timestamp": iso}',
    )
    revision = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __mapper_args__ = {"version_id_col": revision}

    header = db.relationship("KpiHeader", back_populates="kpis")
    created_by = db.relationship("User", foreign_keys=[created_by_id])
    departments = db.relationship("Department", secondary=kpi_departments, lazy="selectin")
    assigned_users = db.relationship("User", secondary=kpi_assigned_users, lazy="selectin")
    role_assignments = db.relationship(
        "KpiRoleAssignment",
        back_populates="kpi",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    discrepancies = db.relationship(
        "Discrepancy",
        back_populates="kpi",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    # ── Targeting helpers ────────────────────────────────────────────────

    @property
    def assigned_roles(self) -> list[str]:
        return [ra.role for ra in self.role_assignments]

    @assigned_roles.setter
    def assigned_roles(self, roles):
        self.role_assignments = [KpiRoleAssignment(role=r) for r in dict.fromkeys(roles)]

    def is_creator(self, user) -> bool:
        return user is not None and self.created_by_id == user.id

    def is_assigned(self, user) -> bool:
        """Directly, through the user's department, or through their role."""
        if user is None:
            return False
        if any(u.id == user.id for u in self.assigned_users):
            return True
        if user.department_id is not None and any(d.id == user.department_id for d in self.departments):
            return True
        return user.role in self.assigned_roles

    def to_dict(self):
        """Shared, viewer-independent fields. Per-user data is added by the projector."""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "header": self.header.to_summary() if self.header else None,
            "departments": [d.to_summary() for d in self.departments],
            "assignedUsers": [u.to_summary() for u in self.assigned_users],
            "assignedRoles": self.assigned_roles,
            "status": self.status,
            "academicYear": self.academic_year,
            "weight": self.weight,
            "createdBy": self.created_by.to_summary() if self.created_by else None,
            "lastUpdatedBy": self.last_updated_by,
            "revision": self.revision,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }

    def __repr__(self):
        return f"<Kpi {self.id}: {self.name}>"
