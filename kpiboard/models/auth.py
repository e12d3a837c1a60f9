"""
Auth Models - institutional users.

Identity and credentials are owned by the identity provider; this table
carries what KPI targeting needs: the institutional role and the
department the user belongs to.
"""

from datetime import datetime, timezone

from sqlalchemy.orm import validates

from kpiboard.models import db
from kpiboard.services.role_hierarchy import ALL_ROLES


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(200), nullable=False, unique=True)
    full_name = db.Column(db.String(200))
    role = db.Column(
        db.String(120),
        nullable=False,
        comment="One of role_hierarchy.ALL_ROLES",
    )
    department_id = db.Column(
        db.Integer,
        db.ForeignKey("departments.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))

    department = db.relationship("Department", foreign_keys=[department_id])

    @validates("role")
    def _validate_role(self, _key, value):
        if value not in ALL_ROLES:
            raise ValueError(f"Unknown role '{value}'")
        return value

    def to_summary(self):
        """Compact representation embedded in KPI and discrepancy payloads."""
        return {
            "id": self.id,
            "fullName": self.full_name,
            "email": self.email,
            "role": self.role,
        }

    def to_dict(self):
        return {
            **self.to_summary(),
            "departmentId": self.department_id,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<User {self.id}: {self.email}>"
