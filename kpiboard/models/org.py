"""
Organisation Models - departments and their supervisors.

Departments form a tree through ``parent_id``; a supervisor sees the
department they supervise and everything below it
(see ``department_service.get_accessible_department_ids_for``).
"""

from datetime import datetime, timezone

from kpiboard.models import db

DEPARTMENT_CATEGORIES = frozenset({"Faculty", "Unit"})


department_supervisors = db.Table(
    "department_supervisors",
    db.Column("department_id", db.Integer,
              db.ForeignKey("departments.id", ondelete="CASCADE"), primary_key=True),
    db.Column("user_id", db.Integer,
              db.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
)


class Department(db.Model):
    __tablename__ = "departments"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False, unique=True)
    description = db.Column(db.Text, default="")
    category = db.Column(db.String(20), nullable=False, default="Faculty",
                         comment="Faculty | Unit")
    parent_id = db.Column(
        db.Integer,
        db.ForeignKey("departments.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))

    parent = db.relationship("Department", remote_side=[id], backref="children")
    supervisors = db.relationship("User", secondary=department_supervisors, lazy="selectin")

    def to_summary(self):
        return {"id": self.id, "name": self.name, "description": self.description or ""}

    def to_dict(self):
        return {
            **self.to_summary(),
            "category": self.category,
            "parentId": self.parent_id,
            "supervisorIds": [u.id for u in self.supervisors],
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Department {self.id}: {self.name}>"
