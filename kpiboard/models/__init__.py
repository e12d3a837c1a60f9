"""
KPI Board
SQLAlchemy model registry.

All models share the single ``db`` instance defined here; ``create_app``
binds it to the application.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
