"""
Blind Review Engine
Model package.

``db`` is the single Flask-SQLAlchemy handle shared by every model module.
The app factory imports each domain module so that metadata is complete
before ``db.create_all()`` / Alembic autogenerate runs.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
