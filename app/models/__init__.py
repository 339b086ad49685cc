"""
QMS Change Management Core
Database models package.

All models import the shared ``db`` instance from here; the application
factory imports every model module so Flask-Migrate sees the full metadata.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
