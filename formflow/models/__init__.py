"""
Formflow
Shared SQLAlchemy instance.

Usage:
    from formflow.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
