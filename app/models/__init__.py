"""
Professional Licensing Portal
Shared Flask-SQLAlchemy extension.

Usage:
    from app.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
