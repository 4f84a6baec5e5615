"""
Dealchain — SQLAlchemy models.

``db`` is the single Flask-SQLAlchemy handle; models live in sibling
modules and are imported by ``create_app`` so metadata is complete.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
