"""Canonical entities and their SQLAlchemy table mappings."""
