"""
Pod Connection Models

SQLAlchemy models and the persistence interface used by the Pod connection subsystem.

Key Components:
- base.py: Declarative base and shared annotated column types
- connection.py: ``SolidConnection`` records, the ``ConnectionStore`` protocol and its
  PostgreSQL implementation
"""
