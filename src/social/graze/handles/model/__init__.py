"""
Database Models

This package defines the database models for the optional PostgreSQL binding store, using the
SQLAlchemy async ORM.

Key Models:
- base.py: Base SQLAlchemy model with common type definitions
- bindings.py: DomainBinding, one row per claimed domain

The default deployment keeps bindings in a JSON file and does not need a database at all.
"""
