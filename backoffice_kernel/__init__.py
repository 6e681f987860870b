"""
backoffice_kernel -- Shared infrastructure for the back-office engine.

Typed exceptions, structured logging, the injectable clock, and the
SQLAlchemy declarative base with session helpers.  Nothing here imports
from backoffice_batch except ``db.engine.create_tables``, which loads the
model modules so their tables are registered.
"""
