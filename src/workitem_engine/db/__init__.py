"""
workitem_engine.db

Persistence package (SQLAlchemy async).

Responsibilities:
- Provide ORM models, engine/session setup, and repositories.
"""

# Package marker.


# --- Module Notes -----------------------------------------------------------
# The engine only talks to the `RecordStore` protocol; this package is the default
# implementation of that protocol and can be swapped without touching cascade logic.
