"""
workitem_engine.services

Service-layer package.

Responsibilities:
- Own transaction boundaries and persistence decisions.
- Compose the engine components over one database session.
"""

# Package marker.
