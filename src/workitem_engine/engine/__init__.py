"""
workitem_engine.engine

Cascade/aggregation engine for the Campaign -> Project -> Task hierarchy.

Responsibilities:
- State machine definitions per kind.
- History capture before suspending transitions.
- Budget aggregation from children into parents.
- Bottom-up closure and top-down propagation of state changes.
"""

# Package marker; components are imported directly from submodules.


# --- Module Notes -----------------------------------------------------------
# Nothing in this package commits. Transaction boundaries belong to
# `workitem_engine.services.work_item_service`.
