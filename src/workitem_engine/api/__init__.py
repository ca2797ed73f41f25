"""
workitem_engine.api

Request Gateway for the work-item engine.

Responsibilities:
- FastAPI app factory and router modules.
- API-layer dependency wiring and request/response models.
"""

# Package marker.


# --- Module Notes -----------------------------------------------------------
# The API layer stays thin: request validation + delegation to WorkItemService.
