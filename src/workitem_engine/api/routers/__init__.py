"""
workitem_engine.api.routers

HTTP routers (health checks, work-item operations).
"""
