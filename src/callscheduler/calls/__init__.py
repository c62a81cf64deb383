"""
Scheduled calls and call attempts.

NOTE:
This package __init__ MUST be lightweight.
Do NOT import SQLAlchemy models here, otherwise importing any submodule
(e.g. callscheduler.calls.registry) triggers ORM mapping at import time.
"""

__all__: list[str] = []
