"""
Outbound call scheduling and call-lifecycle engine.
"""

__version__ = "0.1.0"
