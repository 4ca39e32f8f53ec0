"""
Resilient UI
------------
Synchronization and verification layer for black-box browser regression
tests: readiness waits, fallback element location and verified actions.
"""

__version__ = "0.1.0"
