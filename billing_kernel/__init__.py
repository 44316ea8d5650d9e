"""
Billing Kernel

Shared foundation for the stage-based billing engine:
- Typed error taxonomy with machine-readable codes
- Structured JSON logging with request-scoped context
- Injectable clock for deterministic date handling
- Case lifecycle phases
- SQLAlchemy declarative base and session management
"""

__version__ = "0.1.0"
