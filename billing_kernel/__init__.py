"""
Billing Kernel

Infrastructure for the farm billing & settlement core:
- Typed exceptions with machine-readable codes
- Structured JSON logging
- SQLAlchemy base classes, money helpers and engine/session management
- Per-key locking and monotonic sequences for deterministic ordering
"""

__version__ = "0.1.0"
