"""
statusflow: package root

File: src/statusflow/__init__.py

Purpose
- Rule-driven order status transitions with a durable audit trail.

Import boundary
- Importing the package must not load configuration, open the state DB, or
  configure logging. Submodules are imported on demand.
"""

from __future__ import annotations

__version__ = "0.3.0"

__all__ = ["__version__"]
