"""
Command-line entry point for diagnosing designs from saved simulations.
"""

from __future__ import annotations

__all__ = ["run"]
