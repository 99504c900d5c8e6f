"""
Retention lifecycle: policies, per-subject retention records, legal holds,
extensions and the periodic sweep that executes expired actions.
"""

from __future__ import annotations
