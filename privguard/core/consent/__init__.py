"""
Purpose-bound consent ledger.

One current record per (subject, purpose), mutated in place with a version
counter, plus an append-only history with one snapshot per mutation.
"""

from __future__ import annotations
