"""
Data inventory and field mapping.

Each mapped field carries its PII type, sensitivity, legal basis, purposes and
retention rule, plus the sources, destinations, transformations and access
patterns seen for it. Inventory items describe the systems that store data.
"""

from __future__ import annotations
