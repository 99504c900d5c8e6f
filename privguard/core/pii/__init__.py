"""
PII classification and anonymization.

Detectors look at a (field name, value) pair and report a confidence; the
engine keeps the best match above the configured threshold and replaces the
value using the anonymizer mapped to its PII type. Raw values never leave
this package in a classification.
"""

from __future__ import annotations
