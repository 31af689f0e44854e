"""Pydantic Schemas — request/response validation for every wire boundary.

Invariants:
    - Schemas validate at system boundary (bridge input, remote store bodies)
    - Domain types from core/ used for enum fields

Design Decisions:
    - Snapshots stay plain dicts in memory; schemas only shape what crosses HTTP
"""
