"""Infrastructure Layer — remote store client and cross-cutting concerns.

Invariants:
    - Infrastructure never imports from services/
    - All remote calls wrapped with retry/timeout/error mapping

Design Decisions:
    - Resilient wrapper over raw httpx client (ADR: single responsibility)
"""
