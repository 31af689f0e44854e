"""Services Layer — stateful asyncio components of the sync core.

Invariants:
    - Each component owns its state (dirty sets, structure cache, working memory)
    - Collaborators are injected through constructors, never looked up globally

Design Decisions:
    - One component per file, helpers split out when a file grows (ADR: no god objects)
"""
