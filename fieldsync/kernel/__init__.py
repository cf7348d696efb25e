"""Kernel utilities shared across the scheduler.

Rules:
- Kernel code must not import from scheduling, sources or notifications.
- Kernel utilities should stay small and stable; avoid business logic here.
"""
