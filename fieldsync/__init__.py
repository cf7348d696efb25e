"""FieldSync multi-source synchronization scheduler."""

__version__ = "0.1.0"
