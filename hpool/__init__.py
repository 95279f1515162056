"""Region-style memory pool with small-block arenas, large allocations, cleanup hooks and a demo."""

__version__ = "0.1.0"
__all__ = ["palloc", "demo"]