from . import maintenance, repair_cascades  # noqa: F401

__all__ = [
    "maintenance",
    "repair_cascades",
]
