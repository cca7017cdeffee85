from .tracker import ID_TYPES, LineageTracker

__all__ = ["ID_TYPES", "LineageTracker"]
