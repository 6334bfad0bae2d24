"""Package for turning news articles into structured intelligence briefings."""

__all__ = ["analysis", "config", "history", "models"]
