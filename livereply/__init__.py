"""Live-updating chat replies over rate-limited, size-capped messaging APIs."""

__version__ = "0.1.0"
