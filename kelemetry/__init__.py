"""Object diffing, diff and trace caches, span tree transformation and trace queries."""

__version__ = "0.1.0"

__all__ = [
    "backend",
    "diffcache",
    "diffcmp",
    "objectfilter",
    "reader",
    "steps",
    "tfconfig",
    "tracecache",
    "transform",
    "tree",
]