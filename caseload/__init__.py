"""Client-side cache and mutation synchronisation core for the counselor app."""

__version__ = "0.4.0"
