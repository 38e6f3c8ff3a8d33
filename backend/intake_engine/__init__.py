"""Dynamic intake-form engine and its FastAPI backend."""

__version__ = "0.1.0"
