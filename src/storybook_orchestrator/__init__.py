"""Task orchestration and stream reconciliation for illustrated story generation."""

__version__ = "0.1.0"
