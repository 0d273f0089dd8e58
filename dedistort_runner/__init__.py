"""
Tile-Dedistort Runner Package

Logging, Fehlerbehandlung, Fallback-Strategien, Events und FITS-Ein-/Ausgabe
für die Dedistort-Engine.
"""

from .error_handling import (
    AcceleratorError,
    MemoryManagementError,
    PreconditionError,
    ProcessingError,
    ResourceAllocationError,
)
from .logging_config import setup_logging

__all__ = [
    "AcceleratorError",
    "MemoryManagementError",
    "PreconditionError",
    "ProcessingError",
    "ResourceAllocationError",
    "setup_logging",
]
