"""
Fehlerbehandlung für tile-dedistort

Fehlerhierarchie und Decorators zur Fehlerprotokollierung.

Nur Vorbedingungsfehler (PreconditionError) erreichen den Aufrufer.
Beschleuniger- und Ressourcenfehler werden intern abgefangen und führen
zum CPU-Fallback.
"""

import functools
import logging
import traceback
from typing import Callable, Optional


class ProcessingError(Exception):
    """Basisklasse für Verarbeitungsfehler"""
    def __init__(self, message: str, original_error: Optional[Exception] = None):
        super().__init__(message)
        self.original_error = original_error
        self.log_error()

    def log_error(self):
        """Protokolliert Fehlerdetails"""
        logger = logging.getLogger('ProcessingError')
        logger.error(f"Processing Error: {self}")
        if self.original_error:
            logger.error(f"Original Error: {self.original_error}")
            logger.error(traceback.format_exc())


class PreconditionError(ProcessingError, ValueError):
    """Ungültige Eingabe: Bildgrößen, Kanäle, leere Listen, Tile-Größe"""

    def log_error(self):
        logging.getLogger('ProcessingError').debug(f"Precondition failed: {self}")


class AcceleratorError(ProcessingError):
    """Beschleunigerfehler: nicht unterstützte Tile-Größe, Speicher, Kernel"""

    def log_error(self):
        logging.getLogger('ProcessingError').warning(f"Accelerator Error: {self}")


class MemoryManagementError(ProcessingError):
    """Speichermanagement-Fehler"""
    pass


class ResourceAllocationError(ProcessingError):
    """Ressourcenzuweisungsfehler"""
    pass


def require(condition: bool, message: str) -> None:
    """
    Prüft eine Vorbedingung

    Args:
        condition: Zu prüfende Bedingung
        message: Fehlermeldung

    Raises:
        PreconditionError: wenn die Bedingung nicht erfüllt ist
    """
    if not condition:
        raise PreconditionError(message)


def robust_processing(func: Callable) -> Callable:
    """
    Decorator für Speicher- und Ressourcenfehler

    MemoryError wird zu MemoryManagementError, ResourceWarning zu
    ResourceAllocationError. Andere Fehler werden unverändert weitergereicht.

    Args:
        func: Zu dekorierende Funktion

    Returns:
        Dekorierte Funktion
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        logger = logging.getLogger(func.__module__)
        try:
            return func(*args, **kwargs)
        except MemoryError as e:
            logger.error(f"Memory Error in {func.__name__}: {e}")
            raise MemoryManagementError(
                f"Nicht genügend Arbeitsspeicher: {e}",
                original_error=e
            )
        except ResourceWarning as e:
            logger.error(f"Resource Warning in {func.__name__}: {e}")
            raise ResourceAllocationError(
                f"Ressourcen-Problem: {e}",
                original_error=e
            )
    return wrapper


def log_exception(func: Callable) -> Callable:
    """
    Decorator zum Protokollieren von Ausnahmen

    Vorbedingungsfehler werden nicht protokolliert, nur weitergereicht.

    Args:
        func: Zu dekorierende Funktion

    Returns:
        Dekorierte Funktion mit Fehlerprotokollierung
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        logger = logging.getLogger(func.__module__)
        try:
            return func(*args, **kwargs)
        except PreconditionError:
            raise
        except Exception as e:
            logger.error(f"Fehler in {func.__name__}: {e}")
            logger.error(traceback.format_exc())
            raise
    return wrapper
