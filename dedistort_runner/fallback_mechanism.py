"""
Fallback-Mechanismen für tile-dedistort

Beschleuniger-Pfade (GPU-resident, Batch-Kernel) fallen bei Fehlern
transparent auf den CPU-Pfad zurück.
"""

import logging
import threading
from typing import Callable, Any, Optional

from dedistort_runner.error_handling import PreconditionError


class FallbackMechanism:
    """
    Zentrale Fallback-Strategie-Implementierung
    """
    def __init__(self, logger_name: str = 'FallbackMechanism'):
        """
        Initialisiert Fallback-Mechanismus

        Args:
            logger_name: Name des Loggers
        """
        self.logger = logging.getLogger(logger_name)
        self._lock = threading.Lock()
        self.fallback_count = 0

    def execute_with_fallback(
        self,
        primary_func: Callable[..., Any],
        fallback_func: Optional[Callable[..., Any]] = None,
        fallback_handler: Optional[Callable[[Exception], Any]] = None,
        *args,
        **kwargs
    ) -> Any:
        """
        Führt Funktion mit optionalen Fallback-Strategien aus

        Vorbedingungsfehler werden nie abgefangen.

        Args:
            primary_func: Primäre Verarbeitungsfunktion
            fallback_func: Alternative Verarbeitungsfunktion
            fallback_handler: Fehler-Behandlungsfunktion
            *args: Positionsargumente
            **kwargs: Schlüsselwortargumente

        Returns:
            Verarbeitungsergebnis
        """
        try:
            return primary_func(*args, **kwargs)

        except PreconditionError:
            raise

        except Exception as primary_error:
            self.logger.warning(f"Primäre Funktion fehlgeschlagen: {primary_error}")
            with self._lock:
                self.fallback_count += 1

            if fallback_func is not None:
                try:
                    self.logger.info("Fallback-Strategie wird ausgeführt")
                    return fallback_func(*args, **kwargs)
                except Exception as fallback_error:
                    self.logger.error(f"Fallback fehlgeschlagen: {fallback_error}")

            if fallback_handler is not None:
                try:
                    self.logger.info("Fehler-Behandlungsfunktion wird ausgeführt")
                    return fallback_handler(primary_error)
                except Exception as handler_error:
                    self.logger.error(f"Fehler-Handler fehlgeschlagen: {handler_error}")

            raise primary_error
