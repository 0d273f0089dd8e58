"""
Ressourcenüberwachung für tile-dedistort

Liefert Host-Speicherkennzahlen für das Speicherbudget des
Host-Device-Kontexts und für Laufprotokolle.
"""

import logging
import os
from typing import Any, Dict, Optional

import psutil


class ResourceManager:
    """
    Ressourcenmanagement mit konfigurierbaren Schwellwerten
    """
    def __init__(self, memory_threshold: float = 80.0):
        """
        Args:
            memory_threshold: Speicher-Schwellwert in Prozent
        """
        self.logger = logging.getLogger(__name__)
        self.memory_threshold = memory_threshold
        self.total_memory = psutil.virtual_memory().total
        self.peak_memory_usage = 0.0

    def check_resources(self) -> bool:
        """
        Überprüft die Speicherauslastung

        Returns:
            bool: Ressourcen ausreichend
        """
        memory = psutil.virtual_memory()
        self.peak_memory_usage = max(self.peak_memory_usage, memory.percent)
        if memory.percent > self.memory_threshold:
            self.logger.warning(f"Ressourcenlimit überschritten: Speicher={memory.percent}%")
            return False
        return True

    def get_resource_status(self) -> Dict[str, Any]:
        """
        Liefert Ressourcenstatus

        Returns:
            Dict mit Ressourcendetails
        """
        memory = psutil.virtual_memory()
        return {
            'memory_total_gb': self.total_memory / (1024**3),
            'memory_used_percent': memory.percent,
            'memory_used_gb': memory.used / (1024**3),
            'peak_memory_usage_percent': self.peak_memory_usage,
            'cpu_count': psutil.cpu_count(logical=True) or 1,
        }


def total_host_memory() -> int:
    """Feste Gesamtgröße des Hauptspeichers in Bytes (nicht der freie Speicher)."""
    return int(psutil.virtual_memory().total)


def default_worker_count(max_workers: Optional[int] = None) -> int:
    """Anzahl Worker-Threads, begrenzt durch die logischen CPUs."""
    cpus = psutil.cpu_count(logical=True) or os.cpu_count() or 1
    if max_workers is None or max_workers <= 0:
        return int(cpus)
    return int(min(max_workers, cpus * 4))
