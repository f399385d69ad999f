"""Python runtime services."""

from .discovery import PythonDiscovery, PythonInstallation
from .service import PythonOperationResult, PythonService, VirtualEnvironmentOptions

__all__ = [
    "PythonDiscovery",
    "PythonInstallation",
    "PythonOperationResult",
    "PythonService",
    "VirtualEnvironmentOptions",
]
