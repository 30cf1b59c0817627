"""Source adapters for HealthSync reconciliation.

Each adapter implements the SourceAdapter ABC and handles:
- Reading one origin format (archive, CSV, folder, API)
- Resolving every reading to the user's local calendar day
- Emitting RawRecords plus granular DataPoints
- Reporting per-file failures without aborting the run

Available adapters:
    HealthConnectAdapter — Android Health Connect export archive (zip + SQLite)
    DriveBackupAdapter   — Google Drive backup folder (Health Connect + RENPHO)
    RenphoAdapter        — RENPHO smart-scale CSV export
    MiFitnessAdapter     — Mi Fitness / Zepp API (app token or credentials)
"""

from src.reconcile.adapters.health_connect import HealthConnectAdapter
from src.reconcile.adapters.google_drive import DriveBackupAdapter
from src.reconcile.adapters.renpho import RenphoAdapter
from src.reconcile.adapters.mi_fitness import MiFitnessAdapter

__all__ = [
    "HealthConnectAdapter",
    "DriveBackupAdapter",
    "RenphoAdapter",
    "MiFitnessAdapter",
]

# Registry: source_id → adapter class
ADAPTER_REGISTRY: dict[str, type] = {
    "health_connect": HealthConnectAdapter,
    "google_drive": DriveBackupAdapter,
    "renpho": RenphoAdapter,
    "mi_fitness": MiFitnessAdapter,
}


def get_adapter(source_id: str) -> "type":
    """Return the adapter class for a given source slug.

    Args:
        source_id: e.g. 'health_connect', 'google_drive', 'renpho', 'mi_fitness'

    Returns:
        The adapter class (not an instance).

    Raises:
        KeyError: If the source_id is not registered.
    """
    if source_id not in ADAPTER_REGISTRY:
        raise KeyError(
            f"No adapter registered for source '{source_id}'. "
            f"Available: {list(ADAPTER_REGISTRY)}"
        )
    return ADAPTER_REGISTRY[source_id]
