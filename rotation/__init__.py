"""
rotation — AutoDJ rotation and selection engine.

Picks the next track for a broadcast queue from a clockwheel of slots,
keeps artists/albums/titles apart, evolves track weights and gates listener
requests into the same queue.
"""

from rotation.engine import EngineState, RotationEngine
from rotation.errors import (
    ConfigError,
    InvalidRequestState,
    MetadataUnavailable,
    RequestNotFound,
    RotationError,
)
from rotation.models import (
    AdmissionResult,
    DjMode,
    QueuePosition,
    RequestStatus,
    SelectionMethod,
    SelectionOutcome,
    SlotKind,
)

__all__ = [
    "AdmissionResult",
    "ConfigError",
    "DjMode",
    "EngineState",
    "InvalidRequestState",
    "MetadataUnavailable",
    "QueuePosition",
    "RequestNotFound",
    "RequestStatus",
    "RotationEngine",
    "RotationError",
    "SelectionMethod",
    "SelectionOutcome",
    "SlotKind",
]
