"""
Source and target connector interfaces plus in-memory implementations.
"""

from ccmigrate.connectors.in_memory import InMemorySourceConnector, InMemoryTargetConnector
from ccmigrate.connectors.interface import (
    IMPORT_FLOW_ARTIFACTS,
    IMPORT_RESTORE,
    SourceConnector,
    TargetConnector,
)

__all__ = [
    "SourceConnector",
    "TargetConnector",
    "InMemorySourceConnector",
    "InMemoryTargetConnector",
    "IMPORT_RESTORE",
    "IMPORT_FLOW_ARTIFACTS",
]
