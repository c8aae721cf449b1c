"""Indexing package: snapshots, card refs and run state."""

from .models import (
    CardDefinition,
    CardResource,
    DirectoryEntry,
    EntryResult,
    ErrorResult,
    FieldDefinition,
    ModuleEntry,
    ModuleError,
    RunState,
    SearchEntry,
    Stats,
)
from .refs import AncestorOfRef, CardRef, ExportedCardRef, FieldOfRef, internal_key_for
from .state import IndexState, RunPhase

__all__ = [
    "AncestorOfRef",
    "CardDefinition",
    "CardRef",
    "CardResource",
    "DirectoryEntry",
    "EntryResult",
    "ErrorResult",
    "ExportedCardRef",
    "FieldDefinition",
    "FieldOfRef",
    "IndexState",
    "ModuleEntry",
    "ModuleError",
    "RunPhase",
    "RunState",
    "SearchEntry",
    "Stats",
    "internal_key_for",
]
