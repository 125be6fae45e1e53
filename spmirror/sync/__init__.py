"""Sync engine for spmirror - incremental, concurrent download mirroring."""

from .engine import SyncEngine, SyncStats
from .filters import NameFilter
from .inspector import (
    DateFilters,
    LocalStateInspector,
    MismatchPolicy,
    SyncAction,
    SyncDecision,
)
from .localfs import LocalFilesystem, LocalTimestamps
from .operations import SyncOperations
from .partitioner import DateRangePartitioner, TimeWindow, next_step, tile
from .scheduler import DownloadScheduler, SyncTask, TaskKind
from .state import CreationTimeStore
from .walker import Container, ContainerKind, RemoteTreeWalker

__all__ = [
    "SyncEngine",
    "SyncStats",
    "NameFilter",
    "DateFilters",
    "LocalStateInspector",
    "MismatchPolicy",
    "SyncAction",
    "SyncDecision",
    "LocalFilesystem",
    "LocalTimestamps",
    "SyncOperations",
    "DateRangePartitioner",
    "TimeWindow",
    "next_step",
    "tile",
    "DownloadScheduler",
    "SyncTask",
    "TaskKind",
    "CreationTimeStore",
    "Container",
    "ContainerKind",
    "RemoteTreeWalker",
]
