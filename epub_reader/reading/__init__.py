"""
Reading subsystem exports.
"""

from .library import ChunkPage, LibraryService, SectionContent
from .progress import ProgressService
from .reconciler import (
    RESTORE_RULES,
    Checkpoint,
    ChunkBox,
    ChunkLayout,
    PendingTarget,
    RestoreDecision,
    RestoreRule,
    SavedProgress,
    ViewportMetrics,
    capture_checkpoint,
    initial_checkpoint,
    resolve_resume_point,
    should_restore,
)
from .session import ReadingSession, SessionState

__all__ = [
    "Checkpoint",
    "ChunkBox",
    "ChunkLayout",
    "ChunkPage",
    "LibraryService",
    "PendingTarget",
    "ProgressService",
    "RESTORE_RULES",
    "ReadingSession",
    "RestoreDecision",
    "RestoreRule",
    "SavedProgress",
    "SectionContent",
    "SessionState",
    "ViewportMetrics",
    "capture_checkpoint",
    "initial_checkpoint",
    "resolve_resume_point",
    "should_restore",
]
