from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Callable, Optional

from .reconciler import (
    Checkpoint,
    ChunkLayout,
    PendingTarget,
    RestoreDecision,
    SavedProgress,
    ViewportMetrics,
    capture_checkpoint,
    initial_checkpoint,
    resolve_resume_point,
)

logger = logging.getLogger(__name__)

DEFAULT_MIN_INTERVAL_MS = 800


class SessionState(str, Enum):
    IDLE = "idle"
    RESTORING = "restoring"
    SETTLED = "settled"


class ReadingSession:
    """
    Position bookkeeping for one open reader.

    A section goes ``idle`` (opened, content not laid out yet) ->
    ``restoring`` (a saved position is being applied) -> ``settled``.
    Checkpoints are only produced once settled, so a half-applied restore
    can never overwrite the position it is restoring. Scroll checkpoints
    are throttled; hide/unload checkpoints are not, because the page may
    be gone before the next scroll.

    ``sink`` receives every emitted checkpoint, typically
    ``ProgressService.save_checkpoint`` bound to a viewer and book.
    """

    def __init__(
        self,
        sink: Optional[Callable[[Checkpoint], None]] = None,
        min_interval_ms: int = DEFAULT_MIN_INTERVAL_MS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.sink = sink
        self.min_interval_ms = min_interval_ms
        self.clock = clock
        self.state = SessionState.IDLE
        self.section_id: Optional[str] = None
        self.section_index = 0
        self.progress: Optional[SavedProgress] = None
        self.progress_loaded = False
        self.pending: Optional[PendingTarget] = None
        self._fetch_token = 0
        self._content_ready = False
        self._last_emit_at: Optional[float] = None
        self._initial_emitted = False

    def load_progress(self, progress: Optional[SavedProgress]) -> None:
        """
        Record the saved progress once it has been fetched. ``None`` means
        the viewer has never opened this book.
        """
        self.progress = progress
        self.progress_loaded = True

    @property
    def is_new_reader(self) -> bool:
        return self.progress_loaded and self.progress is None

    def open_section(self, section_id: str, section_index: int = 0) -> int:
        self._fetch_token += 1
        if self.pending is not None and self.pending.section_id != section_id:
            # The reader navigated away before the jump landed.
            self.pending = None
        self.section_id = section_id
        self.section_index = section_index
        self.state = SessionState.IDLE
        self._content_ready = False
        return self._fetch_token

    def jump_to(self, target: PendingTarget, section_index: int = 0) -> int:
        """Open the target's section with an explicit position to land on."""
        self.pending = target
        return self.open_section(target.section_id, section_index)

    def apply_fetch(self, token: int, section_id: str) -> bool:
        if token != self._fetch_token or section_id != self.section_id:
            logger.debug("Discarding stale fetch for section %s", section_id)
            return False
        self._content_ready = True
        return True

    def begin_restore(self, viewport: ViewportMetrics, layout: Optional[ChunkLayout] = None) -> RestoreDecision:
        """
        Decide where the freshly laid out section should be scrolled to.
        Returns a ``top`` decision, without changing state, while there is
        nothing to restore yet.
        """
        if not self.section_id or not self._content_ready:
            return RestoreDecision(scroll_top=0, rule="top")
        decision = resolve_resume_point(
            self.section_id,
            viewport,
            layout,
            progress=self.progress,
            pending=self.pending,
        )
        if decision.rule == "pending_target":
            self.pending = None
            self.state = SessionState.SETTLED
        elif decision.restores:
            self.state = SessionState.RESTORING
        else:
            self.state = SessionState.SETTLED
            self._maybe_emit_initial()
        logger.debug("Section %s resumes at %s via %s", self.section_id, decision.scroll_top, decision.rule)
        return decision

    def finish_restore(self) -> None:
        if self.state == SessionState.RESTORING:
            self.state = SessionState.SETTLED

    def on_scroll(self, viewport: ViewportMetrics, layout: Optional[ChunkLayout] = None) -> Optional[Checkpoint]:
        if not self._can_emit():
            return None
        now = self.clock()
        if self._last_emit_at is not None and (now - self._last_emit_at) * 1000 < self.min_interval_ms:
            return None
        return self._emit(viewport, layout)

    def on_visibility_hidden(
        self, viewport: ViewportMetrics, layout: Optional[ChunkLayout] = None
    ) -> Optional[Checkpoint]:
        if not self._can_emit():
            return None
        return self._emit(viewport, layout)

    def on_page_hide(self, viewport: ViewportMetrics, layout: Optional[ChunkLayout] = None) -> Optional[Checkpoint]:
        return self.on_visibility_hidden(viewport, layout)

    def _can_emit(self) -> bool:
        return bool(self.section_id) and self.progress_loaded and self.state == SessionState.SETTLED

    def _emit(self, viewport: ViewportMetrics, layout: Optional[ChunkLayout]) -> Checkpoint:
        checkpoint = capture_checkpoint(self.section_id, self.section_index, viewport, layout)
        self._last_emit_at = self.clock()
        self._deliver(checkpoint)
        return checkpoint

    def _maybe_emit_initial(self) -> None:
        if not self.is_new_reader or self._initial_emitted:
            return
        self._initial_emitted = True
        self._deliver(initial_checkpoint(self.section_id, self.section_index))

    def _deliver(self, checkpoint: Checkpoint) -> None:
        # The session's own view of the saved position follows what it reports.
        self.progress = SavedProgress.from_checkpoint(checkpoint)
        if self.sink is not None:
            self.sink(checkpoint)
