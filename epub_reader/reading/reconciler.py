"""
Resume-point reconciliation for the scrolling reader.

The reader saves where it was as a mix of raw scroll metrics and a
layout-independent anchor (chunk index plus offset inside that chunk, and
a scroll ratio). When a section is shown again the layout may differ:
another window size, another font scale. ``resolve_resume_point`` picks
the most precise saved signal that is still trustworthy for the current
layout, walking ``RESTORE_RULES`` in order. Each rule either yields a
scroll target or falls through to the next one; the last rule always
yields the top of the section.

Everything here is pure. Nothing touches storage and nothing raises.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Callable, List, NamedTuple, Optional, Tuple

from ..importing.models import UserBookRecord

logger = logging.getLogger(__name__)

CLIENT_HEIGHT_TOLERANCE = 6
SCROLL_HEIGHT_TOLERANCE = 24
MIN_RESTORE_RATIO = 0.001


@dataclass
class ViewportMetrics:
    scroll_top: float = 0
    scroll_height: float = 0
    client_height: float = 0

    @property
    def max_scroll(self) -> float:
        return max(1, self.scroll_height - self.client_height)


@dataclass
class ChunkBox:
    """Rendered position of one ``[data-chunk-index]`` element."""

    index: int
    top: float
    height: float


@dataclass
class ChunkLayout:
    """The rendered chunk elements of a section, in document order."""

    boxes: List[ChunkBox] = field(default_factory=list)

    def top_of(self, chunk_index: int) -> Optional[float]:
        for box in self.boxes:
            if box.index == chunk_index:
                return box.top
        return None

    def locate(self, scroll_top: float) -> Tuple[int, float]:
        """First chunk whose bottom edge is below ``scroll_top``, and how far into it the viewport starts."""
        for box in self.boxes:
            if box.top + box.height > scroll_top:
                return box.index, max(0, scroll_top - box.top)
        return 0, 0


@dataclass
class SavedProgress:
    section_id: Optional[str]
    section_index: int = 0
    chunk_index: int = 0
    chunk_offset: float = 0
    scroll_ratio: Optional[float] = None
    scroll_top: Optional[float] = None
    scroll_height: Optional[float] = None
    client_height: Optional[float] = None

    @classmethod
    def from_user_book(cls, record: UserBookRecord) -> "SavedProgress":
        return cls(
            section_id=record.last_section_id,
            section_index=record.last_section_index or 0,
            chunk_index=record.last_chunk_index or 0,
            chunk_offset=record.last_chunk_offset or 0,
            scroll_ratio=record.last_scroll_ratio,
            scroll_top=record.last_scroll_top,
            scroll_height=record.last_scroll_height,
            client_height=record.last_client_height,
        )

    @classmethod
    def from_checkpoint(cls, checkpoint: "Checkpoint") -> "SavedProgress":
        return cls(
            section_id=checkpoint.section_id,
            section_index=checkpoint.section_index,
            chunk_index=checkpoint.chunk_index,
            chunk_offset=checkpoint.chunk_offset,
            scroll_ratio=checkpoint.scroll_ratio,
            scroll_top=checkpoint.scroll_top,
            scroll_height=checkpoint.scroll_height,
            client_height=checkpoint.client_height,
        )


@dataclass
class PendingTarget:
    """An explicit jump, e.g. to a bookmark. Wins over saved progress."""

    section_id: str
    scroll_top: Optional[float] = None
    chunk_index: Optional[int] = None
    offset: float = 0


@dataclass
class Checkpoint:
    section_id: str
    section_index: int = 0
    chunk_index: int = 0
    chunk_offset: float = 0
    scroll_ratio: float = 0
    scroll_top: Optional[float] = None
    scroll_height: Optional[float] = None
    client_height: Optional[float] = None


@dataclass(frozen=True)
class RestoreDecision:
    scroll_top: float
    rule: str

    @property
    def restores(self) -> bool:
        return self.rule != "top"


@dataclass
class RestoreContext:
    section_id: str
    viewport: ViewportMetrics
    layout: ChunkLayout
    progress: Optional[SavedProgress] = None
    pending: Optional[PendingTarget] = None


class RestoreRule(NamedTuple):
    name: str
    applies: Callable[[RestoreContext], bool]
    target: Callable[[RestoreContext], Optional[float]]


def should_restore(progress: Optional[SavedProgress]) -> bool:
    if progress is None:
        return False
    return (
        (progress.scroll_top or 0) > 0
        or (progress.scroll_ratio or 0) > MIN_RESTORE_RATIO
        or (progress.chunk_index or 0) > 0
        or (progress.chunk_offset or 0) > 0
    )


def _progress_applies(ctx: RestoreContext) -> bool:
    progress = ctx.progress
    return progress is not None and progress.section_id == ctx.section_id and should_restore(progress)


def _pending_applies(ctx: RestoreContext) -> bool:
    return ctx.pending is not None and ctx.pending.section_id == ctx.section_id


def _pending_target(ctx: RestoreContext) -> Optional[float]:
    pending = ctx.pending
    if pending.scroll_top is not None:
        return pending.scroll_top
    if pending.chunk_index is None:
        return None
    top = ctx.layout.top_of(pending.chunk_index)
    return None if top is None else top + (pending.offset or 0)


def _scroll_top_target(ctx: RestoreContext) -> Optional[float]:
    progress = ctx.progress
    if progress.scroll_top is None:
        return None
    # Without the saved metrics there is nothing to compare against, so the raw value is used as is.
    if progress.client_height is None or progress.scroll_height is None:
        return progress.scroll_top
    height_delta = abs(ctx.viewport.client_height - progress.client_height)
    scroll_delta = abs(ctx.viewport.scroll_height - progress.scroll_height)
    if height_delta > CLIENT_HEIGHT_TOLERANCE or scroll_delta > SCROLL_HEIGHT_TOLERANCE:
        return None
    return progress.scroll_top


def _chunk_target(ctx: RestoreContext) -> Optional[float]:
    top = ctx.layout.top_of(ctx.progress.chunk_index or 0)
    return None if top is None else top + (ctx.progress.chunk_offset or 0)


def _ratio_target(ctx: RestoreContext) -> Optional[float]:
    ratio = ctx.progress.scroll_ratio
    if ratio is None:
        return None
    return round(ratio * ctx.viewport.max_scroll)


RESTORE_RULES: Tuple[RestoreRule, ...] = (
    RestoreRule("pending_target", _pending_applies, _pending_target),
    RestoreRule("scroll_top", _progress_applies, _scroll_top_target),
    RestoreRule("chunk", _progress_applies, _chunk_target),
    RestoreRule("ratio", _progress_applies, _ratio_target),
    RestoreRule("top", lambda ctx: True, lambda ctx: 0),
)


def resolve_resume_point(
    section_id: str,
    viewport: ViewportMetrics,
    layout: Optional[ChunkLayout] = None,
    progress: Optional[SavedProgress] = None,
    pending: Optional[PendingTarget] = None,
    rules: Tuple[RestoreRule, ...] = RESTORE_RULES,
) -> RestoreDecision:
    ctx = RestoreContext(
        section_id=section_id,
        viewport=viewport,
        layout=layout or ChunkLayout(),
        progress=progress,
        pending=pending,
    )
    for rule in rules:
        try:
            if not rule.applies(ctx):
                continue
            target = rule.target(ctx)
            if target is None or not math.isfinite(target):
                continue
        except (TypeError, ValueError, ArithmeticError, AttributeError):
            logger.debug("Restore rule %s failed for section %s", rule.name, section_id, exc_info=True)
            continue
        return RestoreDecision(scroll_top=target, rule=rule.name)
    return RestoreDecision(scroll_top=0, rule="top")


def capture_checkpoint(
    section_id: str,
    section_index: int,
    viewport: ViewportMetrics,
    layout: Optional[ChunkLayout] = None,
) -> Checkpoint:
    scroll_top = viewport.scroll_top
    ratio = min(1, max(0, scroll_top / viewport.max_scroll))
    chunk_index, offset = (layout or ChunkLayout()).locate(scroll_top)
    return Checkpoint(
        section_id=section_id,
        section_index=max(0, section_index),
        chunk_index=chunk_index,
        chunk_offset=offset,
        scroll_ratio=ratio,
        scroll_top=scroll_top,
        scroll_height=viewport.scroll_height,
        client_height=viewport.client_height,
    )


def initial_checkpoint(section_id: str, section_index: int = 0) -> Checkpoint:
    """Zero position recorded the first time a reader opens a book."""
    return Checkpoint(section_id=section_id, section_index=max(0, section_index), scroll_top=0)
