from epub_reader.reading import (
    ChunkBox,
    ChunkLayout,
    PendingTarget,
    ReadingSession,
    SavedProgress,
    SessionState,
    ViewportMetrics,
    capture_checkpoint,
    resolve_resume_point,
    should_restore,
)


def layout_of(*boxes):
    return ChunkLayout([ChunkBox(index=i, top=top, height=height) for i, top, height in boxes])


LAYOUT = layout_of((0, 0, 300), (1, 300, 300), (2, 600, 400), (3, 1200, 500))


def saved(**overrides):
    values = dict(
        section_id="sec-1",
        section_index=0,
        chunk_index=3,
        chunk_offset=30,
        scroll_ratio=0.25,
        scroll_top=450,
        scroll_height=5000,
        client_height=800,
    )
    values.update(overrides)
    return SavedProgress(**values)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_scroll_top_wins_when_layout_matches():
    viewport = ViewportMetrics(scroll_top=0, scroll_height=5010, client_height=803)
    decision = resolve_resume_point("sec-1", viewport, LAYOUT, progress=saved())
    assert decision.scroll_top == 450
    assert decision.rule == "scroll_top"


def test_scroll_height_drift_falls_back_to_chunk():
    viewport = ViewportMetrics(scroll_height=5025, client_height=800)
    decision = resolve_resume_point("sec-1", viewport, LAYOUT, progress=saved())
    assert decision.rule == "chunk"
    assert decision.scroll_top == 1230


def test_client_height_drift_falls_back_to_chunk():
    viewport = ViewportMetrics(scroll_height=5000, client_height=807)
    assert resolve_resume_point("sec-1", viewport, LAYOUT, progress=saved()).rule == "chunk"


def test_scroll_top_trusted_when_saved_metrics_missing():
    viewport = ViewportMetrics(scroll_height=9000, client_height=300)
    progress = saved(scroll_height=None, client_height=None)
    decision = resolve_resume_point("sec-1", viewport, LAYOUT, progress=progress)
    assert (decision.rule, decision.scroll_top) == ("scroll_top", 450)


def test_ratio_used_when_chunk_is_not_rendered():
    viewport = ViewportMetrics(scroll_height=4000, client_height=800)
    progress = saved(chunk_index=7)
    decision = resolve_resume_point("sec-1", viewport, LAYOUT, progress=progress)
    assert decision.rule == "ratio"
    assert decision.scroll_top == 800


def test_progress_for_another_section_is_ignored():
    viewport = ViewportMetrics(scroll_height=5000, client_height=800)
    decision = resolve_resume_point("sec-2", viewport, LAYOUT, progress=saved())
    assert (decision.rule, decision.scroll_top) == ("top", 0)


def test_zero_progress_stays_at_top():
    progress = saved(chunk_index=0, chunk_offset=0, scroll_ratio=0.0005, scroll_top=0)
    assert not should_restore(progress)
    decision = resolve_resume_point("sec-1", ViewportMetrics(scroll_height=5000, client_height=800), LAYOUT, progress)
    assert decision.rule == "top"


def test_should_restore_thresholds():
    base = dict(chunk_index=0, chunk_offset=0, scroll_ratio=None, scroll_top=None)
    assert not should_restore(None)
    assert not should_restore(saved(**base))
    assert should_restore(saved(**dict(base, scroll_ratio=0.0011)))
    assert should_restore(saved(**dict(base, chunk_index=1)))
    assert should_restore(saved(**dict(base, chunk_offset=0.5)))
    assert should_restore(saved(**dict(base, scroll_top=1)))


def test_pending_target_overrides_saved_progress():
    viewport = ViewportMetrics(scroll_height=5000, client_height=800)
    decision = resolve_resume_point(
        "sec-1", viewport, LAYOUT, progress=saved(), pending=PendingTarget(section_id="sec-1", scroll_top=1234)
    )
    assert (decision.rule, decision.scroll_top) == ("pending_target", 1234)

    by_chunk = resolve_resume_point(
        "sec-1", viewport, LAYOUT, pending=PendingTarget(section_id="sec-1", chunk_index=2, offset=10)
    )
    assert (by_chunk.rule, by_chunk.scroll_top) == ("pending_target", 610)


def test_malformed_progress_degrades_to_top():
    progress = saved(scroll_ratio="half", scroll_top=None, chunk_index=9)
    decision = resolve_resume_point("sec-1", ViewportMetrics(), LAYOUT, progress=progress)
    assert (decision.rule, decision.scroll_top) == ("top", 0)


def test_capture_checkpoint_locates_chunk():
    viewport = ViewportMetrics(scroll_top=450, scroll_height=1300, client_height=800)
    checkpoint = capture_checkpoint("sec-1", 2, viewport, LAYOUT)
    assert checkpoint.chunk_index == 1
    assert checkpoint.chunk_offset == 150
    assert checkpoint.scroll_ratio == 0.9
    assert (checkpoint.scroll_height, checkpoint.client_height) == (1300, 800)


def test_capture_checkpoint_clamps_ratio():
    viewport = ViewportMetrics(scroll_top=900, scroll_height=1000, client_height=800)
    checkpoint = capture_checkpoint("sec-1", 0, viewport, LAYOUT)
    assert checkpoint.scroll_ratio == 1
    assert (checkpoint.chunk_index, checkpoint.chunk_offset) == (2, 300)

    empty = capture_checkpoint("sec-1", 0, viewport, ChunkLayout())
    assert (empty.chunk_index, empty.chunk_offset) == (0, 0)


def test_new_reader_gets_initial_checkpoint_and_throttled_scrolls():
    emitted = []
    clock = FakeClock()
    session = ReadingSession(sink=emitted.append, clock=clock)
    session.load_progress(None)
    token = session.open_section("sec-1", 0)
    assert session.apply_fetch(token, "sec-1")

    decision = session.begin_restore(ViewportMetrics(scroll_height=5000, client_height=800), LAYOUT)
    assert decision.rule == "top"
    assert session.state == SessionState.SETTLED
    assert len(emitted) == 1 and emitted[0].scroll_top == 0 and emitted[0].chunk_index == 0

    viewport = ViewportMetrics(scroll_top=450, scroll_height=5000, client_height=800)
    assert session.on_scroll(viewport, LAYOUT) is not None
    clock.now = 0.5
    assert session.on_scroll(viewport, LAYOUT) is None
    clock.now = 0.9
    assert session.on_scroll(viewport, LAYOUT) is not None
    clock.now = 0.95
    hidden = session.on_visibility_hidden(viewport, LAYOUT)
    assert hidden is not None and hidden.chunk_index == 1
    assert len(emitted) == 4

    # Reopening the section later restores what the session last reported.
    token = session.open_section("sec-1", 0)
    session.apply_fetch(token, "sec-1")
    assert session.begin_restore(ViewportMetrics(scroll_height=5000, client_height=800), LAYOUT).scroll_top == 450


def test_checkpoints_suppressed_while_restoring():
    emitted = []
    clock = FakeClock()
    session = ReadingSession(sink=emitted.append, clock=clock)
    session.load_progress(saved())
    token = session.open_section("sec-1", 0)
    session.apply_fetch(token, "sec-1")

    decision = session.begin_restore(ViewportMetrics(scroll_height=5000, client_height=800), LAYOUT)
    assert (decision.rule, decision.scroll_top) == ("scroll_top", 450)
    assert session.state == SessionState.RESTORING

    viewport = ViewportMetrics(scroll_top=10, scroll_height=5000, client_height=800)
    assert session.on_scroll(viewport, LAYOUT) is None
    assert session.on_page_hide(viewport, LAYOUT) is None
    assert emitted == []

    session.finish_restore()
    assert session.state == SessionState.SETTLED
    checkpoint = session.on_scroll(ViewportMetrics(scroll_top=450, scroll_height=5000, client_height=800), LAYOUT)
    assert checkpoint.scroll_top == 450
    assert emitted == [checkpoint]


def test_nothing_emitted_before_progress_is_loaded():
    emitted = []
    session = ReadingSession(sink=emitted.append, clock=FakeClock())
    token = session.open_section("sec-1", 0)
    session.apply_fetch(token, "sec-1")
    session.begin_restore(ViewportMetrics(scroll_height=5000, client_height=800), LAYOUT)
    assert session.on_page_hide(ViewportMetrics(scroll_top=100), LAYOUT) is None
    assert emitted == []


def test_stale_fetch_is_discarded():
    session = ReadingSession(clock=FakeClock())
    session.load_progress(None)
    first = session.open_section("sec-1", 0)
    second = session.open_section("sec-2", 1)

    assert not session.apply_fetch(first, "sec-1")
    # No content for the current section yet, so nothing to restore.
    assert session.begin_restore(ViewportMetrics(), LAYOUT).rule == "top"
    assert session.state == SessionState.IDLE

    assert session.apply_fetch(second, "sec-2")
    session.begin_restore(ViewportMetrics(), LAYOUT)
    assert session.state == SessionState.SETTLED


def test_bookmark_jump_settles_immediately():
    session = ReadingSession(clock=FakeClock())
    session.load_progress(saved())
    token = session.jump_to(PendingTarget(section_id="sec-1", scroll_top=1234))
    session.apply_fetch(token, "sec-1")
    decision = session.begin_restore(ViewportMetrics(scroll_height=5000, client_height=800), LAYOUT)
    assert (decision.rule, decision.scroll_top) == ("pending_target", 1234)
    assert session.state == SessionState.SETTLED
    assert session.pending is None


def test_switching_section_drops_pending_jump():
    session = ReadingSession(clock=FakeClock())
    session.load_progress(saved(section_id="sec-5", section_index=4, scroll_top=900))
    session.jump_to(PendingTarget(section_id="sec-5", scroll_top=42), section_index=4)

    session.open_section("sec-2", 1)
    assert session.pending is None

    token = session.open_section("sec-5", 4)
    session.apply_fetch(token, "sec-5")
    decision = session.begin_restore(ViewportMetrics(scroll_height=5000, client_height=800), LAYOUT)
    assert (decision.rule, decision.scroll_top) == ("scroll_top", 900)
