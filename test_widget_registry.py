import threading

import pytest

from error_handling import UnknownWidgetError


def test_mount_returns_mounted_widget(registry, clock):
    widget_id, widget = registry.mount()
    assert len(widget_id) == 12
    assert widget.mounted
    assert registry.get(widget_id) is widget
    assert clock.pending() == 1


def test_unknown_widget_raises(registry):
    with pytest.raises(UnknownWidgetError):
        registry.get('missing')


def test_unmount_releases_widget(registry, clock):
    widget_id, widget = registry.mount()
    assert registry.unmount(widget_id) is True
    assert not widget.mounted
    assert clock.pending() == 0
    assert registry.unmount(widget_id) is False
    with pytest.raises(UnknownWidgetError):
        registry.get(widget_id)


def test_verified_signal_tracks_widget_callback(registry):
    widget_id, widget = registry.mount()
    assert registry.is_verified(widget_id) is False

    widget.is_human_like = lambda: True
    widget.on_input_change(widget.session.challenge_text)
    widget.verify()
    assert registry.is_verified(widget_id) is True

    widget.refresh()
    assert registry.is_verified(widget_id) is False


def test_unknown_widget_is_never_verified(registry):
    assert registry.is_verified('nope') is False


def test_events_update_analytics_and_logger(registry, event_logger):
    widget_id, widget = registry.mount()
    widget.verify()          # flagged as bot
    widget.on_paste()

    stats = registry.get_stats()
    assert stats['widgets_mounted'] == 1
    assert stats['bot_detected'] == 1
    assert stats['verifications'] == 1
    assert stats['rejected_inputs'] == 1
    assert stats['challenges_generated'] == 2
    assert stats['active_widgets'] == 1
    assert [e['type'] for e in stats['recent_events']] == ['bot_detected', 'input_rejected']

    assert 'bot_detected' in event_logger.types()
    _, data = event_logger.events[-1]
    assert data['widget_id'] == widget_id


def test_locked_widgets_counted(registry):
    _, widget = registry.mount()
    for _ in range(3):
        widget.verify()
    stats = registry.get_stats()
    assert stats['locked_widgets'] == 1
    assert stats['lockouts'] == 1


def test_cleanup_idle_unmounts_stale_widgets(registry, clock):
    stale_id, stale = registry.mount()
    clock.advance(60_000)
    fresh_id, _ = registry.mount()

    assert registry.cleanup_idle(30_000) == 1
    assert not stale.mounted
    with pytest.raises(UnknownWidgetError):
        registry.get(stale_id)
    assert registry.get(fresh_id).mounted


def test_get_refreshes_idle_timer(registry, clock):
    widget_id, _ = registry.mount()
    clock.advance(20_000)
    registry.get(widget_id)
    clock.advance(20_000)
    assert registry.cleanup_idle(30_000) == 0


def verify_widget(widget):
    widget.is_human_like = lambda: True
    widget.on_input_change(widget.session.challenge_text)
    assert widget.verify().verified is True


def test_consume_takes_verified_widget_once(registry, clock):
    widget_id, widget = registry.mount()
    verify_widget(widget)

    assert registry.consume(widget_id) is True
    assert not widget.mounted
    assert clock.pending() == 0
    assert registry.is_verified(widget_id) is False
    assert registry.consume(widget_id) is False


def test_consume_leaves_unverified_widget_mounted(registry):
    widget_id, widget = registry.mount()
    assert registry.consume(widget_id) is False
    assert registry.get(widget_id) is widget
    assert registry.consume('missing') is False


def test_concurrent_consume_succeeds_once(registry):
    widget_id, widget = registry.mount()
    verify_widget(widget)

    barrier = threading.Barrier(8)
    results = []

    def take():
        barrier.wait()
        results.append(registry.consume(widget_id))

    threads = [threading.Thread(target=take) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(results) == [False] * 7 + [True]


def test_rotation_clears_verified_signal(registry, clock):
    widget_id, widget = registry.mount()
    verify_widget(widget)

    clock.advance(120_000)
    assert registry.is_verified(widget_id) is False
    assert registry.consume(widget_id) is False


def test_signal_reported_while_unmounting_is_dropped(registry):
    widget_id, widget = registry.mount()
    unmount = widget.unmount

    def rotate_then_unmount():
        # A rotation timer firing just before the widget stops
        widget.refresh()
        unmount()

    widget.unmount = rotate_then_unmount
    assert registry.unmount(widget_id) is True
    assert widget_id not in registry._verified


def test_failed_mount_releases_reserved_id(registry, clock, monkeypatch):
    def broken_generate(self, trigger='refresh'):
        raise RuntimeError('rng exhausted')

    monkeypatch.setattr('challenge_widget.ChallengeWidget.generate', broken_generate)

    with pytest.raises(RuntimeError):
        registry.mount()
    assert registry._widgets == {}
    assert registry._verified == {}
    assert registry.get_stats()['widgets_mounted'] == 0
    assert clock.pending() == 0
