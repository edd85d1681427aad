#!/usr/bin/env python3
"""
Registry of mounted challenge widgets for the text captcha service
"""

import hashlib
import random
import threading
import time
from collections import deque

from challenge_widget import ChallengeWidget
from error_handling import UnknownWidgetError
from monitoring import captcha_logger
from widget_clock import SystemClock


class WidgetRegistry:
    def __init__(self, clock=None, config=None, event_logger=None, rng_factory=None):
        self.clock = clock or SystemClock()
        self.config = dict(config or {})
        self.event_logger = event_logger or captcha_logger
        self.rng_factory = rng_factory or random.Random

        self._widgets = {}      # widget_id -> ChallengeWidget
        self._last_seen = {}    # widget_id -> ms timestamp
        self._verified = {}     # widget_id -> last reported signal
        self.lock = threading.Lock()
        # Widget callbacks arrive holding the widget's lock; they only take this one
        self.stats_lock = threading.Lock()

        self.analytics = {
            'widgets_mounted': 0,
            'challenges_generated': 0,
            'verifications': 0,
            'successful_verifications': 0,
            'bot_detected': 0,
            'mismatches': 0,
            'lockouts': 0,
            'rejected_verifications': 0,
            'rejected_inputs': 0,
            'recent_events': deque(maxlen=50)
        }

    def _new_widget_id(self):
        return hashlib.md5(f"{time.time()}{random.random()}".encode()).hexdigest()[:12]

    def mount(self, ip=None):
        """Create and mount a widget. Returns (widget_id, widget)."""
        with self.lock:
            widget_id = self._new_widget_id()
            while widget_id in self._widgets:
                widget_id = self._new_widget_id()
            # Reserve the id before the widget starts emitting events
            self._widgets[widget_id] = None

        widget = None
        try:
            widget = ChallengeWidget(
                on_verify=lambda verified: self._record_signal(widget_id, verified),
                clock=self.clock,
                rng=self.rng_factory(),
                config=self.config,
                event_hook=lambda event_type, data: self.record_event(widget_id, event_type, data, ip),
            )
            widget.mount()
        except Exception:
            if widget is not None:
                widget.unmount()
            with self.lock:
                self._widgets.pop(widget_id, None)
            with self.stats_lock:
                self._verified.pop(widget_id, None)
            raise

        with self.lock:
            self._widgets[widget_id] = widget
            self._last_seen[widget_id] = self.clock.now_ms()
        with self.stats_lock:
            self.analytics['widgets_mounted'] += 1

        return widget_id, widget

    def get(self, widget_id):
        with self.lock:
            widget = self._widgets.get(widget_id)
            if widget is None:
                raise UnknownWidgetError(f"No active widget with id {widget_id}")
            self._last_seen[widget_id] = self.clock.now_ms()
            return widget

    def is_verified(self, widget_id):
        """Latest signal the widget reported to its host"""
        with self.stats_lock:
            return self._verified.get(widget_id, False)

    def consume(self, widget_id):
        """Take a verified widget out of the registry in one step.

        Returns False and leaves the widget mounted when it is unknown or
        not verified, so each verified widget is consumed at most once.
        """
        with self.lock:
            with self.stats_lock:
                if self._verified.get(widget_id) is not True:
                    return False
                widget = self._widgets.pop(widget_id, None)
                self._last_seen.pop(widget_id, None)
                self._verified.pop(widget_id, None)
        if widget is None:
            return False
        self._release(widget_id, widget)
        return True

    def unmount(self, widget_id):
        with self.lock:
            widget = self._widgets.pop(widget_id, None)
            self._last_seen.pop(widget_id, None)
        if widget is None:
            with self.stats_lock:
                self._verified.pop(widget_id, None)
            return False
        self._release(widget_id, widget)
        return True

    def _release(self, widget_id, widget):
        # Timers may still report a signal until the widget is unmounted
        widget.unmount()
        with self.stats_lock:
            self._verified.pop(widget_id, None)

    def unmount_all(self):
        with self.lock:
            widget_ids = list(self._widgets)
        for widget_id in widget_ids:
            self.unmount(widget_id)

    def cleanup_idle(self, max_idle_ms):
        """Unmount widgets untouched for longer than max_idle_ms"""
        cutoff = self.clock.now_ms() - max_idle_ms
        with self.lock:
            idle = [widget_id for widget_id, seen in self._last_seen.items() if seen < cutoff]
        for widget_id in idle:
            self.unmount(widget_id)
        return len(idle)

    def _record_signal(self, widget_id, verified):
        with self.stats_lock:
            self._verified[widget_id] = verified

    def record_event(self, widget_id, event_type, data, ip=None):
        counters = {
            'challenge_generated': ('challenges_generated',),
            'verification_succeeded': ('verifications', 'successful_verifications'),
            'verification_failed': ('verifications', 'mismatches'),
            'bot_detected': ('verifications', 'bot_detected'),
            'locked_out': ('lockouts',),
            'verification_rejected': ('rejected_verifications',),
            'input_rejected': ('rejected_inputs',),
        }

        with self.stats_lock:
            for key in counters.get(event_type, ()):
                self.analytics[key] += 1
            if event_type != 'challenge_generated':
                self.analytics['recent_events'].append({
                    'type': event_type,
                    'widget_id': widget_id,
                    'timestamp': self.clock.now_ms(),
                    'data': data
                })

        self.event_logger.log_captcha_event(event_type, dict(data, widget_id=widget_id), ip)

    def get_stats(self):
        with self.lock:
            widgets = [w for w in self._widgets.values() if w is not None]
        locked = sum(1 for w in widgets if w.is_locked)

        with self.stats_lock:
            stats = {k: v for k, v in self.analytics.items() if k != 'recent_events'}
            recent_events = list(self.analytics['recent_events'])[-20:]

        total = stats['verifications']
        stats.update({
            'active_widgets': len(widgets),
            'locked_widgets': locked,
            'success_rate': round(stats['successful_verifications'] / total * 100, 2) if total else 0,
            'bot_detection_rate': round(stats['bot_detected'] / total * 100, 2) if total else 0,
            'recent_events': recent_events
        })
        return stats
