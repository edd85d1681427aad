#!/usr/bin/env python3
"""
Typed-text challenge widget with behavioral bot heuristics

One ChallengeWidget owns one ChallengeSession. The session is only changed
through the widget's transition methods: generate/refresh, the telemetry
hooks (pointer moves and keystrokes) and verify. Failed verifications count
towards a lockout; the lockout expires on a timer from the injected clock.
"""

import logging
import random
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import numpy as np

from widget_clock import SystemClock, TimerHandle

logger = logging.getLogger('text_captcha.widget')

# Ambiguous glyphs (I, O, l, o, 0, 1) are left out
CHALLENGE_CHARSET = "ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnpqrstuvwxyz23456789!@#$%"

DEFAULT_CONFIG = {
    'challenge_length': 6,
    'rotation_interval_ms': 120000,
    'max_failures': 3,
    'lockout_ms': 30000,
    'min_elapsed_ms': 1000,
    'min_pointer_moves': 5,
    'min_mean_keystroke_ms': 50,
    'min_keystroke_ms': 100,
}

REASON_VERIFIED = 'verified'
REASON_MISMATCH = 'mismatch'
REASON_BOT = 'bot_suspected'
REASON_LOCKED = 'locked'
REASON_UNMOUNTED = 'unmounted'


@dataclass
class ChallengeSession:
    challenge_text: str = ''
    user_input: str = ''
    verified: bool = False
    failure_count: int = 0
    locked_until: Optional[float] = None
    pointer_move_count: int = 0
    keystroke_intervals: List[float] = field(default_factory=list)
    session_start: float = 0.0
    last_keystroke_at: Optional[float] = None


@dataclass
class VerificationResult:
    verified: bool
    attempts_remaining: int
    locked: bool
    lockout_remaining_ms: float
    reason: str
    suspicion: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'verified': self.verified,
            'attempts_remaining': self.attempts_remaining,
            'locked': self.locked,
            'lockout_remaining_ms': round(self.lockout_remaining_ms),
            'reason': self.reason,
        }


def generate_challenge_text(rng=None, length=6, charset=CHALLENGE_CHARSET) -> str:
    """Draw `length` characters from the charset, with replacement"""
    rng = rng or random
    return ''.join(rng.choice(charset) for _ in range(length))


class ChallengeWidget:
    """Typed challenge with telemetry, heuristic check and lockout"""

    def __init__(self, on_verify: Optional[Callable[[bool], None]] = None,
                 clock=None, rng: Optional[random.Random] = None,
                 config: Optional[Dict[str, Any]] = None,
                 event_hook: Optional[Callable[[str, Dict[str, Any]], None]] = None):
        self.on_verify = on_verify
        self.clock = clock or SystemClock()
        self.rng = rng or random.Random()
        self.config = dict(DEFAULT_CONFIG)
        if config:
            self.config.update(config)
        self.event_hook = event_hook

        self.session = ChallengeSession()
        self.mounted = False
        self._lock = threading.RLock()
        self._rotation_timer: Optional[TimerHandle] = None
        self._lockout_timer: Optional[TimerHandle] = None

    # Lifecycle

    def mount(self):
        """Start the session: first challenge, pointer subscription, rotation timer"""
        with self._lock:
            if self.mounted:
                return
            self.mounted = True
            self.session = ChallengeSession(session_start=self.clock.now_ms())
            self.generate(trigger='mount')
            logger.debug("Widget mounted")

    def unmount(self):
        """Release timers; later events are ignored"""
        with self._lock:
            if not self.mounted:
                return
            self.mounted = False
            for timer in (self._rotation_timer, self._lockout_timer):
                if timer is not None:
                    timer.cancel()
            self._rotation_timer = None
            self._lockout_timer = None
            logger.debug("Widget unmounted")

    def __enter__(self):
        self.mount()
        return self

    def __exit__(self, exc_type, exc_value, tb):
        self.unmount()
        return False

    # Challenge generation

    def generate(self, trigger: str = 'refresh') -> str:
        with self._lock:
            session = self.session
            session.challenge_text = generate_challenge_text(
                self.rng, self.config['challenge_length'])
            session.user_input = ''
            session.verified = False
            session.keystroke_intervals = []
            session.last_keystroke_at = None
            session.session_start = self.clock.now_ms()

            if self._rotation_timer is None or not self._rotation_timer.active:
                self._rotation_timer = self.clock.call_every(
                    self.config['rotation_interval_ms'], self._on_rotation_timer)

            self._emit('challenge_generated', {'trigger': trigger})
            self._notify(False)
            return session.challenge_text

    def refresh(self) -> str:
        """Refresh button"""
        with self._lock:
            if not self.mounted:
                return self.session.challenge_text
            return self.generate(trigger='refresh')

    def _on_rotation_timer(self):
        with self._lock:
            if self.mounted:
                self.generate(trigger='rotation')

    # Telemetry

    def on_pointer_move(self):
        with self._lock:
            if self.mounted:
                self.session.pointer_move_count += 1

    def on_input_change(self, value: str):
        with self._lock:
            if not self.mounted:
                return
            session = self.session
            now = self.clock.now_ms()
            if session.last_keystroke_at is not None:
                session.keystroke_intervals.append(now - session.last_keystroke_at)
            session.user_input = value
            session.last_keystroke_at = now

    def on_paste(self) -> bool:
        return self._reject_input('paste')

    def on_drop(self) -> bool:
        return self._reject_input('drop')

    def _reject_input(self, kind: str) -> bool:
        if self.mounted:
            self._emit('input_rejected', {'kind': kind})
        return False

    # Heuristic

    def suspicion_reasons(self) -> List[str]:
        """Triggered bot indicators for the current session; empty means human-like"""
        session = self.session
        reasons = []

        elapsed = self.clock.now_ms() - session.session_start
        if elapsed < self.config['min_elapsed_ms']:
            reasons.append('too_fast')

        if session.pointer_move_count < self.config['min_pointer_moves']:
            reasons.append('too_few_pointer_moves')

        intervals = session.keystroke_intervals
        if intervals:
            if np.mean(intervals) < self.config['min_mean_keystroke_ms']:
                reasons.append('typing_too_fast')
            if all(interval < self.config['min_keystroke_ms'] for interval in intervals):
                reasons.append('typing_inhuman_cadence')

        return reasons

    def is_human_like(self) -> bool:
        return not self.suspicion_reasons()

    # Verification and lockout

    @property
    def attempts_remaining(self) -> int:
        return max(0, self.config['max_failures'] - self.session.failure_count)

    @property
    def is_locked(self) -> bool:
        return self.session.locked_until is not None

    def lockout_remaining_ms(self) -> float:
        if self.session.locked_until is None:
            return 0.0
        return max(0.0, self.session.locked_until - self.clock.now_ms())

    def verify(self) -> VerificationResult:
        with self._lock:
            if not self.mounted:
                return self._result(REASON_UNMOUNTED)

            self._expire_lockout_if_due()
            if self.is_locked:
                self._emit('verification_rejected', {
                    'lockout_remaining_ms': round(self.lockout_remaining_ms())
                })
                return self._result(REASON_LOCKED)

            session = self.session
            suspicion = self.suspicion_reasons()
            if not self.is_human_like():
                session.failure_count += 1
                self._emit('bot_detected', {
                    'reasons': suspicion,
                    'failure_count': session.failure_count,
                })
                self.generate(trigger='failure')
                self._lock_if_exhausted()
                return self._result(REASON_BOT, suspicion)

            if session.user_input == session.challenge_text:
                session.verified = True
                self._emit('verification_succeeded', {
                    'failure_count': session.failure_count,
                })
                self._notify(True)
                return self._result(REASON_VERIFIED)

            session.failure_count += 1
            self._emit('verification_failed', {'failure_count': session.failure_count})
            self.generate(trigger='failure')
            self._lock_if_exhausted()
            return self._result(REASON_MISMATCH)

    def _lock_if_exhausted(self):
        session = self.session
        if session.failure_count < self.config['max_failures']:
            return
        lockout_ms = self.config['lockout_ms']
        session.locked_until = self.clock.now_ms() + lockout_ms
        self._lockout_timer = self.clock.call_later(lockout_ms, self._on_lockout_expired)
        logger.info(f"Widget locked for {lockout_ms}ms after {session.failure_count} failures")
        self._emit('locked_out', {
            'failure_count': session.failure_count,
            'lockout_ms': lockout_ms,
        })

    def _expire_lockout_if_due(self):
        locked_until = self.session.locked_until
        if locked_until is not None and self.clock.now_ms() >= locked_until:
            self._unlock()

    def _on_lockout_expired(self):
        with self._lock:
            if self.mounted and self.is_locked:
                self._unlock()

    def _unlock(self):
        if self._lockout_timer is not None:
            self._lockout_timer.cancel()
            self._lockout_timer = None
        self.session.locked_until = None
        self.session.failure_count = 0
        logger.info("Widget lockout expired")
        self._emit('lockout_expired', {})
        self.generate(trigger='unlock')

    # Reporting

    def _result(self, reason: str, suspicion: Optional[List[str]] = None) -> VerificationResult:
        return VerificationResult(
            verified=self.session.verified,
            attempts_remaining=self.attempts_remaining,
            locked=self.is_locked,
            lockout_remaining_ms=self.lockout_remaining_ms(),
            reason=reason,
            suspicion=list(suspicion or []),
        )

    def status(self) -> Dict[str, Any]:
        """Snapshot for the UI. Never includes the challenge text."""
        with self._lock:
            return {
                'mounted': self.mounted,
                'verified': self.session.verified,
                'attempts_remaining': self.attempts_remaining,
                'locked': self.is_locked,
                'lockout_remaining_ms': round(self.lockout_remaining_ms()),
                'challenge_length': len(self.session.challenge_text),
            }

    def _notify(self, verified: bool):
        if self.on_verify is not None:
            self.on_verify(verified)

    def _emit(self, event_type: str, data: Dict[str, Any]):
        if self.event_hook is not None:
            self.event_hook(event_type, data)
