"""
Tests — Per-user send quota and retry backoff

Run:
  pytest tests/test_rate_limit.py -v
"""
from datetime import timedelta

import pytest

from config.settings import RateLimitConfig, TierLimits
from core.backoff import BackoffPolicy, compute_backoff_seconds
from core.rate_limit import (
    RateLimitReason, RateLimitState, WINDOW, apply_send, evaluate, normalize_window,
)
from models.schemas import RateTier
from support import NOW


@pytest.fixture
def config():
    return RateLimitConfig(free=TierLimits(0, 2), paid=TierLimits(0, 30))


# ──────────────────────────────────────────────────────────────
#  Window normalization
# ──────────────────────────────────────────────────────────────


class TestNormalizeWindow:

    def test_never_started_window_opens_now(self):
        state = normalize_window(NOW, RateLimitState())
        assert state.window_started_at == NOW
        assert state.sent_in_window == 0

    def test_expired_window_resets_counter(self):
        state = RateLimitState(window_started_at=NOW - WINDOW, sent_in_window=2)
        fresh = normalize_window(NOW, state)
        assert fresh.window_started_at == NOW
        assert fresh.sent_in_window == 0

    def test_live_window_untouched(self):
        state = RateLimitState(window_started_at=NOW - timedelta(minutes=59), sent_in_window=1)
        assert normalize_window(NOW, state) is state

    def test_keeps_last_sent_at(self):
        last = NOW - timedelta(hours=3)
        state = RateLimitState(last_sent_at=last, window_started_at=last, sent_in_window=5)
        assert normalize_window(NOW, state).last_sent_at == last


# ──────────────────────────────────────────────────────────────
#  Evaluate
# ──────────────────────────────────────────────────────────────


class TestEvaluate:

    def test_fresh_user_allowed(self, config):
        decision = evaluate(NOW, RateLimitState(), RateTier.FREE, config)
        assert decision.allowed
        assert decision.reason is None
        assert decision.remaining == 2

    def test_free_tier_hits_hourly_cap(self, config):
        state = RateLimitState(last_sent_at=NOW - timedelta(minutes=5),
                               window_started_at=NOW - timedelta(minutes=30), sent_in_window=2)
        decision = evaluate(NOW, state, RateTier.FREE, config)
        assert not decision.allowed
        assert decision.reason == RateLimitReason.MAX_PER_HOUR
        assert decision.next_allowed_at == NOW + timedelta(minutes=30)
        assert decision.remaining == 0

    def test_paid_tier_has_more_room(self, config):
        state = RateLimitState(window_started_at=NOW - timedelta(minutes=30), sent_in_window=2)
        decision = evaluate(NOW, state, RateTier.PAID, config)
        assert decision.allowed
        assert decision.remaining == 28

    def test_expired_window_allows_again(self, config):
        state = RateLimitState(window_started_at=NOW - timedelta(hours=2), sent_in_window=2)
        decision = evaluate(NOW, state, RateTier.FREE, config)
        assert decision.allowed
        assert decision.normalized.sent_in_window == 0
        assert decision.normalized.window_started_at == NOW

    def test_min_interval_checked_first(self):
        config = RateLimitConfig(free=TierLimits(60, 2), paid=TierLimits(0, 30))
        state = RateLimitState(last_sent_at=NOW - timedelta(seconds=20),
                               window_started_at=NOW - timedelta(minutes=1), sent_in_window=2)
        decision = evaluate(NOW, state, RateTier.FREE, config)
        assert decision.reason == RateLimitReason.MIN_INTERVAL
        assert decision.next_allowed_at == NOW + timedelta(seconds=40)

    def test_min_interval_elapsed(self):
        config = RateLimitConfig(free=TierLimits(60, 2), paid=TierLimits(0, 30))
        state = RateLimitState(last_sent_at=NOW - timedelta(seconds=60),
                               window_started_at=NOW - timedelta(minutes=1), sent_in_window=1)
        assert evaluate(NOW, state, RateTier.FREE, config).allowed

    def test_zero_min_interval_disables_gap(self, config):
        state = RateLimitState(last_sent_at=NOW, window_started_at=NOW, sent_in_window=1)
        assert evaluate(NOW, state, RateTier.FREE, config).allowed

    def test_evaluate_never_mutates(self, config):
        state = RateLimitState(window_started_at=NOW - timedelta(hours=2), sent_in_window=2)
        evaluate(NOW, state, RateTier.FREE, config)
        assert state.sent_in_window == 2


# ──────────────────────────────────────────────────────────────
#  Apply send
# ──────────────────────────────────────────────────────────────


class TestApplySend:

    def test_first_send_opens_window(self, config):
        state = apply_send(NOW, RateLimitState(), RateTier.FREE, config)
        assert state == RateLimitState(last_sent_at=NOW, window_started_at=NOW, sent_in_window=1)

    def test_counts_within_window(self, config):
        started = NOW - timedelta(minutes=10)
        state = RateLimitState(window_started_at=started, sent_in_window=1)
        new = apply_send(NOW, state, RateTier.FREE, config)
        assert new.window_started_at == started
        assert new.sent_in_window == 2
        assert new.last_sent_at == NOW

    def test_stale_window_restarts_at_one(self, config):
        state = RateLimitState(window_started_at=NOW - timedelta(hours=1, seconds=1), sent_in_window=2)
        new = apply_send(NOW, state, RateTier.FREE, config)
        assert new.window_started_at == NOW
        assert new.sent_in_window == 1

    def test_two_sends_exhaust_free_tier(self, config):
        state = apply_send(NOW, RateLimitState(), RateTier.FREE, config)
        state = apply_send(NOW + timedelta(minutes=1), state, RateTier.FREE, config)
        decision = evaluate(NOW + timedelta(minutes=2), state, RateTier.FREE, config)
        assert not decision.allowed
        assert decision.next_allowed_at == NOW + WINDOW


# ──────────────────────────────────────────────────────────────
#  Backoff
# ──────────────────────────────────────────────────────────────


class TestBackoff:

    @pytest.mark.parametrize("attempt,expected", [
        (1, 30), (2, 60), (3, 120), (4, 240), (5, 480), (6, 960), (7, 1800), (20, 1800),
    ])
    def test_doubles_and_caps(self, attempt, expected):
        assert compute_backoff_seconds(attempt, 30, 1800) == expected

    def test_attempt_zero_uses_base(self):
        assert compute_backoff_seconds(0, 30, 1800) == 30

    def test_policy_retry_budget(self):
        policy = BackoffPolicy(max_attempts=5)
        assert policy.should_retry(4)
        assert not policy.should_retry(5)

    def test_next_run_at(self):
        policy = BackoffPolicy(base_seconds=30, max_seconds=1800)
        assert policy.next_run_at(NOW, 2) == NOW + timedelta(seconds=60)
