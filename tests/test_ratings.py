"""Tests for services/ratings.py: Elo updates, K strategies, rollover and recency."""

import math
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from edge_engine.core.errors import LeakageViolation
from edge_engine.core.model_config import RatingConfig
from edge_engine.models import GameResult
from edge_engine.services.rating_store import RatingStore
from edge_engine.services.ratings import RatingEngine, actual_score, expected_score

T0 = datetime(2023, 9, 2, 18, 0, tzinfo=timezone.utc)


def _game(event_id, home, away, hs, as_, days=0, season=2023, week=1):
    return GameResult(
        event_id=event_id,
        season=season,
        week=week,
        home_team_id=home,
        away_team_id=away,
        start_time=T0 + timedelta(days=days),
        home_score=hs,
        away_score=as_,
    )


def _engine(config=None):
    store = RatingStore(config or RatingConfig.plain())
    return RatingEngine(store), store


# ---------------------------------------------------------------------------
# Expected / actual score
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("a, b", [
    (1500, 1500), (1600, 1400), (1420, 1710), (1500.5, 1499.5),
])
def test_expected_scores_are_complementary(a, b):
    assert expected_score(a, b) + expected_score(b, a) == pytest.approx(1.0)


def test_expected_score_equal_ratings():
    assert expected_score(1500, 1500) == pytest.approx(0.5)


def test_expected_score_400_gap():
    assert expected_score(1900, 1500) == pytest.approx(10 / 11)


@pytest.mark.parametrize("hs, as_, expected", [(28, 14, 1.0), (14, 28, 0.0), (21, 21, 0.5)])
def test_actual_score(hs, as_, expected):
    assert actual_score(hs, as_) == expected


# ---------------------------------------------------------------------------
# Updates
# ---------------------------------------------------------------------------

class TestPlainUpdates:

    def test_first_game_between_new_teams(self):
        engine, store = _engine()
        update = engine.update(_game("g1", "A", "B", 24, 17))
        assert update.home_after == pytest.approx(1510.0)
        assert update.away_after == pytest.approx(1490.0)
        assert store.get("A", 2023).games_played == 1
        assert store.get("A", 2023).as_of == T0

    def test_zero_sum(self):
        engine, _ = _engine()
        engine.update(_game("g1", "A", "B", 24, 17))
        update = engine.update(_game("g2", "C", "A", 10, 35, days=7))
        assert update.home_delta + update.away_delta == pytest.approx(0.0, abs=1e-12)

    def test_three_game_sequence_matches_hand_computation(self):
        engine, store = _engine()
        engine.process([
            _game("g3", "A", "B", 20, 20, days=14),
            _game("g1", "A", "B", 24, 17),
            _game("g2", "B", "A", 31, 3, days=7),
        ])

        # g1: equal ratings, home win
        a, b = 1500.0 + 10.0, 1500.0 - 10.0
        # g2: B at home beats A
        exp_b = 1.0 / (1.0 + 10.0 ** ((a - b) / 400.0))
        d2 = 20.0 * (1.0 - exp_b)
        a, b = a - d2, b + d2
        # g3: A at home ties B
        exp_a = 1.0 / (1.0 + 10.0 ** ((b - a) / 400.0))
        d3 = 20.0 * (0.5 - exp_a)
        a, b = a + d3, b - d3

        assert store.get("A", 2023).rating == pytest.approx(a, abs=1e-6)
        assert store.get("B", 2023).rating == pytest.approx(b, abs=1e-6)
        assert store.get("A", 2023).games_played == 3

    def test_process_skips_unfinished_games(self):
        engine, store = _engine()
        pending = GameResult("g9", 2023, 2, "A", "B", T0 + timedelta(days=7))
        updates = engine.process([_game("g1", "A", "B", 24, 17), pending])
        assert len(updates) == 1
        assert store.get("A", 2023).games_played == 1

    def test_update_requires_final_score(self):
        engine, _ = _engine()
        with pytest.raises(ValueError):
            engine.update(GameResult("g9", 2023, 1, "A", "B", T0))


class TestOrdering:

    def test_out_of_order_game_raises(self):
        engine, _ = _engine()
        engine.update(_game("g2", "A", "B", 24, 17, days=7))
        with pytest.raises(LeakageViolation):
            engine.update(_game("g1", "C", "D", 24, 17))

    def test_rating_including_same_start_is_not_reused(self):
        engine, _ = _engine()
        engine.update(_game("g1", "A", "B", 24, 17))
        with pytest.raises(LeakageViolation):
            engine.update(_game("g1b", "A", "C", 24, 17))


# ---------------------------------------------------------------------------
# K and margin strategies
# ---------------------------------------------------------------------------

class TestStrategies:

    def test_dynamic_k_new_then_established(self):
        engine, store = _engine(RatingConfig.dynamic_k())
        team = store.get("A", 2023)
        assert engine.base_k(team) == 32.0
        team.games_played = 5
        assert engine.base_k(team) == 20.0

    def test_blowout_cap_reduces_k(self):
        engine, store = _engine(RatingConfig.dynamic_k())
        home, away = store.get("A", 2023), store.get("B", 2023)
        assert engine.game_k(home, away, 30) < engine.game_k(home, away, 10)
        assert engine.game_k(home, away, 30) == pytest.approx(16.0)

    def test_blowout_cap_threshold_is_strict(self):
        engine, store = _engine(RatingConfig.dynamic_k())
        home, away = store.get("A", 2023), store.get("B", 2023)
        assert engine.game_k(home, away, 21) == pytest.approx(32.0)

    def test_log_margin_multiplier(self):
        engine, _ = _engine(RatingConfig.margin_weighted())
        assert engine.margin_multiplier(10) == pytest.approx(math.log(11))
        assert engine.margin_multiplier(-10) == pytest.approx(math.log(11))
        # ties still move ratings
        assert engine.margin_multiplier(0) == pytest.approx(math.log(2))

    def test_plain_has_no_margin_term(self):
        engine, _ = _engine()
        assert engine.margin_multiplier(35) == 1.0

    def test_independent_mode_uses_per_side_k(self):
        cfg = replace(RatingConfig.dynamic_k(), zero_sum=False)
        engine, store = _engine(cfg)
        store.get("A", 2023).games_played = 6
        update = engine.update(_game("g1", "A", "B", 24, 17))
        assert update.k_home == 20.0
        assert update.k_away == 32.0
        assert update.home_delta == pytest.approx(10.0)
        assert update.away_delta == pytest.approx(-16.0)

    def test_home_bonus_shifts_expectation(self):
        engine, _ = _engine(replace(RatingConfig.plain(), home_bonus_elo=65.0))
        update = engine.update(_game("g1", "A", "B", 24, 17))
        assert update.expected_home == pytest.approx(expected_score(1565.0, 1500.0))
        assert update.home_delta < 10.0


# ---------------------------------------------------------------------------
# Season rollover
# ---------------------------------------------------------------------------

def test_reset_season_regresses_toward_baseline():
    engine, store = _engine()
    store.seed("A", 2022, 1600.0)
    store.seed("B", 2022, 1400.0)
    rolled = engine.reset_season(2022, 2023)
    assert rolled == 2
    gap_before = 1600.0 - 1400.0
    gap_after = store.get("A", 2023).rating - store.get("B", 2023).rating
    assert gap_after == pytest.approx(gap_before * 0.67)
    assert gap_before - gap_after == pytest.approx(gap_before * (1 - 0.67))
    assert store.get("A", 2023).seeded_from_prior is True


# ---------------------------------------------------------------------------
# Recency boost
# ---------------------------------------------------------------------------

class TestRecency:

    def test_disabled_by_default(self):
        engine, _ = _engine()
        engine.update(_game("g1", "A", "B", 24, 17))
        assert engine.recency_boost("A", 2023) == 0.0

    def test_window_and_decay(self):
        engine, store = _engine(RatingConfig.recency_weighted(window=2))
        engine.update(_game("g1", "A", "B", 24, 17))
        engine.update(_game("g2", "A", "C", 24, 17, days=7))
        engine.update(_game("g3", "A", "D", 24, 17, days=14))
        deltas = engine.recent_deltas("A", 2023)
        assert len(deltas) == 2
        newest, older = deltas[-1], deltas[0]
        expected = (newest + 0.7 * older) / 1.7 * 0.2
        assert engine.recency_boost("A", 2023) == pytest.approx(expected)

    def test_boost_does_not_touch_stored_rating(self):
        engine, store = _engine(RatingConfig.recency_weighted())
        engine.update(_game("g1", "A", "B", 24, 17))
        before = store.get("A", 2023).rating
        engine.recency_boost("A", 2023)
        assert store.get("A", 2023).rating == before
