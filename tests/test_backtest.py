"""Tests for services/backtest.py walk-forward replay and the promotion gate.

The synthetic league has four teams of fixed strength.  2022 trains the
ratings; 2023 is held out.  Every priced game has an early quote (the bet
line, three hours out) and a late quote (the close, thirty minutes out).
"""

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from edge_engine.core.errors import LeakageViolation
from edge_engine.core.model_config import (
    ConfigRegistry, MarketCoefficients, ModelConfig, RatingConfig,
)
from edge_engine.core.odds_math import implied_prob
from edge_engine.core.settings import EngineSettings
from edge_engine.models import GameResult, MarketLine, SecondaryMetrics
from edge_engine.schemas import BacktestReport, Interval, SubPeriodStats
from edge_engine.services.backtest import (
    DECISION_KEEP, DECISION_REJECT,
    MISSING_BET_LINE, MISSING_CLOSING_LINE, MISSING_RATING, MISSING_RESULT,
    PROJECTION_MARKET,
    BacktestConfig, BacktestHarness, BacktestRun, _direction, _rest_days,
)
from edge_engine.services.feeds import (
    InMemoryGameFeed, InMemoryMarketFeed, InMemoryMetricsFeed, SecondaryMetricsFeed,
)

STRENGTH = {"A": 14, "B": 7, "C": 0, "D": -7}
PAIRINGS = [("A", "D"), ("B", "C"), ("C", "A"), ("D", "B"), ("A", "B"), ("C", "D")]
TRAIN_WEEKS = 6
TEST_WEEKS = 10


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _quotes(event_id, start, open_points, close_points, bet_quote=True):
    rows = []
    if bet_quote:
        for side in ("home", "away"):
            rows.append(MarketLine(event_id, "consensus", "spread", side, open_points,
                                   start - timedelta(hours=3), -110))
    for side in ("home", "away"):
        rows.append(MarketLine(event_id, "consensus", "spread", side, close_points,
                               start - timedelta(minutes=30), -110))
    return rows


def _season(season, weeks):
    games, lines = [], []
    base = datetime(season, 9, 2, 17, 0, tzinfo=timezone.utc)
    for week in range(1, weeks + 1):
        for slot in range(2):
            home, away = PAIRINGS[((week - 1) * 2 + slot) % len(PAIRINGS)]
            start = base + timedelta(days=7 * (week - 1), hours=4 * slot)
            diff = STRENGTH[home] - STRENGTH[away]
            margin = diff + (3 if week % 2 else -4)
            event_id = f"{season}-{week}-{slot}"
            games.append(GameResult(event_id, season, week, home, away, start, 30 + margin, 30))
            open_points = -(diff / 2.0) - 1.0
            lines.extend(_quotes(event_id, start, open_points, open_points - 0.5))
    return games, lines


def _league(extra_games=(), extra_lines=()):
    g22, l22 = _season(2022, TRAIN_WEEKS)
    g23, l23 = _season(2023, TEST_WEEKS)
    games = g22 + g23 + list(extra_games)
    lines = l22 + l23 + list(extra_lines)
    return InMemoryGameFeed(games), InMemoryMarketFeed(lines)


def _harness(config=None, metrics=None, **league_kwargs):
    games, markets = _league(**league_kwargs)
    return BacktestHarness(
        games, markets, metrics,
        config=config or BacktestConfig(test_start_season=2023, bootstrap_iterations=200),
    )


def _monday(week, hour):
    return datetime(2023, 9, 4, hour, 0, tzinfo=timezone.utc) + timedelta(days=7 * (week - 1))


def _report(version, clv, brier, mono, early, late):
    return BacktestReport(
        model_version=version,
        config_fingerprint="cfg-" + version,
        run_fingerprint="run-" + version,
        test_start_season=2023,
        bets=100,
        wins=55,
        losses=45,
        pushes=0,
        win_rate=0.55,
        roi=Interval(estimate=0.05, lower=-0.1, upper=0.2),
        clv=Interval(estimate=clv, lower=clv - 1.0, upper=clv + 1.0),
        brier=Interval(estimate=brier, lower=brier - 0.01, upper=brier + 0.01),
        monotonicity=mono,
        sub_periods=[
            SubPeriodStats(label="early", bets=50, clv=early[0], brier=early[1], monotonicity=early[2]),
            SubPeriodStats(label="late", bets=50, clv=late[0], brier=late[1], monotonicity=late[2]),
        ],
        bootstrap_iterations=1000,
        bootstrap_seed=42,
    )


def _candidate_config():
    return replace(ModelConfig.baseline(), version="v1.1-dynamic-k",
                   rating=RatingConfig.dynamic_k())


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class TestBacktestConfig:

    def test_harness_requires_explicit_config(self):
        games, markets = _league()
        with pytest.raises(ValueError):
            BacktestHarness(games, markets)

    @pytest.mark.parametrize("kwargs", [
        {"bet_lead_minutes": -5},
        {"stake": 0.0},
        {"edge_bucket_bounds": (0.0, 2.0, 1.0)},
    ])
    def test_invalid(self, kwargs):
        with pytest.raises(ValueError):
            BacktestConfig(test_start_season=2023, **kwargs)

    def test_from_settings(self):
        settings = EngineSettings(bootstrap_iterations=250, bootstrap_seed=9,
                                  stake_unit=2.0, bet_lead_minutes=90, book="consensus")
        cfg = BacktestConfig.from_settings(settings, 2023)
        assert cfg.test_start_season == 2023
        assert (cfg.bootstrap_iterations, cfg.bootstrap_seed) == (250, 9)
        assert (cfg.stake, cfg.bet_lead_minutes, cfg.book) == (2.0, 90, "consensus")


# ---------------------------------------------------------------------------
# Replay
# ---------------------------------------------------------------------------

class TestReplay:

    def test_only_test_seasons_are_priced(self):
        run = _harness().run(ModelConfig.baseline())
        assert run.results
        assert {r.season for r in run.results} == {2023}
        assert set(run.report.exclusions) <= {2023}
        assert run.report.bets + sum(run.report.exclusions.get(2023, {}).values()) == TEST_WEEKS * 2

    def test_picks_use_bet_line_and_close(self):
        run = _harness().run(ModelConfig.baseline())
        for bet in run.results:
            assert bet.closing_line == pytest.approx(bet.bet_line - 0.5)
            expected_clv = 0.5 if bet.side == "home" else -0.5
            assert bet.clv == pytest.approx(expected_clv)
            assert bet.price == -110
            assert bet.predicted_prob == pytest.approx(110.0 / 210.0)

    def test_brier_uses_price_implied_probability(self):
        run = _harness().run(ModelConfig.baseline())
        p = implied_prob(-110)
        decided = [bet for bet in run.results if bet.covered is not None]
        assert decided
        for bet in decided:
            outcome = 1.0 if bet.covered else 0.0
            assert bet.brier_component == pytest.approx((p - outcome) ** 2)
        wins = sum(1 for bet in decided if bet.covered)
        expected = (wins * (1.0 - p) ** 2 + (len(decided) - wins) * p ** 2) / len(decided)
        assert run.report.brier.estimate == pytest.approx(expected)

    def test_brier_follows_the_price_of_the_side_taken(self):
        g22, l22 = _season(2022, TRAIN_WEEKS)
        g23, l23 = _season(2023, TEST_WEEKS)
        lines = [replace(l, price=-125 if l.side == "home" else 105) for l in l22 + l23]
        harness = BacktestHarness(
            InMemoryGameFeed(g22 + g23), InMemoryMarketFeed(lines),
            config=BacktestConfig(test_start_season=2023, bootstrap_iterations=200),
        )
        run = harness.run(ModelConfig.baseline())
        assert run.results
        for bet in run.results:
            if bet.side == "home":
                assert bet.price == -125
                assert bet.predicted_prob == pytest.approx(125.0 / 225.0)
            else:
                assert bet.price == 105
                assert bet.predicted_prob == pytest.approx(100.0 / 205.0)

    def test_bet_at_kickoff_reads_the_close(self):
        cfg = BacktestConfig(test_start_season=2023, bootstrap_iterations=200, bet_lead_minutes=0)
        run = _harness(cfg).run(ModelConfig.baseline())
        assert run.results
        for bet in run.results:
            assert bet.bet_line == bet.closing_line
            assert bet.clv == 0.0

    def test_records_match_results(self):
        run = _harness().run(ModelConfig.baseline())
        by_event = {r.event_id: r for r in run.records}
        for bet in run.results:
            assert bet.edge == pytest.approx(by_event[bet.event_id].raw_edge)
            assert bet.side == by_event[bet.event_id].side

    def test_missing_signals_are_counted_as_warnings(self):
        run = _harness().run(ModelConfig.baseline())
        assert run.report.warnings["MISSING_COMPOSITE"] == len(run.records)
        assert run.report.warnings["MISSING_EFFICIENCY"] == len(run.records)

    def test_metrics_feed_removes_composite_warning(self):
        rows = [
            SecondaryMetrics(team, 2023, 0, datetime(2023, 8, 20, tzinfo=timezone.utc),
                             composite_index=float(strength))
            for team, strength in STRENGTH.items()
        ]
        run = _harness(metrics=InMemoryMetricsFeed(rows)).run(ModelConfig.baseline())
        assert "MISSING_COMPOSITE" not in run.report.warnings
        assert run.report.warnings["MISSING_EFFICIENCY"] == len(run.records)

    def test_sub_periods(self):
        run = _harness().run(ModelConfig.baseline())
        periods = {p.label: p for p in run.report.sub_periods}
        assert set(periods) == {"early", "late"}
        assert periods["early"].bets + periods["late"].bets == run.report.bets

    def test_qualified_only(self):
        cfg = BacktestConfig(test_start_season=2023, bootstrap_iterations=200, qualified_only=True)
        run = _harness(cfg).run(ModelConfig.baseline())
        assert all(r.qualifies for r in run.results)
        assert run.report.bets + sum(run.report.exclusions.get(2023, {}).values()) == TEST_WEEKS * 2

    def test_duplicate_event_rejected(self):
        games, lines = _season(2023, 1)
        harness = BacktestHarness(
            InMemoryGameFeed(games + games[:1]), InMemoryMarketFeed(lines),
            config=BacktestConfig(test_start_season=2023),
        )
        with pytest.raises(ValueError, match="duplicate"):
            harness.run(ModelConfig.baseline())


# ---------------------------------------------------------------------------
# Exclusion accounting
# ---------------------------------------------------------------------------

def test_every_skipped_game_has_one_reason():
    new_team = GameResult("x-rating", 2023, 3, "E", "A", _monday(3, 18), 10, 35)
    no_lines = GameResult("x-close", 2023, 4, "A", "C", _monday(4, 18), 28, 14)
    late_only = GameResult("x-bet", 2023, 5, "B", "D", _monday(5, 18), 31, 17)
    pending = GameResult("x-result", 2023, 6, "C", "B", _monday(6, 18))
    extra_lines = (
        _quotes("x-rating", new_team.start_time, 7.0, 7.5)
        + _quotes("x-bet", late_only.start_time, -6.0, -6.5, bet_quote=False)
        + _quotes("x-result", pending.start_time, 2.0, 2.5)
    )
    harness = _harness(extra_games=(new_team, no_lines, late_only, pending),
                       extra_lines=extra_lines)
    report = harness.run(ModelConfig.baseline()).report

    excluded = report.exclusions[2023]
    assert excluded[MISSING_RATING] == 1
    assert excluded[MISSING_CLOSING_LINE] == 1
    assert excluded[MISSING_BET_LINE] == 1
    assert excluded[MISSING_RESULT] == 1
    assert report.bets + sum(excluded.values()) == TEST_WEEKS * 2 + 4


def test_new_team_priced_once_it_has_played():
    first = GameResult("e-1", 2023, 3, "E", "A", _monday(3, 18), 10, 35)
    second = GameResult("e-2", 2023, 4, "E", "D", _monday(4, 18), 24, 21)
    extra_lines = _quotes("e-1", first.start_time, 7.0, 7.5) + _quotes("e-2", second.start_time, 1.0, 0.5)
    run = _harness(extra_games=(first, second), extra_lines=extra_lines).run(ModelConfig.baseline())
    assert run.report.exclusions[2023].get(MISSING_RATING) == 1
    assert "e-2" in {r.event_id for r in run.records}


# ---------------------------------------------------------------------------
# Market-anchored replay
# ---------------------------------------------------------------------------

class TestMarketProjection:
    """Bet twenty minutes out, so the open → close move is visible as line movement."""

    def _config(self):
        return BacktestConfig(test_start_season=2023, bootstrap_iterations=200,
                              bet_lead_minutes=20, projection=PROJECTION_MARKET)

    def test_invalid_mode(self):
        with pytest.raises(ValueError):
            BacktestConfig(test_start_season=2023, projection="oracle")

    def test_every_game_priced_from_line_movement(self):
        run = _harness(self._config()).run(ModelConfig.baseline())
        assert run.report.bets == TEST_WEEKS * 2
        assert run.report.exclusions == {}
        # open → close moved half a point toward home: signal 0.5/3, weight 0.5
        for bet in run.results:
            assert bet.side == "home"
            assert bet.edge == pytest.approx(1.0 / 12.0)
            assert bet.clv == 0.0
            assert bet.predicted_prob == pytest.approx(110.0 / 210.0)

    def test_absent_inputs_are_warnings(self):
        warnings = _harness(self._config()).run(ModelConfig.baseline()).report.warnings
        assert warnings["MISSING_CONFERENCE"] == TEST_WEEKS * 2
        assert warnings["MISSING_INJURIES"] == TEST_WEEKS * 2
        assert warnings["MISSING_WEATHER"] == TEST_WEEKS * 2
        # only week 1 lacks a previous game this season
        assert warnings["MISSING_SITUATIONAL"] == 2
        assert "MISSING_LINE_MOVEMENT" not in warnings
        assert "MISSING_COMPOSITE" not in warnings

    def test_conference_metrics_are_read(self):
        rows = [
            SecondaryMetrics(team, 2023, 0, datetime(2023, 8, 20, tzinfo=timezone.utc),
                             conference=f"conf-{team}", conference_rating=strength / 7.0)
            for team, strength in STRENGTH.items()
        ]
        run = _harness(self._config(), metrics=InMemoryMetricsFeed(rows)).run(ModelConfig.baseline())
        assert "MISSING_CONFERENCE" not in run.report.warnings
        assert any(bet.edge != pytest.approx(1.0 / 12.0) for bet in run.results)

    def test_market_coefficients_change_the_run(self):
        candidate = replace(
            ModelConfig.baseline(), version="v2.0-market",
            market=replace(MarketCoefficients(), sharp_movement_weight=1.0),
        )
        harness = _harness(self._config())
        base = harness.run(ModelConfig.baseline())
        other = harness.run(candidate)
        assert all(bet.edge == pytest.approx(1.0 / 6.0) for bet in other.results)
        assert base.report.run_fingerprint != other.report.run_fingerprint

    def test_market_candidate_goes_through_the_gate(self):
        candidate = replace(
            ModelConfig.baseline(), version="v2.0-market",
            market=replace(MarketCoefficients(), sharp_movement_weight=1.0),
        )
        _, run, decision = _harness(self._config()).validate(ModelConfig.baseline(), candidate)
        # same picks at the same prices: nothing improves
        assert decision.decision == DECISION_REJECT
        assert decision.criteria_improved == []
        assert run.report.decision == DECISION_REJECT


def test_rest_days_within_season():
    game = GameResult("g", 2023, 2, "A", "B", datetime(2023, 9, 9, 21, 0, tzinfo=timezone.utc))
    last_played = {("A", 2023): datetime(2023, 9, 2, 17, 0, tzinfo=timezone.utc),
                   ("B", 2022): datetime(2022, 11, 26, 17, 0, tzinfo=timezone.utc)}
    assert _rest_days(last_played, "A", game) == 7
    assert _rest_days(last_played, "B", game) is None


# ---------------------------------------------------------------------------
# Leakage
# ---------------------------------------------------------------------------

class _KickoffMetricsFeed(SecondaryMetricsFeed):
    """Misbehaving feed that hands back a row stamped at kickoff."""

    def metrics(self, team_id, season):
        return []

    def latest_before(self, team_id, season, before):
        return SecondaryMetrics(team_id, season, 1, before, composite_index=1.0)


def test_leakage_aborts_the_run():
    harness = _harness(metrics=_KickoffMetricsFeed())
    with pytest.raises(LeakageViolation):
        harness.run(ModelConfig.baseline())


# ---------------------------------------------------------------------------
# Determinism
# ---------------------------------------------------------------------------

def test_replay_is_idempotent():
    first = _harness().run(ModelConfig.baseline())
    second = _harness().run(ModelConfig.baseline())
    assert first.report.run_fingerprint == second.report.run_fingerprint
    assert first.report.aggregate_view() == second.report.aggregate_view()


def test_fingerprint_changes_with_config():
    base = _harness().run(ModelConfig.baseline())
    other = _harness().run(_candidate_config())
    assert base.report.config_fingerprint != other.report.config_fingerprint
    assert base.report.run_fingerprint != other.report.run_fingerprint


def test_runs_do_not_share_ratings():
    harness = _harness()
    first = harness.run(ModelConfig.baseline())
    second = harness.run(ModelConfig.baseline())
    assert first.report.aggregate_view() == second.report.aggregate_view()


# ---------------------------------------------------------------------------
# Promotion
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("criterion, base, cand, expected", [
    ("clv", 0.1, 0.3, 1),
    ("clv", 0.3, 0.1, -1),
    ("brier", 0.25, 0.24, 1),
    ("brier", 0.24, 0.25, -1),
    ("monotonicity", None, 0.2, None),
    ("monotonicity", 0.2, None, None),
    ("clv", 0.1, 0.1, 0),
])
def test_direction(criterion, base, cand, expected):
    assert _direction(criterion, base, cand) == expected


class TestPromotion:

    def _compare(self, base_report, cand_report):
        harness = _harness()
        baseline = BacktestRun(report=base_report, results=[])
        candidate = BacktestRun(report=cand_report, results=[])
        decision = harness.compare(baseline, candidate, _candidate_config())
        return decision, candidate

    def test_two_criteria_consistent_is_kept(self):
        base = _report("v1.0-elo", 0.1, 0.25, 0.2, (0.1, 0.25, 0.2), (0.1, 0.25, 0.2))
        cand = _report("v1.1-dynamic-k", 0.3, 0.24, 0.1, (0.2, 0.245, 0.1), (0.4, 0.235, 0.1))
        decision, candidate = self._compare(base, cand)
        assert decision.decision == DECISION_KEEP
        assert decision.promoted
        assert decision.criteria_improved == ["clv", "brier"]
        assert candidate.report.decision == "keep"
        assert decision.acceptance is not None

        registry = ConfigRegistry()
        registry.register(_candidate_config(), decision.acceptance)
        assert registry.load("v1.1-dynamic-k").rating == RatingConfig.dynamic_k()

    def test_sub_period_sign_flip_rejects(self):
        base = _report("v1.0-elo", 0.1, 0.25, 0.2, (0.1, 0.25, 0.2), (0.1, 0.25, 0.2))
        cand = _report("v1.1-dynamic-k", 0.3, 0.24, 0.1, (0.55, 0.245, 0.1), (0.05, 0.235, 0.1))
        decision, candidate = self._compare(base, cand)
        assert decision.decision == DECISION_REJECT
        assert decision.sign_flips == ["clv:late"]
        assert decision.acceptance is None
        assert candidate.report.decision == "reject"

    def test_single_improvement_rejects(self):
        base = _report("v1.0-elo", 0.1, 0.25, 0.2, (0.1, 0.25, 0.2), (0.1, 0.25, 0.2))
        cand = _report("v1.1-dynamic-k", 0.3, 0.26, 0.1, (0.3, 0.26, 0.1), (0.3, 0.26, 0.1))
        decision, _ = self._compare(base, cand)
        assert decision.decision == DECISION_REJECT
        assert decision.criteria_improved == ["clv"]
        assert any("1/3" in note for note in decision.notes)

    def test_unmeasurable_period_is_noted_not_blocking(self):
        base = _report("v1.0-elo", 0.1, 0.25, 0.2, (0.1, None, 0.2), (0.1, 0.25, 0.2))
        cand = _report("v1.1-dynamic-k", 0.3, 0.24, 0.1, (0.2, 0.245, 0.1), (0.4, 0.235, 0.1))
        decision, _ = self._compare(base, cand)
        assert decision.decision == DECISION_KEEP
        assert "brier not measurable in early sub-period" in decision.notes

    def test_empty_sub_period_is_not_measurable(self):
        stats = _harness()._sub_period("early", [])
        assert stats.bets == 0
        assert (stats.clv, stats.brier, stats.monotonicity) == (None, None, None)

    def test_candidate_without_early_bets_is_not_a_clv_flip(self):
        base = _report("v1.0-elo", 0.1, 0.25, 0.2, (0.1, 0.25, 0.2), (0.1, 0.25, 0.2))
        cand = _report("v1.1-dynamic-k", 0.3, 0.24, 0.1, (None, None, None), (0.4, 0.235, 0.1))
        decision, _ = self._compare(base, cand)
        assert decision.decision == DECISION_KEEP
        assert decision.sign_flips == []
        assert "clv not measurable in early sub-period" in decision.notes

    def test_unmeasurable_baseline_monotonicity_is_not_an_improvement(self):
        base = _report("v1.0-elo", 0.1, 0.25, None, (0.1, 0.25, None), (0.1, 0.25, None))
        cand = _report("v1.1-dynamic-k", 0.3, 0.26, 0.4, (0.3, 0.26, 0.4), (0.3, 0.26, 0.4))
        decision, _ = self._compare(base, cand)
        assert decision.decision == DECISION_REJECT
        assert decision.criteria_improved == ["clv"]

    def test_rejected_candidate_cannot_be_registered(self):
        base = _report("v1.0-elo", 0.1, 0.25, 0.2, (0.1, 0.25, 0.2), (0.1, 0.25, 0.2))
        cand = _report("v1.1-dynamic-k", 0.0, 0.26, 0.1, (0.0, 0.26, 0.1), (0.0, 0.26, 0.1))
        decision, _ = self._compare(base, cand)
        assert decision.acceptance is None

    def test_validate_end_to_end(self):
        harness = _harness()
        baseline, candidate, decision = harness.validate(ModelConfig.baseline(), _candidate_config())
        assert decision.decision in (DECISION_KEEP, DECISION_REJECT)
        assert candidate.report.decision == decision.decision
        assert baseline.report.decision is None
        # the decision stamp never changes the aggregates
        fresh = harness.run(_candidate_config())
        assert fresh.report.aggregate_view() == candidate.report.aggregate_view()
