"""
Walk-forward backtest harness and model promotion gate.

Replay
------
Games are replayed in ascending (season, start_time) order.  For each game:

1. If the game is in a test season, price it using only data strictly
   older than kickoff: ratings as of the previous game, the latest metrics
   before kickoff, the bet line read ``bet_lead_minutes`` before kickoff and
   the closing line read just before kickoff.
2. Grade the pick, record CLV and the Brier component.  The Brier
   probability is the one implied by the price of the side taken
   (-110 when the quote carries no price).
3. Fold the result into the ratings (train and test seasons alike).

Any LeakageViolation aborts the run: it is never caught here.  A game that
cannot be priced is skipped and attributed to exactly one reason, tallied
per season.

Projection modes
----------------
``ensemble`` prices the spread from the rating/efficiency ensemble.
``market`` anchors on the bet line and applies the model's
MarketCoefficients: secondary metrics from the metrics feed, line movement
from quotes captured before the bet time and rest days from the game feed.
Injuries and weather have no feed here, so they are neutral and show up as
warnings.  Ratings are still replayed in market mode but are not required.

The train/test boundary is ``BacktestConfig.test_start_season``.  It is part
of the frozen harness config and is never chosen by looking at results.

Promotion
---------
A candidate replaces the baseline only if it improves at least two of
{CLV, Brier, edge-bucket monotonicity} on the test seasons, AND no improved
criterion moves the other way in any sub-period (early vs. late season).
A criterion that one side cannot measure (no graded bets, or fewer than two
populated edge buckets) is not comparable: it neither counts as an
improvement nor as a sign flip.
"""

import hashlib
import json
import logging
from collections import Counter, defaultdict
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence, Tuple

from edge_engine.core.errors import MissingData
from edge_engine.core.model_config import AcceptanceRecord, ModelConfig
from edge_engine.core.odds_math import implied_prob, resolve_price
from edge_engine.core.settings import EngineSettings
from edge_engine.models import (
    NO_SIDE, SPREAD, BetResult, GameContext, GameResult, SecondaryMetrics,
)
from edge_engine.schemas import (
    BacktestReport, EdgeBucketStats, EdgeRecord, Interval, SubPeriodStats,
)
from edge_engine.services.clv import clv_points
from edge_engine.services.edges import EdgeEvaluator
from edge_engine.services.feeds import GameResultFeed, MarketLineFeed, SecondaryMetricsFeed
from edge_engine.services.grading import grade_bet
from edge_engine.services.market import MarketAdjuster
from edge_engine.services.performance import (
    bootstrap_intervals, brier, edge_buckets, mean_clv, monotonicity, summarize,
)
from edge_engine.services.projection import EnsembleProjector
from edge_engine.services.rating_store import RatingStore
from edge_engine.services.ratings import RatingEngine

logger = logging.getLogger(__name__)

# Exclusion reasons
MISSING_RESULT = "MISSING_RESULT"
MISSING_RATING = "MISSING_RATING"
MISSING_CLOSING_LINE = "MISSING_CLOSING_LINE"
MISSING_BET_LINE = "MISSING_BET_LINE"
MISSING_SIGNALS = "MISSING_SIGNALS"
NO_EDGE = "NO_EDGE"
NOT_QUALIFIED = "NOT_QUALIFIED"

PROJECTION_ENSEMBLE = "ensemble"
PROJECTION_MARKET = "market"

DECISION_KEEP = "keep"
DECISION_REJECT = "reject"

CRITERIA = ("clv", "brier", "monotonicity")


# ---------------------------------------------------------------------------
# Configuration and results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BacktestConfig:
    """
    Harness settings, fixed before any run.

    Attributes:
        test_start_season: First held-out season.  Earlier seasons only
            train ratings.
        bet_lead_minutes: The bet line is the latest quote captured before
            ``start_time - bet_lead_minutes``.
        qualified_only: Grade only qualifying edges.  The default grades a
            pick on every game with a non-zero edge, which is what the
            bucket and monotonicity statistics need.
        require_rating_history: Skip games where a team has neither a prior
            season nor a game this season (its rating is the bare baseline).
            Only applies to the ensemble projection.
        sub_period_week: Weeks up to and including this one form the
            "early" sub-period; later weeks form "late".
        projection: ``"ensemble"`` or ``"market"`` (see module docstring).
    """
    test_start_season: int
    bootstrap_iterations: int = 1000
    bootstrap_seed: int = 42
    confidence: float = 0.95
    stake: float = 1.0
    bet_lead_minutes: int = 60
    book: Optional[str] = None
    qualified_only: bool = False
    require_rating_history: bool = True
    edge_bucket_bounds: Tuple[float, ...] = (0.0, 1.0, 2.0, 3.0, 4.0, 5.0)
    sub_period_week: int = 7
    projection: str = PROJECTION_ENSEMBLE

    def __post_init__(self):
        if self.bet_lead_minutes < 0:
            raise ValueError("bet_lead_minutes must be >= 0")
        if self.stake <= 0:
            raise ValueError("stake must be positive")
        if list(self.edge_bucket_bounds) != sorted(set(self.edge_bucket_bounds)):
            raise ValueError("edge_bucket_bounds must be strictly increasing")
        if self.projection not in (PROJECTION_ENSEMBLE, PROJECTION_MARKET):
            raise ValueError(f"unknown projection mode {self.projection!r}")

    @classmethod
    def from_settings(
        cls,
        settings: EngineSettings,
        test_start_season: int,
        projection: str = PROJECTION_ENSEMBLE,
    ) -> "BacktestConfig":
        return cls(
            test_start_season=test_start_season,
            bootstrap_iterations=settings.bootstrap_iterations,
            bootstrap_seed=settings.bootstrap_seed,
            stake=settings.stake_unit,
            bet_lead_minutes=settings.bet_lead_minutes,
            book=settings.book,
            projection=projection,
        )


@dataclass
class BacktestRun:
    report: BacktestReport
    results: List[BetResult]
    records: List[EdgeRecord] = field(default_factory=list)


@dataclass
class PromotionDecision:
    decision: str
    criteria_improved: List[str]
    sign_flips: List[str]
    notes: List[str]
    acceptance: Optional[AcceptanceRecord] = None

    @property
    def promoted(self) -> bool:
        return self.decision == DECISION_KEEP


def _rest_days(
    last_played: Dict[Tuple[str, int], datetime], team_id: str, game: GameResult
) -> Optional[int]:
    last = last_played.get((team_id, game.season))
    if last is None:
        return None
    return (game.start_time.date() - last.date()).days


# ---------------------------------------------------------------------------
# Harness
# ---------------------------------------------------------------------------

class BacktestHarness:

    def __init__(
        self,
        games: GameResultFeed,
        markets: MarketLineFeed,
        metrics: Optional[SecondaryMetricsFeed] = None,
        config: Optional[BacktestConfig] = None,
    ):
        if config is None:
            raise ValueError("a BacktestConfig with an explicit test_start_season is required")
        self.games = games
        self.markets = markets
        self.metrics = metrics
        self.config = config

    def _ordered_games(self) -> List[GameResult]:
        games = sorted(self.games.games(), key=lambda g: (g.season, g.start_time, g.event_id))
        seen = set()
        for game in games:
            if game.event_id in seen:
                raise ValueError(f"duplicate event_id {game.event_id} in game feed")
            seen.add(game.event_id)
        return games

    def _has_history(self, store: RatingStore, team_id: str, season: int) -> bool:
        rating = store.get(team_id, season)
        return rating.games_played > 0 or rating.seeded_from_prior

    def _market_context(
        self,
        game: GameResult,
        home_metrics: Optional[SecondaryMetrics],
        away_metrics: Optional[SecondaryMetrics],
        bet_time: datetime,
        book: str,
        last_played: Dict[Tuple[str, int], datetime],
    ) -> GameContext:
        return GameContext(
            game=game,
            home_metrics=home_metrics,
            away_metrics=away_metrics,
            home_rest_days=_rest_days(last_played, game.home_team_id, game),
            away_rest_days=_rest_days(last_played, game.away_team_id, game),
            line_history=self.markets.history(game.event_id, SPREAD, bet_time, book=book),
        )

    def _price_game(
        self,
        game: GameResult,
        store: RatingStore,
        projector: EnsembleProjector,
        adjuster: MarketAdjuster,
        evaluator: EdgeEvaluator,
        last_played: Dict[Tuple[str, int], datetime],
    ) -> Tuple[Optional[str], Optional[BetResult], Optional[EdgeRecord]]:
        """Return ``(exclusion_reason, bet, record)``; exactly one of reason/bet is set."""
        cfg = self.config
        market_mode = cfg.projection == PROJECTION_MARKET
        if not game.is_final:
            return MISSING_RESULT, None, None
        if not market_mode and cfg.require_rating_history and not (
            self._has_history(store, game.home_team_id, game.season)
            and self._has_history(store, game.away_team_id, game.season)
        ):
            return MISSING_RATING, None, None

        closing = self.markets.closing_line(game.event_id, SPREAD, game.start_time, book=cfg.book)
        if closing is None:
            return MISSING_CLOSING_LINE, None, None
        bet_time = game.start_time - timedelta(minutes=cfg.bet_lead_minutes)
        bet_snapshot = self.markets.latest_before(
            game.event_id, SPREAD, bet_time, book=cfg.book or closing.book
        )
        if bet_snapshot is None:
            return MISSING_BET_LINE, None, None

        home_metrics = away_metrics = None
        if self.metrics is not None:
            home_metrics = self.metrics.latest_before(game.home_team_id, game.season, game.start_time)
            away_metrics = self.metrics.latest_before(game.away_team_id, game.season, game.start_time)

        if market_mode:
            ctx = self._market_context(
                game, home_metrics, away_metrics, bet_time, bet_snapshot.book, last_played,
            )
            market_projection = adjuster.project_spread(bet_snapshot, ctx)
            record = evaluator.from_market_projection(
                market_projection, bet_snapshot, start_time=game.start_time,
            )
        else:
            try:
                projection = projector.project(
                    game, home_metrics, away_metrics, generated_at=bet_snapshot.captured_at,
                )
            except MissingData as exc:
                logger.warning("%s: %s", game.event_id, exc)
                return MISSING_SIGNALS, None, None
            record = evaluator.from_projection(projection, bet_snapshot, start_time=game.start_time)

        if record.side == NO_SIDE:
            return NO_EDGE, None, record
        if cfg.qualified_only and not record.qualifies:
            return NOT_QUALIFIED, None, record

        price = bet_snapshot.price_for(record.side)
        outcome = grade_bet(game, SPREAD, record.side, bet_snapshot.points, price, cfg.stake)
        predicted = implied_prob(resolve_price(price))
        brier_component = None
        if outcome.covered is not None:
            brier_component = (predicted - (1.0 if outcome.covered else 0.0)) ** 2

        bet = BetResult(
            event_id=game.event_id,
            season=game.season,
            week=game.week,
            market_type=SPREAD,
            side=record.side,
            edge=record.raw_edge,
            bet_line=bet_snapshot.points,
            closing_line=closing.points,
            price=price,
            covered=outcome.covered,
            profit=outcome.profit,
            clv=clv_points(SPREAD, record.side, bet_snapshot.points, closing.points),
            predicted_prob=predicted,
            qualifies=record.qualifies,
            brier_component=brier_component,
        )
        return None, bet, record

    def run(self, model: ModelConfig) -> BacktestRun:
        """Replay every game once with ``model``.  Deterministic for a given input."""
        cfg = self.config
        store = RatingStore(model.rating)
        engine = RatingEngine(store)
        projector = EnsembleProjector(model, store, engine)
        adjuster = MarketAdjuster(model.market)
        evaluator = EdgeEvaluator(model)

        exclusions: Dict[int, Counter] = defaultdict(Counter)
        warnings: Counter = Counter()
        results: List[BetResult] = []
        records: List[EdgeRecord] = []
        last_played: Dict[Tuple[str, int], datetime] = {}
        previous_season: Optional[int] = None

        games = self._ordered_games()
        if games and games[0].season >= cfg.test_start_season:
            logger.warning("No training seasons before %d; ratings start cold", cfg.test_start_season)

        for game in games:
            if previous_season is not None and game.season != previous_season:
                engine.reset_season(previous_season, game.season)
            previous_season = game.season

            if game.season >= cfg.test_start_season:
                reason, bet, record = self._price_game(
                    game, store, projector, adjuster, evaluator, last_played,
                )
                if record is not None:
                    records.append(record)
                    warnings.update(record.warnings)
                if reason is not None:
                    exclusions[game.season][reason] += 1
                else:
                    results.append(bet)

            if game.is_final:
                engine.update(game)
                last_played[(game.home_team_id, game.season)] = game.start_time
                last_played[(game.away_team_id, game.season)] = game.start_time

        report = self._build_report(model, results, exclusions, warnings)
        logger.info(
            "Backtest %s: %d bets, %d-%d-%d, ROI %.4f, CLV %.3f (run %s)",
            model.version, report.bets, report.wins, report.losses, report.pushes,
            report.roi.estimate, report.clv.estimate, report.run_fingerprint[:12],
        )
        return BacktestRun(report=report, results=results, records=records)

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def _split(self, results: Sequence[BetResult]) -> List[Tuple[str, List[BetResult]]]:
        week = self.config.sub_period_week
        return [
            ("early", [r for r in results if r.week <= week]),
            ("late", [r for r in results if r.week > week]),
        ]

    def _sub_period(self, label: str, results: List[BetResult]) -> SubPeriodStats:
        buckets = edge_buckets(results, self.config.edge_bucket_bounds, self.config.stake)
        return SubPeriodStats(
            label=label,
            bets=len(results),
            clv=mean_clv(results) if results else None,
            brier=brier(results),
            monotonicity=monotonicity(buckets),
        )

    def _fingerprint(
        self, model: ModelConfig, results: Sequence[BetResult], exclusions: Dict[int, Counter]
    ) -> str:
        payload = {
            "config": model.fingerprint(),
            "harness": asdict(self.config),
            "results": [
                [r.event_id, r.side, r.edge, r.bet_line, r.closing_line, r.price, r.covered]
                for r in results
            ],
            "exclusions": {str(s): dict(sorted(c.items())) for s, c in sorted(exclusions.items())},
        }
        blob = json.dumps(payload, sort_keys=True, default=str)
        return hashlib.sha256(blob.encode("utf-8")).hexdigest()

    def _build_report(
        self,
        model: ModelConfig,
        results: List[BetResult],
        exclusions: Dict[int, Counter],
        warnings: Counter,
    ) -> BacktestReport:
        cfg = self.config
        summary = summarize(results, cfg.stake)
        intervals = bootstrap_intervals(
            results, cfg.bootstrap_iterations, cfg.bootstrap_seed, cfg.confidence, cfg.stake,
        )
        buckets = edge_buckets(results, cfg.edge_bucket_bounds, cfg.stake)
        return BacktestReport(
            model_version=model.version,
            config_fingerprint=model.fingerprint(),
            run_fingerprint=self._fingerprint(model, results, exclusions),
            test_start_season=cfg.test_start_season,
            bets=summary["bets"],
            wins=summary["wins"],
            losses=summary["losses"],
            pushes=summary["pushes"],
            win_rate=summary["win_rate"],
            roi=Interval(**dict(zip(("estimate", "lower", "upper"), intervals["roi"]))),
            clv=Interval(**dict(zip(("estimate", "lower", "upper"), intervals["clv"]))),
            brier=Interval(**dict(zip(("estimate", "lower", "upper"), intervals["brier"]))),
            monotonicity=monotonicity(buckets),
            edge_buckets=[EdgeBucketStats(**b) for b in buckets],
            sub_periods=[self._sub_period(label, rs) for label, rs in self._split(results)],
            exclusions={season: dict(sorted(c.items())) for season, c in sorted(exclusions.items())},
            warnings=dict(sorted(warnings.items())),
            bootstrap_iterations=cfg.bootstrap_iterations,
            bootstrap_seed=cfg.bootstrap_seed,
        )

    # ------------------------------------------------------------------
    # Promotion
    # ------------------------------------------------------------------

    def compare(
        self,
        baseline: BacktestRun,
        candidate: BacktestRun,
        candidate_config: ModelConfig,
    ) -> PromotionDecision:
        """Apply the promotion rule and stamp the decision on the candidate report."""
        base, cand = baseline.report, candidate.report
        notes: List[str] = []

        overall = {
            "clv": _direction(
                "clv",
                base.clv.estimate if base.bets else None,
                cand.clv.estimate if cand.bets else None,
            ),
            "brier": _direction(
                "brier",
                base.brier.estimate if base.bets else None,
                cand.brier.estimate if cand.bets else None,
            ),
            "monotonicity": _direction("monotonicity", base.monotonicity, cand.monotonicity),
        }
        improved = [c for c in CRITERIA if overall[c] == 1]

        flips: List[str] = []
        base_periods = {p.label: p for p in base.sub_periods}
        for period in cand.sub_periods:
            other = base_periods.get(period.label)
            if other is None:
                continue
            for criterion in improved:
                direction = _direction(
                    criterion, getattr(other, criterion), getattr(period, criterion)
                )
                if direction is None:
                    notes.append(f"{criterion} not measurable in {period.label} sub-period")
                elif direction < 0:
                    flips.append(f"{criterion}:{period.label}")

        if len(improved) < 2:
            decision = DECISION_REJECT
            notes.append(f"only {len(improved)}/3 criteria improved")
        elif flips:
            decision = DECISION_REJECT
            notes.append("improvement not consistent across sub-periods: " + ", ".join(flips))
        else:
            decision = DECISION_KEEP

        candidate.report = cand.model_copy(update={
            "decision": decision,
            "criteria_improved": improved,
            "decision_notes": notes,
        })

        acceptance = None
        if decision == DECISION_KEEP:
            acceptance = AcceptanceRecord(
                model_version=candidate_config.version,
                config_fingerprint=candidate_config.fingerprint(),
                run_fingerprint=cand.run_fingerprint,
                decision=decision,
                criteria_improved=tuple(improved),
                accepted_at=datetime.now(timezone.utc),
            )
        logger.info(
            "Promotion %s vs %s: %s (improved=%s, flips=%s)",
            cand.model_version, base.model_version, decision, improved, flips,
        )
        return PromotionDecision(
            decision=decision,
            criteria_improved=improved,
            sign_flips=flips,
            notes=notes,
            acceptance=acceptance,
        )

    def validate(
        self, baseline_config: ModelConfig, candidate_config: ModelConfig
    ) -> Tuple[BacktestRun, BacktestRun, PromotionDecision]:
        baseline = self.run(baseline_config)
        candidate = self.run(candidate_config)
        decision = self.compare(baseline, candidate, candidate_config)
        return baseline, candidate, decision


def _direction(criterion: str, base: Optional[float], cand: Optional[float]) -> Optional[int]:
    """+1 candidate better, -1 worse, 0 equal, None not comparable."""
    if base is None or cand is None:
        return None
    if cand == base:
        return 0
    better = cand < base if criterion == "brier" else cand > base
    return 1 if better else -1
