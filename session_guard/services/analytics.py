"""Analytics Engine: metrics over session history.

The module-level functions are pure computation, no I/O. `AnalyticsEngine`
wraps them with store reads and a TTL cache; the cache is the only state it
owns and everything in it can be recomputed from the store.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable

import numpy as np
import pandas as pd

from session_guard.config import Settings
from session_guard.errors import InsufficientData, PayloadValidationError
from session_guard.models.trading_session import TradingSession
from session_guard.services.cache import AnalyticsCache
from session_guard.services.session_store import SessionStore
from session_guard.utils.constants import (
    ANALYTICS_PERIODS,
    COMPARISON_TYPES,
    SessionStatus,
    TERMINAL_STATUSES,
    TerminationReason,
)
from session_guard.utils.time import as_utc, utcnow

logger = logging.getLogger(__name__)

PERIOD_DAYS = {"daily": 1, "weekly": 7, "monthly": 30, "yearly": 365}


# ---------------------------------------------------------------------------
# Metric helpers
# ---------------------------------------------------------------------------

def win_rate(pnls: Iterable[float]) -> float:
    values = np.asarray(list(pnls), dtype=float)
    if values.size == 0:
        return 0.0
    return float(np.count_nonzero(values > 0) / values.size * 100)


def profit_factor(pnls: Iterable[float]) -> float:
    """Gross profit over gross loss; 0 when there are no losses."""
    values = np.asarray(list(pnls), dtype=float)
    wins = values[values > 0]
    losses = values[values < 0]
    avg_win = float(wins.mean()) if wins.size else 0.0
    avg_loss = float(abs(losses.mean())) if losses.size else 0.0
    denominator = avg_loss * losses.size
    if denominator == 0:
        return 0.0
    return avg_win * wins.size / denominator


def max_drawdown(pnls: Iterable[float]) -> float:
    """Largest peak-to-trough drop of cumulative PnL, in chronological order.

    The running peak starts at 0 (flat before the first session).
    """
    values = np.asarray(list(pnls), dtype=float)
    if values.size == 0:
        return 0.0
    cumulative = np.cumsum(values)
    peaks = np.maximum.accumulate(np.concatenate(([0.0], cumulative)))[1:]
    return float(np.max(peaks - cumulative))


def volatility(pnls: Iterable[float]) -> float:
    """Population standard deviation of session PnL."""
    values = np.asarray(list(pnls), dtype=float)
    if values.size == 0:
        return 0.0
    return float(np.std(values))


def sharpe_ratio(pnls: Iterable[float], risk_free_rate: float = 0.02) -> float:
    values = np.asarray(list(pnls), dtype=float)
    if values.size == 0:
        return 0.0
    std = float(np.std(values))
    if std == 0 or np.isnan(std):
        return 0.0
    return (float(values.mean()) - risk_free_rate) / std


def risk_adjusted_return(pnls: Iterable[float]) -> float:
    values = np.asarray(list(pnls), dtype=float)
    vol = volatility(values)
    if vol == 0:
        return 0.0
    return float(values.sum()) / vol


def loss_limit_utilization(pnl: float, loss_limit: float) -> float:
    loss = abs(min(0.0, pnl))
    return loss / loss_limit * 100 if loss_limit > 0 else 0.0


def loss_utilization(session: TradingSession) -> float:
    """Percent of the loss limit used; the stricter of the absolute and percentage limits governs."""
    pnl = float(session.realized_pnl or 0.0)
    pct = loss_limit_utilization(pnl, session.loss_limit_amount)

    if session.loss_limit_percentage and session.account_balance:
        loss_pct_of_balance = abs(min(0.0, pnl)) / session.account_balance * 100
        pct = max(pct, loss_pct_of_balance / session.loss_limit_percentage * 100)
    return pct


def calculate_risk_score(
    utilization: float,
    trading_velocity: float,
    velocity_thresholds: list[float],
    velocity_points: list[float],
) -> float:
    """0-100: up to 60 points for loss utilisation plus a velocity band."""
    score = min(60.0, utilization * 0.6)
    for threshold, points in zip(velocity_thresholds, velocity_points):
        if trading_velocity > threshold:
            score += points
            break
    return min(100.0, score)


def calculate_performance_score(current_pnl: float, loss_limit: float) -> float:
    """0-100 centred on 50; gains scale against the loss limit, losses by utilisation."""
    if loss_limit <= 0:
        return 50.0
    if current_pnl > 0:
        return min(100.0, 50 + current_pnl / loss_limit * 50)
    return max(0.0, 50 - abs(current_pnl) / loss_limit * 50)


def relative_change(baseline: float, current: float) -> float:
    if baseline == 0:
        if current == 0:
            return 0.0
        return 100.0 if current > 0 else -100.0
    return (current - baseline) / abs(baseline) * 100


def performance_by_time(sessions: list[TradingSession]) -> tuple[dict[int, float], dict[int, float]]:
    """Average PnL by start hour (0-23) and weekday (Monday = 0)."""
    started = [s for s in sessions if s.start_time is not None]
    if not started:
        return {}, {}

    frame = pd.DataFrame({
        "start": pd.to_datetime([as_utc(s.start_time) for s in started], utc=True),
        "pnl": [float(s.realized_pnl or 0.0) for s in started],
    })
    by_hour = frame.groupby(frame["start"].dt.hour)["pnl"].mean()
    by_day = frame.groupby(frame["start"].dt.dayofweek)["pnl"].mean()
    return (
        {int(k): float(v) for k, v in by_hour.items()},
        {int(k): float(v) for k, v in by_day.items()},
    )


def best_period(averages: dict[int, float]) -> int | None:
    if not averages:
        return None
    return max(averages, key=lambda k: (averages[k], -k))


def worst_period(averages: dict[int, float]) -> int | None:
    if not averages:
        return None
    return min(averages, key=lambda k: (averages[k], k))


def top_fraction(averages: dict[int, float], fraction: float) -> list[int]:
    """Keys of the best `fraction` of buckets by average (rounded up)."""
    if not averages:
        return []
    ranked = sorted(averages, key=lambda k: (-averages[k], k))
    return ranked[:math.ceil(len(ranked) * fraction)]


def _chronological(sessions: list[TradingSession]) -> list[TradingSession]:
    return sorted(sessions, key=lambda s: as_utc(s.start_time or s.created_at))


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass
class SessionAnalytics:
    """Aggregate metrics for one user over one period."""
    id: str
    user_id: str
    period_type: str
    period_start: datetime
    period_end: datetime

    # Session counts
    total_sessions: int = 0
    active_sessions: int = 0
    completed_sessions: int = 0
    stopped_sessions: int = 0
    expired_sessions: int = 0
    emergency_stopped_sessions: int = 0

    # Performance
    total_profit_loss: float = 0.0
    average_profit_loss: float = 0.0
    win_rate: float = 0.0
    average_win: float = 0.0
    average_loss: float = 0.0
    profit_factor: float = 0.0
    max_drawdown: float = 0.0
    sharpe_ratio: float = 0.0

    # Duration, minutes
    average_session_duration: float = 0.0
    shortest_session: float = 0.0
    longest_session: float = 0.0
    total_trading_time: float = 0.0

    # Risk
    average_loss_limit_utilization: float = 0.0
    max_loss_limit_reached: int = 0
    risk_adjusted_return: float = 0.0
    volatility: float = 0.0

    # Trading
    total_trades: int = 0
    average_trades_per_session: float = 0.0
    average_trade_size: float = 0.0
    trading_frequency: float = 0.0  # trades per hour

    # Timing
    best_performing_hour: int | None = None
    worst_performing_hour: int | None = None
    best_performing_day_of_week: int | None = None
    worst_performing_day_of_week: int | None = None
    performance_by_hour: dict[int, float] = field(default_factory=dict)
    performance_by_day: dict[int, float] = field(default_factory=dict)

    computed_at: datetime = field(default_factory=utcnow)


@dataclass
class RealTimeSessionMetrics:
    user_id: str
    session_id: str
    timestamp: datetime
    current_pnl: float
    realized_pnl: float
    unrealized_pnl: float
    total_trades: int
    average_trade_size: float
    loss_limit_utilization: float
    time_elapsed_percentage: float
    trading_velocity: float  # trades per hour
    risk_score: float
    performance_score: float
    confidence_level: float


@dataclass
class OptimalTimingRecommendation:
    user_id: str
    optimal_hours: list[int]
    optimal_days_of_week: list[int]
    avg_performance_by_hour: dict[int, float]
    avg_performance_by_day: dict[int, float]
    confidence: float
    sample_size: int


@dataclass
class PredictionFactor:
    factor: str
    impact: float
    description: str


@dataclass
class OutcomePrediction:
    predicted_profit_loss: float
    win_probability: float
    risk_score: float
    expected_duration: int
    confidence: float
    sample_size: int = 0
    factors: list[PredictionFactor] = field(default_factory=list)


@dataclass
class PerformanceComparison:
    user_id: str
    comparison_type: str
    baseline_metrics: dict[str, float]
    current_metrics: dict[str, float]
    relative_profit_loss: float
    relative_win_rate: float
    relative_drawdown: float
    relative_sharpe_ratio: float
    insights: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)


def calculate_session_analytics(
    user_id: str,
    sessions: list[TradingSession],
    period_type: str,
    period_start: datetime,
    period_end: datetime,
    risk_free_rate: float = 0.02,
) -> SessionAnalytics:
    """Compute the full aggregate for a set of sessions."""
    ordered = _chronological(sessions)
    pnls = [float(s.realized_pnl or 0.0) for s in ordered]
    total = len(ordered)

    def count(status: str) -> int:
        return sum(1 for s in ordered if s.status == status)

    wins = [p for p in pnls if p > 0]
    losses = [p for p in pnls if p < 0]
    total_pnl = float(sum(pnls))

    durations = [
        (as_utc(s.actual_end_time) - as_utc(s.start_time)).total_seconds() / 60
        for s in ordered
        if s.start_time is not None and s.actual_end_time is not None
    ]
    total_time = float(sum(durations))

    utilizations = [loss_limit_utilization(float(s.realized_pnl or 0.0), s.loss_limit_amount) for s in ordered]
    total_trades = sum(s.trade_count or 0 for s in ordered)
    by_hour, by_day = performance_by_time(ordered)

    return SessionAnalytics(
        id=f"{user_id}_{period_type}_{as_utc(period_start).isoformat()}",
        user_id=user_id,
        period_type=period_type,
        period_start=period_start,
        period_end=period_end,
        total_sessions=total,
        active_sessions=count(SessionStatus.ACTIVE),
        completed_sessions=count(SessionStatus.COMPLETED),
        stopped_sessions=count(SessionStatus.STOPPED),
        expired_sessions=count(SessionStatus.EXPIRED),
        emergency_stopped_sessions=count(SessionStatus.EMERGENCY_STOPPED),
        total_profit_loss=total_pnl,
        average_profit_loss=total_pnl / total if total else 0.0,
        win_rate=win_rate(pnls),
        average_win=float(np.mean(wins)) if wins else 0.0,
        average_loss=float(abs(np.mean(losses))) if losses else 0.0,
        profit_factor=profit_factor(pnls),
        max_drawdown=max_drawdown(pnls),
        sharpe_ratio=sharpe_ratio(pnls, risk_free_rate),
        average_session_duration=total_time / len(durations) if durations else 0.0,
        shortest_session=min(durations) if durations else 0.0,
        longest_session=max(durations) if durations else 0.0,
        total_trading_time=total_time,
        average_loss_limit_utilization=float(np.mean(utilizations)) if utilizations else 0.0,
        max_loss_limit_reached=sum(
            1 for s in ordered if s.termination_reason == TerminationReason.LOSS_LIMIT_REACHED
        ),
        risk_adjusted_return=risk_adjusted_return(pnls),
        volatility=volatility(pnls),
        total_trades=total_trades,
        average_trades_per_session=total_trades / total if total else 0.0,
        average_trade_size=abs(total_pnl) / total_trades if total_trades else 0.0,
        trading_frequency=total_trades / (total_time / 60) if total_time > 0 else 0.0,
        best_performing_hour=best_period(by_hour),
        worst_performing_hour=worst_period(by_hour),
        best_performing_day_of_week=best_period(by_day),
        worst_performing_day_of_week=worst_period(by_day),
        performance_by_hour=by_hour,
        performance_by_day=by_day,
    )


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class AnalyticsEngine:
    def __init__(self, store: SessionStore, cache: AnalyticsCache, settings: Settings):
        self.store = store
        self.cache = cache
        self.settings = settings

    @staticmethod
    def cache_key(user_id: str, period_type: str, start: datetime, end: datetime) -> str:
        return f"analytics:{user_id}:{period_type}:{as_utc(start).isoformat()}:{as_utc(end).isoformat()}"

    def get_session_analytics(
        self, user_id: str, period_type: str, start: datetime, end: datetime
    ) -> SessionAnalytics:
        if period_type not in ANALYTICS_PERIODS:
            raise PayloadValidationError(f"period_type must be one of {', '.join(ANALYTICS_PERIODS)}")
        if as_utc(start) > as_utc(end):
            raise PayloadValidationError("start must not be after end")

        key = self.cache_key(user_id, period_type, start, end)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        sessions = self.store.list_sessions(user_id=user_id, start=start, end=end)
        analytics = calculate_session_analytics(
            user_id, sessions, period_type, start, end, self.settings.risk_free_rate
        )
        self.cache.set(key, analytics, ttl=self.settings.analytics_cache_ttl_seconds)
        return analytics

    def get_real_time_metrics(self, user_id: str, now: datetime | None = None) -> list[RealTimeSessionMetrics]:
        now = now or utcnow()
        metrics = []
        for session in self.store.find_active_sessions(user_id=user_id):
            pnl = float(session.realized_pnl or 0.0)
            utilization = loss_utilization(session)

            elapsed_pct = 0.0
            velocity = 0.0
            if session.start_time is not None:
                start = as_utc(session.start_time)
                elapsed_s = max(0.0, (now - start).total_seconds())
                if session.end_time is not None:
                    total_s = (as_utc(session.end_time) - start).total_seconds()
                    elapsed_pct = min(100.0, elapsed_s / total_s * 100) if total_s > 0 else 100.0
                if elapsed_s > 0:
                    velocity = session.trade_count / (elapsed_s / 3600)

            trades = session.trade_count or 0
            metrics.append(RealTimeSessionMetrics(
                user_id=user_id,
                session_id=session.id,
                timestamp=now,
                current_pnl=pnl,
                realized_pnl=pnl,
                unrealized_pnl=0.0,
                total_trades=trades,
                average_trade_size=abs(pnl) / trades if trades else 0.0,
                loss_limit_utilization=utilization,
                time_elapsed_percentage=elapsed_pct,
                trading_velocity=velocity,
                risk_score=calculate_risk_score(
                    utilization, velocity,
                    self.settings.velocity_thresholds, self.settings.velocity_points,
                ),
                performance_score=calculate_performance_score(pnl, session.loss_limit_amount),
                confidence_level=min(100.0, trades * self.settings.confidence_per_trade),
            ))
        return metrics

    def get_optimal_session_timing(self, user_id: str) -> OptimalTimingRecommendation:
        sessions = self.store.list_terminal_sessions(user_id, limit=self.settings.timing_sample_size)
        required = self.settings.timing_min_sessions
        if len(sessions) < required:
            raise InsufficientData(
                f"Timing analysis needs at least {required} finished sessions, found {len(sessions)}",
                sample_size=len(sessions),
                required=required,
            )

        by_hour, by_day = performance_by_time(sessions)
        return OptimalTimingRecommendation(
            user_id=user_id,
            optimal_hours=top_fraction(by_hour, 0.25),
            optimal_days_of_week=top_fraction(by_day, 0.5),
            avg_performance_by_hour=by_hour,
            avg_performance_by_day=by_day,
            confidence=min(95.0, len(sessions) * 2.0),
            sample_size=len(sessions),
        )

    def predict_session_outcome(
        self, user_id: str, duration_minutes: int, loss_limit_amount: float
    ) -> OutcomePrediction:
        tolerance = self.settings.prediction_tolerance
        similar = self.store.find_similar_sessions(
            user_id,
            (duration_minutes * (1 - tolerance), duration_minutes * (1 + tolerance)),
            (loss_limit_amount * (1 - tolerance), loss_limit_amount * (1 + tolerance)),
            limit=self.settings.prediction_sample_size,
        )

        if len(similar) < self.settings.prediction_min_matches:
            return OutcomePrediction(
                predicted_profit_loss=0.0,
                win_probability=0.5,
                risk_score=50.0,
                expected_duration=duration_minutes,
                confidence=0.1,
                sample_size=len(similar),
                factors=[PredictionFactor(
                    factor="Insufficient Data",
                    impact=0.0,
                    description="Not enough historical data for accurate prediction",
                )],
            )

        pnls = np.array([float(s.realized_pnl or 0.0) for s in similar])
        return OutcomePrediction(
            predicted_profit_loss=float(pnls.mean()),
            win_probability=float(np.count_nonzero(pnls > 0) / pnls.size),
            risk_score=self._predicted_risk_score(duration_minutes, loss_limit_amount, similar),
            expected_duration=duration_minutes,
            confidence=min(0.9, len(similar) / self.settings.prediction_sample_size),
            sample_size=len(similar),
            factors=[
                PredictionFactor("Historical Performance", 0.6, f"Based on {len(similar)} similar sessions"),
                PredictionFactor("Risk Parameters", 0.3, "Session duration and loss limit configuration"),
                PredictionFactor("Market Conditions", 0.1, "Current market volatility and trends"),
            ],
        )

    def _predicted_risk_score(
        self, duration_minutes: int, loss_limit_amount: float, similar: list[TradingSession]
    ) -> float:
        utilizations = [
            loss_limit_utilization(float(s.realized_pnl or 0.0), s.loss_limit_amount) for s in similar
        ]
        score = float(np.mean(utilizations))
        for minutes, points in zip(self.settings.long_session_minutes, self.settings.long_session_points):
            if duration_minutes > minutes:
                score += points
                break
        if loss_limit_amount > self.settings.large_loss_limit:
            score += self.settings.large_loss_limit_points
        return min(100.0, max(0.0, score))

    def compare_performance(
        self,
        user_id: str,
        comparison_type: str,
        timeframe: str = "monthly",
        now: datetime | None = None,
    ) -> PerformanceComparison:
        if comparison_type not in COMPARISON_TYPES:
            raise PayloadValidationError(f"comparison_type must be one of {', '.join(COMPARISON_TYPES)}")

        now = now or utcnow()
        span = timedelta(days=PERIOD_DAYS.get(timeframe, 30))
        current_start = now - span
        current = self.get_session_analytics(user_id, "monthly", current_start, now)

        if comparison_type == "self_historical":
            previous = self.get_session_analytics(user_id, "monthly", current_start - span, current_start)
            baseline = _headline(previous)
        else:
            baseline = self._peer_group_baseline(current_start, now)

        comparison = PerformanceComparison(
            user_id=user_id,
            comparison_type=comparison_type,
            baseline_metrics=baseline,
            current_metrics=_headline(current),
            relative_profit_loss=relative_change(baseline["total_profit_loss"], current.total_profit_loss),
            relative_win_rate=relative_change(baseline["win_rate"], current.win_rate),
            relative_drawdown=relative_change(baseline["max_drawdown"], current.max_drawdown),
            relative_sharpe_ratio=relative_change(baseline["sharpe_ratio"], current.sharpe_ratio),
        )
        comparison.insights = _insights(comparison)
        comparison.recommendations = _recommendations(comparison)
        return comparison

    def _peer_group_baseline(self, start: datetime, end: datetime) -> dict[str, float]:
        sessions = _chronological(self.store.list_sessions(start=start, end=end, statuses=TERMINAL_STATUSES))
        if not sessions:
            return {"total_profit_loss": 0.0, "win_rate": 50.0, "max_drawdown": 0.0,
                    "sharpe_ratio": 0.0, "volatility": 0.0}
        pnls = [float(s.realized_pnl or 0.0) for s in sessions]
        return {
            "total_profit_loss": float(np.mean(pnls)),
            "win_rate": win_rate(pnls),
            "max_drawdown": max_drawdown(pnls),
            "sharpe_ratio": sharpe_ratio(pnls, self.settings.risk_free_rate),
            "volatility": volatility(pnls),
        }

    def aggregate_session_data(
        self, user_id: str, aggregation_type: str, now: datetime | None = None
    ) -> SessionAnalytics:
        """Recompute and cache the trailing-period aggregate for a user."""
        now = now or utcnow()
        start = now - timedelta(days=PERIOD_DAYS.get(aggregation_type, 1))
        analytics = self.get_session_analytics(user_id, aggregation_type, start, now)
        logger.info(
            f"Aggregated {aggregation_type} analytics for user {user_id}: "
            f"{analytics.total_sessions} sessions, pnl={analytics.total_profit_loss:.2f}"
        )
        return analytics

    def refresh_analytics_cache(self, user_id: str | None = None) -> int:
        if user_id:
            removed = self.cache.invalidate(f"analytics:{user_id}:")
            logger.info(f"Refreshed analytics cache for user {user_id} ({removed} entries)")
            return removed
        self.cache.clear()
        logger.info("Refreshed analytics cache")
        return 0


def _headline(analytics: SessionAnalytics) -> dict[str, float]:
    return {
        "total_profit_loss": analytics.total_profit_loss,
        "win_rate": analytics.win_rate,
        "max_drawdown": analytics.max_drawdown,
        "sharpe_ratio": analytics.sharpe_ratio,
        "volatility": analytics.volatility,
    }


def _insights(c: PerformanceComparison) -> list[str]:
    insights = []
    if c.relative_profit_loss > 10:
        insights.append(f"Profit/loss improved by {c.relative_profit_loss:.1f}% against the baseline.")
    elif c.relative_profit_loss < -10:
        insights.append(f"Profit/loss declined by {abs(c.relative_profit_loss):.1f}% against the baseline.")

    if c.relative_win_rate > 5:
        insights.append(f"Win rate is up {c.relative_win_rate:.1f}%, trade selection is improving.")
    elif c.relative_win_rate < -5:
        insights.append(f"Win rate is down {abs(c.relative_win_rate):.1f}%, the strategy may need refinement.")

    if c.relative_drawdown > 20:
        insights.append("Maximum drawdown increased significantly, risk exposure is higher.")
    elif c.relative_drawdown < -20:
        insights.append("Maximum drawdown improved significantly.")

    if not insights:
        insights.append("Performance is broadly stable against the baseline.")
    return insights


def _recommendations(c: PerformanceComparison) -> list[str]:
    recs = []
    if c.relative_profit_loss < -15:
        recs.append("Reduce position sizes and focus on higher-probability trades.")
    if c.relative_win_rate < -10:
        recs.append("Review recent losing trades for common patterns and tighten entry criteria.")
    if c.relative_drawdown > 25:
        recs.append("Lower the session loss limit to cap drawdown.")
    if c.relative_sharpe_ratio < -20:
        recs.append("Favour risk-adjusted returns over absolute returns.")
    if not recs:
        recs.append("Keep the current approach and keep monitoring.")
    return recs
