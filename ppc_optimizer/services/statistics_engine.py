"""
Statistics Engine: Campaign performance analysis.
Derives daily rates, fits per-metric trends, flags anomalous days and scores
how far the window can be trusted. Pure over its input window.
"""

import logging
import math
from datetime import date, timedelta
from typing import Callable, Optional

import numpy as np
from scipy import stats

from ppc_optimizer.config import Settings, get_settings
from ppc_optimizer.errors import InsufficientDataError, NotFoundError, ValidationError
from ppc_optimizer.repositories import MetricsRepository
from ppc_optimizer.schemas import (
    AnalysisResult,
    AnomalyFlag,
    DailyMetrics,
    DataQuality,
    MetricAggregates,
    MetricSample,
    MetricSummary,
    PerformanceWindow,
    SearchTermStat,
    SignificanceTest,
    TrendClassification,
    TrendStat,
)
from ppc_optimizer.utils import clamp, safe_div, utc_today

logger = logging.getLogger(__name__)

# +1: higher is better, -1: higher is worse
METRIC_POLARITY = {"ctr": 1, "roas": 1, "cpc": -1, "cpa": -1}
TREND_METRICS = ("ctr", "cpc", "cpa", "roas")
ANOMALY_METRICS = ("cost", "conversions", "cpa")
SUMMARY_METRICS = ("cost", "clicks", "conversions", "ctr", "cpc", "cpa", "roas")
SIGNIFICANCE_METRICS = ("cost", "conversions", "ctr", "cpa")

HIGH_SEVERITY_Z = 3.0
MIN_PRIOR_FOR_ANOMALY = 3
MIN_TREND_POINTS = 3
FULL_CONFIDENCE_SAMPLES = 30
DEFAULT_BID_ELASTICITY = 0.6
ELASTICITY_BOUNDS = (0.1, 1.5)
SUFFICIENT_COMPLETENESS = 0.8


def to_daily_metrics(sample: MetricSample) -> DailyMetrics:
    return DailyMetrics(
        date=sample.date,
        impressions=sample.impressions,
        clicks=sample.clicks,
        cost=sample.cost,
        conversions=sample.conversions,
        conversion_value=sample.conversion_value,
        ctr=safe_div(sample.clicks, sample.impressions),
        cpc=safe_div(sample.cost, sample.clicks),
        cpa=safe_div(sample.cost, sample.conversions),
        roas=safe_div(sample.conversion_value, sample.cost),
    )


def order_samples(samples: list[MetricSample]) -> list[MetricSample]:
    """Sort by date; two samples for the same day are rejected."""
    ordered = sorted(samples, key=lambda s: s.date)
    for prev, cur in zip(ordered, ordered[1:]):
        if prev.date == cur.date:
            raise ValidationError(
                f"Duplicate metric sample for {cur.date.isoformat()}",
                details={"date": cur.date.isoformat()},
            )
    return ordered


def metric_series(daily: list[DailyMetrics], metric: str) -> list[tuple[date, float]]:
    """(date, value) for every day on which the metric is defined."""
    series = []
    for day in daily:
        value = getattr(day, metric)
        if value is not None:
            series.append((day.date, float(value)))
    return series


class StatisticsEngine:
    def __init__(
        self,
        metrics: MetricsRepository,
        settings: Optional[Settings] = None,
        today: Callable[[], date] = utc_today,
    ):
        self.metrics = metrics
        self.settings = settings or get_settings()
        self.today = today

    async def analyze_performance(self, campaign_id: str, window_days: int = 30) -> AnalysisResult:
        """Analyze the trailing ``window_days`` days (today inclusive) of a campaign."""
        if window_days < 1:
            raise ValidationError("window_days must be at least 1", details={"window_days": window_days})

        campaign = await self.metrics.get_campaign(campaign_id)
        if campaign is None:
            raise NotFoundError(f"Campaign {campaign_id} not found")

        window_end = self.today()
        window_start = window_end - timedelta(days=window_days - 1)
        samples = await self.metrics.get_metrics(campaign_id, window_start, window_end)
        search_terms = await self.metrics.get_search_terms(campaign_id, window_start, window_end)

        logger.info(
            f"Analyzing campaign {campaign_id}: {len(samples)} samples "
            f"in {window_start.isoformat()}..{window_end.isoformat()}"
        )
        return self.analyze_window(
            campaign_id,
            samples,
            window_start=window_start,
            window_end=window_end,
            search_terms=search_terms,
        )

    def analyze_window(
        self,
        campaign_id: str,
        samples: list[MetricSample],
        window_start: Optional[date] = None,
        window_end: Optional[date] = None,
        search_terms: Optional[list[SearchTermStat]] = None,
    ) -> AnalysisResult:
        ordered = order_samples(samples)
        n = len(ordered)
        if n < self.settings.min_samples:
            raise InsufficientDataError(
                f"Campaign {campaign_id} has {n} daily samples; at least {self.settings.min_samples} are required",
                required=self.settings.min_samples,
                actual=n,
            )

        window = PerformanceWindow(
            campaign_id=campaign_id,
            start=window_start or ordered[0].date,
            end=window_end or ordered[-1].date,
            samples=ordered,
        )
        daily = [to_daily_metrics(s) for s in window.samples]

        trends = {metric: self.fit_trend(metric, daily) for metric in TREND_METRICS}
        anomalies = self.detect_anomalies(daily)
        summaries = {}
        for metric in SUMMARY_METRICS:
            summary = self.summarize(metric, [v for _, v in metric_series(daily, metric)])
            if summary is not None:
                summaries[metric] = summary
        tests = [
            test for test in (self.compare_halves(metric, daily) for metric in SIGNIFICANCE_METRICS)
            if test is not None
        ]
        quality = self.data_quality(n, window.start, window.end)
        elasticity, fitted = self.estimate_bid_elasticity(daily)
        confidence = self.confidence_score(n, quality, trends, anomalies)
        health, findings = self.assess_health(trends, anomalies, tests, quality)

        return AnalysisResult(
            campaign_id=campaign_id,
            window_start=window.start,
            window_end=window.end,
            aggregates=self.aggregate(daily),
            daily=daily,
            trends=trends,
            anomalies=anomalies,
            anomaly_dates=sorted({a.date for a in anomalies}),
            summaries=summaries,
            significance_tests=tests,
            data_quality=quality,
            bid_elasticity=elasticity,
            bid_elasticity_fitted=fitted,
            search_terms=list(search_terms or []),
            confidence=confidence,
            health=health,
            key_findings=findings,
        )

    # ── Aggregates ───────────────────────────────────────────────────

    @staticmethod
    def aggregate(daily: list[DailyMetrics]) -> MetricAggregates:
        impressions = sum(d.impressions for d in daily)
        clicks = sum(d.clicks for d in daily)
        cost = sum(d.cost for d in daily)
        conversions = sum(d.conversions for d in daily)
        value = sum(d.conversion_value for d in daily)
        days = len(daily)
        return MetricAggregates(
            impressions=impressions,
            clicks=clicks,
            cost=cost,
            conversions=conversions,
            conversion_value=value,
            ctr=safe_div(clicks, impressions),
            cpc=safe_div(cost, clicks),
            cpa=safe_div(cost, conversions),
            roas=safe_div(value, cost),
            avg_daily_cost=cost / days if days else 0.0,
            avg_daily_conversions=conversions / days if days else 0.0,
            max_daily_cost=max((d.cost for d in daily), default=0.0),
        )

    # ── Trends ───────────────────────────────────────────────────────

    def fit_trend(self, metric: str, daily: list[DailyMetrics]) -> TrendStat:
        """
        Least-squares line of the metric against the day offset from the first
        sample, so gaps in the series keep their real spacing.
        """
        series = metric_series(daily, metric)
        if len(series) < MIN_TREND_POINTS:
            mean = float(np.mean([v for _, v in series])) if series else 0.0
            return TrendStat(
                metric=metric, slope=0.0, intercept=mean, r_squared=0.0, p_value=1.0,
                points=len(series), direction="flat", classification=TrendClassification.STABLE,
            )

        origin = daily[0].date
        x = np.array([(d - origin).days for d, _ in series], dtype=float)
        y = np.array([v for _, v in series], dtype=float)
        fit = stats.linregress(x, y)

        slope = float(fit.slope)
        p_value = float(fit.pvalue) if not math.isnan(fit.pvalue) else 1.0
        r_squared = float(fit.rvalue) ** 2 if not math.isnan(fit.rvalue) else 0.0

        if slope > 0:
            direction = "up"
        elif slope < 0:
            direction = "down"
        else:
            direction = "flat"

        classification = TrendClassification.STABLE
        if direction != "flat" and p_value < self.settings.significance_level:
            good = (slope > 0) == (METRIC_POLARITY[metric] > 0)
            classification = TrendClassification.IMPROVING if good else TrendClassification.DECLINING

        return TrendStat(
            metric=metric,
            slope=slope,
            intercept=float(fit.intercept),
            r_squared=r_squared,
            p_value=p_value,
            points=len(series),
            direction=direction,
            classification=classification,
        )

    # ── Anomalies ────────────────────────────────────────────────────

    def detect_anomalies(self, daily: list[DailyMetrics]) -> list[AnomalyFlag]:
        """Z-score of each day against the trailing window of prior samples."""
        window = self.settings.anomaly_window
        threshold = self.settings.anomaly_z_threshold
        flags = []
        for metric in ANOMALY_METRICS:
            for i, day in enumerate(daily):
                value = getattr(day, metric)
                if value is None:
                    continue
                prior = [
                    getattr(p, metric) for p in daily[max(0, i - window):i]
                    if getattr(p, metric) is not None
                ]
                if len(prior) < MIN_PRIOR_FOR_ANOMALY:
                    continue
                std = float(np.std(prior, ddof=1))
                if std <= 0:
                    continue
                z = (float(value) - float(np.mean(prior))) / std
                if abs(z) > threshold:
                    flags.append(AnomalyFlag(
                        date=day.date,
                        metric=metric,
                        value=float(value),
                        z_score=z,
                        severity="high" if abs(z) > HIGH_SEVERITY_Z else "medium",
                    ))
        flags.sort(key=lambda f: (f.date, f.metric))
        return flags

    # ── Summaries & Significance ─────────────────────────────────────

    @staticmethod
    def summarize(metric: str, values: list[float]) -> Optional[MetricSummary]:
        """Mean with a 95% t-based confidence interval."""
        n = len(values)
        if n == 0:
            return None
        mean = float(np.mean(values))
        if n == 1:
            return MetricSummary(metric=metric, n=1, mean=mean, std=0.0, standard_error=0.0, lower=mean, upper=mean)
        std = float(np.std(values, ddof=1))
        se = std / math.sqrt(n)
        margin = float(stats.t.ppf(0.975, n - 1)) * se
        return MetricSummary(
            metric=metric, n=n, mean=mean, std=std, standard_error=se,
            lower=mean - margin, upper=mean + margin,
        )

    def compare_halves(self, metric: str, daily: list[DailyMetrics]) -> Optional[SignificanceTest]:
        values = [v for _, v in metric_series(daily, metric)]
        half = len(values) // 2
        earlier, recent = values[:half], values[half:]
        if len(earlier) < 2 or len(recent) < 2:
            return None
        result = stats.ttest_ind(recent, earlier, equal_var=False)
        if math.isnan(result.pvalue):
            return None
        earlier_mean = float(np.mean(earlier))
        recent_mean = float(np.mean(recent))
        change = safe_div(recent_mean - earlier_mean, earlier_mean)
        return SignificanceTest(
            metric=metric,
            earlier_mean=earlier_mean,
            recent_mean=recent_mean,
            change_pct=change * 100 if change is not None else None,
            t_statistic=float(result.statistic),
            p_value=float(result.pvalue),
            is_significant=float(result.pvalue) < self.settings.significance_level,
        )

    # ── Quality, Elasticity, Confidence ──────────────────────────────

    @staticmethod
    def data_quality(sample_count: int, window_start: date, window_end: date) -> DataQuality:
        expected = max((window_end - window_start).days + 1, sample_count)
        return DataQuality(
            sample_count=sample_count,
            expected_days=expected,
            missing_days=expected - sample_count,
            completeness=sample_count / expected if expected else 0.0,
        )

    def estimate_bid_elasticity(self, daily: list[DailyMetrics]) -> tuple[float, bool]:
        """
        Log-log slope of clicks on CPC. Returns (elasticity, fitted); the
        default is used when there are too few priced days or CPC never moves.
        """
        pairs = [(d.cpc, d.clicks) for d in daily if d.cpc and d.cpc > 0 and d.clicks > 0]
        if len(pairs) < self.settings.min_samples:
            return DEFAULT_BID_ELASTICITY, False
        log_cpc = np.log([p[0] for p in pairs])
        log_clicks = np.log([p[1] for p in pairs])
        if float(np.ptp(log_cpc)) == 0.0:
            return DEFAULT_BID_ELASTICITY, False
        slope = float(stats.linregress(log_cpc, log_clicks).slope)
        if math.isnan(slope):
            return DEFAULT_BID_ELASTICITY, False
        return clamp(slope, *ELASTICITY_BOUNDS), True

    @staticmethod
    def confidence_score(
        sample_count: int,
        quality: DataQuality,
        trends: dict[str, TrendStat],
        anomalies: list[AnomalyFlag],
    ) -> float:
        fitted = [t for t in trends.values() if t.points >= MIN_TREND_POINTS]
        fit_term = float(np.mean([1.0 - t.p_value for t in fitted])) if fitted else 0.0
        score = (
            0.5 * min(1.0, sample_count / FULL_CONFIDENCE_SAMPLES)
            + 0.3 * quality.completeness
            + 0.2 * fit_term
        )
        high = sum(1 for a in anomalies if a.severity == "high")
        score -= min(0.05 * high, 0.2)
        return clamp(score, 0.0, 1.0)

    # ── Health ───────────────────────────────────────────────────────

    @staticmethod
    def assess_health(
        trends: dict[str, TrendStat],
        anomalies: list[AnomalyFlag],
        tests: list[SignificanceTest],
        quality: DataQuality,
    ) -> tuple[str, list[str]]:
        findings = []
        sufficient = quality.completeness >= SUFFICIENT_COMPLETENESS
        if not sufficient:
            findings.append(f"Limited data available ({quality.completeness * 100:.0f}% completeness)")

        significant = [t for t in tests if t.is_significant]
        if significant:
            findings.append(f"{len(significant)} metrics show statistically significant changes")
            for test in significant:
                if test.change_pct is not None:
                    findings.append(f"{test.metric} changed {test.change_pct:+.1f}% in the recent half of the window")

        declining = [t for t in trends.values() if t.classification == TrendClassification.DECLINING]
        for trend in declining:
            findings.append(f"{trend.metric.upper()} is trending {trend.direction} (p={trend.p_value:.3f})")

        high = [a for a in anomalies if a.severity == "high"]
        if high:
            findings.append(f"{len(high)} high-severity anomalies detected")

        if not sufficient or len(declining) > 2 or len(high) > 3:
            health = "poor"
        elif declining or len(high) > 1:
            health = "fair"
        elif not significant:
            health = "excellent"
        else:
            health = "good"

        if not findings:
            findings.append("Campaign performance is stable with no significant anomalies")
        return health, findings
