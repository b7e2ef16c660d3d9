"""
Forecast Model: CPA prediction.
One linear regression of daily CPA on day offset, with a documented
fallback (last observed CPA carried forward, widened interval) whenever the
regression is not trustworthy. Data problems never raise.
"""

import logging
import math
from datetime import timedelta
from typing import Optional

import numpy as np
from scipy import stats

from ppc_optimizer.config import Settings
from ppc_optimizer.errors import NotFoundError, ValidationError
from ppc_optimizer.schemas import (
    ConfidenceInterval,
    DailyMetrics,
    MetricSample,
    ModelUsed,
    Prediction,
)
from ppc_optimizer.services.statistics_engine import (
    StatisticsEngine,
    metric_series,
    order_samples,
    to_daily_metrics,
)

logger = logging.getLogger(__name__)

Z_95 = 1.96

FALLBACK_INSUFFICIENT_SAMPLES = "insufficient_samples"
FALLBACK_LOW_FIT_QUALITY = "low_fit_quality"
FALLBACK_NO_CONVERSION_HISTORY = "no_conversion_history"


class ForecastModel:
    def __init__(self, engine: StatisticsEngine, settings: Optional[Settings] = None):
        self.engine = engine
        self.settings = settings or engine.settings

    async def predict_cpa(self, campaign_id: str, days: int) -> Prediction:
        """Predict the campaign's CPA ``days`` days after its last sample."""
        if days < 1:
            raise ValidationError("days must be at least 1", details={"days": days})

        campaign = await self.engine.metrics.get_campaign(campaign_id)
        if campaign is None:
            raise NotFoundError(f"Campaign {campaign_id} not found")

        window_end = self.engine.today()
        window_start = window_end - timedelta(days=self.settings.forecast_lookback_days - 1)
        samples = await self.engine.metrics.get_metrics(campaign_id, window_start, window_end)

        prediction = self.predict_from_samples(campaign_id, samples, days)
        logger.info(
            f"CPA forecast for {campaign_id} (+{days}d): {prediction.point_estimate:.2f} "
            f"[{prediction.confidence_interval.lower:.2f}, {prediction.confidence_interval.upper:.2f}] "
            f"via {prediction.model_used.value}"
            + (f" ({prediction.fallback_reason})" if prediction.fallback_reason else "")
        )
        return prediction

    def predict_from_samples(self, campaign_id: str, samples: list[MetricSample], days: int) -> Prediction:
        daily = [to_daily_metrics(s) for s in order_samples(samples)]
        return self.predict_from_daily(campaign_id, daily, days)

    def predict_from_daily(self, campaign_id: str, daily: list[DailyMetrics], days: int) -> Prediction:
        if days < 1:
            raise ValidationError("days must be at least 1", details={"days": days})

        series = metric_series(daily, "cpa")
        if not series:
            return self._fallback(campaign_id, [], days, FALLBACK_NO_CONVERSION_HISTORY, daily)
        if len(series) < self.settings.min_samples:
            return self._fallback(campaign_id, [v for _, v in series], days, FALLBACK_INSUFFICIENT_SAMPLES, daily)

        origin = daily[0].date
        x = np.array([(d - origin).days for d, _ in series], dtype=float)
        y = np.array([v for _, v in series], dtype=float)
        fit = stats.linregress(x, y)
        r_squared = float(fit.rvalue) ** 2 if not math.isnan(fit.rvalue) else 0.0

        if r_squared < self.settings.forecast_min_r_squared:
            return self._fallback(
                campaign_id, list(y), days, FALLBACK_LOW_FIT_QUALITY, daily, r_squared=r_squared
            )

        n = len(x)
        x0 = float(x[-1]) + days
        point = float(fit.intercept + fit.slope * x0)

        residuals = y - (fit.intercept + fit.slope * x)
        s = math.sqrt(float(np.sum(residuals ** 2)) / (n - 2))
        sxx = float(np.sum((x - x.mean()) ** 2))
        t_crit = float(stats.t.ppf(0.975, n - 2))
        half_width = t_crit * s * math.sqrt(1 + 1 / n + (x0 - x.mean()) ** 2 / sxx)

        return Prediction(
            campaign_id=campaign_id,
            horizon_days=days,
            point_estimate=max(point, 0.0),
            confidence_interval=ConfidenceInterval(
                lower=max(point - half_width, 0.0),
                upper=max(point + half_width, 0.0),
            ),
            model_used=ModelUsed.REGRESSION,
            interval_flagged=False,
            sample_count=n,
            r_squared=r_squared,
            slope=float(fit.slope),
            last_observed=float(y[-1]),
            trend=self.engine.fit_trend("cpa", daily).classification,
        )

    def _fallback(
        self,
        campaign_id: str,
        values: list[float],
        days: int,
        reason: str,
        daily: list[DailyMetrics],
        r_squared: Optional[float] = None,
    ) -> Prediction:
        """Last observed CPA carried forward with a deliberately wide interval."""
        n = len(values)
        point = float(values[-1]) if values else 0.0
        std = float(np.std(values, ddof=1)) if n > 1 else 0.0
        spread = (
            self.settings.fallback_interval_multiplier * Z_95 * std * math.sqrt(1 + days / n)
            if n else 0.0
        )
        half_width = max(spread, self.settings.fallback_min_relative_width * point)

        return Prediction(
            campaign_id=campaign_id,
            horizon_days=days,
            point_estimate=point,
            confidence_interval=ConfidenceInterval(
                lower=max(point - half_width, 0.0),
                upper=point + half_width,
            ),
            model_used=ModelUsed.FALLBACK,
            interval_flagged=True,
            fallback_reason=reason,
            sample_count=n,
            r_squared=r_squared,
            last_observed=point if values else None,
            trend=self.engine.fit_trend("cpa", daily).classification,
        )
