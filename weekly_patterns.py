# weekly_patterns.py - DAY-OF-WEEK WORKLOAD PATTERNS
# Builds one robust profile per weekday from the daily aggregates:
# 1. Outlier detection with the IQR rule
# 2. Blended statistics (typical days weigh 70%, unusual days 30%)
# 3. Multi-factor confidence scoring
# 4. Recency-weighted peak hour
# 5. Advisory recommendations for the schedule board

import logging

import numpy as np
import pandas as pd

import config
from auto_learning import adjust_confidence
from data_processing import build_daily_aggregates, days_between, window_bounds
from models import WeeklyPattern

logger = logging.getLogger(__name__)


def detect_outliers(values, min_samples=5, iqr_multiplier=1.5):
    """
    Boolean mask of IQR outliers. Quartiles are read straight off the sorted
    values (Q1 = v[floor(n/4)], Q3 = v[floor(3n/4)]); with fewer than
    `min_samples` values nothing is flagged.
    """
    values = np.asarray(values, dtype=float)
    n = len(values)
    if n < min_samples:
        return np.zeros(n, dtype=bool)

    ordered = np.sort(values)
    q1 = ordered[int(n * 0.25)]
    q3 = ordered[int(n * 0.75)]
    iqr = q3 - q1
    return (values < q1 - iqr_multiplier * iqr) | (values > q3 + iqr_multiplier * iqr)


def blended_mean(values, outlier_mask, normal_share=0.7):
    """normal_share x mean(normal) + rest x mean(outliers), an empty side counting as 0."""
    values = np.asarray(values, dtype=float)
    normal = values[~outlier_mask]
    unusual = values[outlier_mask]
    normal_mean = normal.sum() / max(len(normal), 1)
    unusual_mean = unusual.mean() if len(unusual) else 0.0
    return normal_share * normal_mean + (1 - normal_share) * unusual_mean


class WeeklyPatternAnalyzer:
    """
    Learns what a typical Monday, Tuesday, ... looks like.

    Thinks like: "Most Tuesdays bring about 900 lbs, but one Tuesday last
    month brought 2,000. That day really happened, so I keep it in mind,
    I just don't let it drag the whole average around."
    """

    def __init__(self, pattern_config=None):
        self.pattern_config = {
            'lookback_days': config.PATTERN_LOOKBACK_DAYS,
            'min_outlier_samples': 5,
            'iqr_multiplier': 1.5,
            'normal_share': 0.7,
            'volume_target_days': 8,
            'recent_days': config.RECENT_ACTIVITY_DAYS,
            'recency_decay_days': 30,
            # volume, recency, variability, outlier penalty
            'factor_weights': (0.3, 0.3, 0.3, 0.1),
        }
        self.pattern_config.update(pattern_config or {})

    def analyze(self, dataset, now=None, confidence_multiplier=1.0):
        """Returns seven WeeklyPatterns, Monday first."""
        now = now or dataset.as_of
        start, end = window_bounds(now, self.pattern_config['lookback_days'])

        daily = build_daily_aggregates(dataset)
        daily = daily[(daily.index >= start) & (daily.index <= end)]

        pickups = dataset.pickups
        pickups = pickups[(pickups['timestamp'] >= start) & (pickups['timestamp'] <= end)]

        patterns = []
        for day_of_week in range(7):
            day_daily = daily[daily.index.dayofweek == day_of_week]
            day_pickups = pickups[pickups['timestamp'].dt.dayofweek == day_of_week]
            patterns.append(
                self._build_pattern(day_of_week, day_daily, day_pickups, now, confidence_multiplier)
            )

        logger.info(
            "Weekly patterns: %s",
            ", ".join(f"{p.day_name[:3]} {p.confidence:.0%}" for p in patterns),
        )
        return patterns

    def _build_pattern(self, day_of_week, day_daily, day_pickups, now, multiplier):
        cfg = self.pattern_config
        n = len(day_daily)
        if n == 0:
            return self._empty_pattern(day_of_week)

        # Step 1: Flag unusual dates by total weight
        weights = day_daily['weight'].to_numpy(dtype=float)
        outliers = detect_outliers(weights, cfg['min_outlier_samples'], cfg['iqr_multiplier'])
        outlier_count = int(outliers.sum())
        normal_count = n - outlier_count

        # Step 2: Blended statistics
        share = cfg['normal_share']
        avg_weight = blended_mean(weights, outliers, share)
        avg_entries = blended_mean(day_daily['entry_count'], outliers, share)
        avg_revenue = blended_mean(day_daily['revenue'], outliers, share)
        avg_clients = blended_mean(day_daily['client_count'], outliers, share)

        # Step 3: Confidence
        days_ago = days_between(now, day_daily.index.to_series())
        recent_dates = int((days_ago <= cfg['recent_days']).sum())

        volume_factor = min(1.0, n / cfg['volume_target_days'])
        recency_factor = min(1.0, recent_dates / max(4, 0.3 * n))
        normal_weights = weights[~outliers]
        if len(normal_weights) > 1:
            variability_factor = max(0.1, 1 - normal_weights.std() / max(avg_weight, 1))
        else:
            variability_factor = 0.5
        outlier_penalty = max(0.7, 1 - 0.5 * outlier_count / n)

        w_volume, w_recency, w_variability, w_outlier = cfg['factor_weights']
        raw_confidence = min(1.0, max(0.0,
            volume_factor * w_volume
            + recency_factor * w_recency
            + variability_factor * w_variability
            + outlier_penalty * w_outlier
        ))
        confidence = adjust_confidence(raw_confidence, multiplier)

        # Step 4: Peak hour
        peak_hour = self._peak_hour(day_pickups, now)

        recommendations = self._recommendations(
            avg_weight, avg_entries, raw_confidence, confidence, multiplier,
            outlier_count, normal_count, peak_hour, day_pickups, now,
        )

        return WeeklyPattern(
            day_of_week=day_of_week,
            day_name=config.DAY_NAMES[day_of_week],
            avg_weight=float(avg_weight),
            avg_entries=float(avg_entries),
            avg_revenue=float(avg_revenue),
            avg_client_count=float(avg_clients),
            peak_hour=peak_hour,
            raw_confidence=float(raw_confidence),
            confidence=float(confidence),
            std_dev=float(np.std(weights, ddof=1)) if n > 1 else 0.0,
            sample_days=n,
            outlier_days=outlier_count,
            recommendations=tuple(recommendations),
        )

    def _empty_pattern(self, day_of_week):
        return WeeklyPattern(
            day_of_week=day_of_week,
            day_name=config.DAY_NAMES[day_of_week],
            avg_weight=0.0,
            avg_entries=0.0,
            avg_revenue=0.0,
            avg_client_count=0.0,
            peak_hour=config.DEFAULT_PEAK_HOUR,
            raw_confidence=0.0,
            confidence=0.0,
            recommendations=("No history for this day - collect more data",),
        )

    def _peak_hour(self, day_pickups, now):
        """Hour with the most activity: entry count plus a tenth of the recency-weighted weight."""
        if day_pickups.empty:
            return config.DEFAULT_PEAK_HOUR

        days_ago = days_between(now, day_pickups['timestamp'])
        activity = pd.DataFrame({
            'hour': day_pickups['timestamp'].dt.hour,
            'recent_weight': day_pickups['weight'] * np.exp(-days_ago / self.pattern_config['recency_decay_days']),
        })
        by_hour = activity.groupby('hour')['recent_weight'].agg(['size', 'sum'])
        score = by_hour['size'] + 0.1 * by_hour['sum']
        # idxmax keeps the earliest hour on ties
        return int(score.idxmax())

    def _recommendations(self, avg_weight, avg_entries, raw_confidence, confidence, multiplier,
                         outlier_count, normal_count, peak_hour, day_pickups, now):
        recommendations = []

        if confidence < 0.4:
            recommendations.append("Low confidence - collect more data for this day")

        if avg_weight > 1200 and confidence > 0.6:
            recommendations.append("Consistently high volume - schedule extra staff")
        elif avg_weight > 800 and confidence > 0.5:
            recommendations.append("Above average volume - monitor staffing needs")

        if avg_entries > 25 and confidence > 0.5:
            recommendations.append("High pickup frequency - optimize driver routes")

        if outlier_count > normal_count * 0.3:
            recommendations.append("Variable patterns - prepare for fluctuations")

        if peak_hour < 9:
            recommendations.append("Early peak activity - start operations early")
        elif peak_hour > 16:
            recommendations.append("Late peak activity - extend evening coverage")
        elif 12 <= peak_hour <= 14:
            recommendations.append("Lunch-time peak - maintain full staff during breaks")

        if not day_pickups.empty:
            days_ago = days_between(now, day_pickups['timestamp'])
            recent_entries = int((days_ago <= self.pattern_config['recent_days']).sum())
            if recent_entries > len(day_pickups) * 0.4:
                recommendations.append("Recent activity increase - trending upward")

        # Self-correction notes
        if multiplier > 1.2:
            recommendations.append("High prediction accuracy - confidence auto-increased")
        elif multiplier < 0.8:
            recommendations.append("Adjusting confidence based on recent accuracy")
        if confidence > raw_confidence + 0.1:
            recommendations.append("Confidence improved through accuracy tracking")

        return recommendations
