# intelligent_engine.py - FORECAST INTELLIGENCE
# This module reads a finished forecast and explains it:
# 1. Seasonality - month-of-year business multipliers
# 2. Confidence intervals - 95% bands from weekday variance
# 3. Anomaly flags - forecasts far outside the weekday's history
# 4. Trend detection - three-day rising or falling runs
# 5. Smart insights and a daily briefing for the operations team

import logging

import numpy as np

from models import ForecastAnalysis

logger = logging.getLogger(__name__)

# Month -> business multiplier
SEASONAL_FACTORS = {
    1: 1.10,   # New Year cleanup
    2: 0.95,   # slower month
    3: 1.05,   # spring cleaning
    4: 1.10,   # spring peak
    5: 1.15,   # wedding season
    6: 1.20,   # peak season
    7: 1.10,   # summer
    8: 1.05,   # back to school
    9: 1.10,   # fall cleaning
    10: 1.00,
    11: 0.90,  # pre-holiday lull
    12: 1.05,  # holiday events
}


def seasonal_multiplier(month):
    return SEASONAL_FACTORS.get(month, 1.0)


def accuracy_label(predicted, historical):
    """How closely a forecast tracks the weekday's historical average."""
    if historical == 0:
        return 'N/A'
    accuracy = 100 - abs((predicted - historical) / historical) * 100
    if accuracy >= 95:
        return 'Excellent'
    if accuracy >= 85:
        return 'Good'
    if accuracy >= 70:
        return 'Fair'
    return 'Needs Improvement'


def volatility_label(std_dev, mean):
    if mean == 0:
        return 'N/A'
    coefficient_of_variation = std_dev / mean * 100
    if coefficient_of_variation < 10:
        return 'Low'
    if coefficient_of_variation < 25:
        return 'Moderate'
    return 'High'


class ForecastAnalyzer:
    """
    Puts each forecast day next to its history.

    Thinks like: "I'm calling 1,400 lbs for Saturday, but Saturdays usually
    land around 700 give or take 100. Either something big is coming or I'm
    wrong. Flag it."
    """

    def __init__(self, analysis_config=None):
        self.analysis_config = {
            'interval_z': 1.96,
            'default_std_share': 0.15,
            'anomaly_z': 2.5,
        }
        self.analysis_config.update(analysis_config or {})

    def analyze_forecasts(self, forecasts, patterns):
        cfg = self.analysis_config
        patterns_by_day = {p.day_of_week: p for p in patterns}

        analyses = []
        previous_weight = None
        for forecast in forecasts:
            pattern = patterns_by_day.get(forecast.date.weekday())
            predicted = float(forecast.total_predicted_weight)
            historical_avg = pattern.avg_weight if pattern else 0.0
            difference = predicted - historical_avg
            percentage_diff = difference / historical_avg * 100 if historical_avg > 0 else 0.0

            if pattern is None:
                std_dev = 0.0
            else:
                std_dev = pattern.std_dev or historical_avg * cfg['default_std_share']
            margin = cfg['interval_z'] * std_dev
            z_score = abs(difference) / std_dev if std_dev > 0 else 0.0
            multiplier = seasonal_multiplier(forecast.date.month)

            analyses.append(ForecastAnalysis(
                date=forecast.date,
                day_name=forecast.day_name,
                predicted_weight=predicted,
                historical_avg=historical_avg,
                difference=difference,
                percentage_diff=percentage_diff,
                interval_lower=predicted - margin,
                interval_upper=predicted + margin,
                interval_margin=margin,
                seasonal_multiplier=multiplier,
                seasonally_adjusted_weight=predicted * multiplier,
                z_score=z_score,
                is_anomalous=z_score > cfg['anomaly_z'],
                trend=predicted - previous_weight if previous_weight is not None else 0.0,
                accuracy=accuracy_label(predicted, historical_avg),
                volatility=volatility_label(std_dev, historical_avg),
            ))
            previous_weight = predicted

        logger.info(
            "Analysed %d forecast days, %d anomalous",
            len(analyses), sum(a.is_anomalous for a in analyses),
        )
        return analyses


def detect_trends(analyses):
    """Three-day runs that strictly rise or fall; [] with fewer than three days."""
    weights = [a.predicted_weight for a in analyses]
    trends = []
    for i in range(2, len(weights)):
        first, middle, last = weights[i - 2:i + 1]
        if first < middle < last:
            trends.append({'day': i, 'date': analyses[i].date, 'type': 'increasing'})
        elif first > middle > last:
            trends.append({'day': i, 'date': analyses[i].date, 'type': 'decreasing'})
    return trends


def generate_smart_insights(analyses, trends=None):
    """
    Short, prioritised notes about the forecast as {'type', 'message'} dicts,
    type being success, info or warning.
    """
    if not analyses:
        return []
    if trends is None:
        trends = detect_trends(analyses)

    insights = []
    total = len(analyses)
    excellent = sum(a.accuracy == 'Excellent' for a in analyses)
    good = sum(a.accuracy == 'Good' for a in analyses)

    if excellent >= total * 0.7:
        insights.append({
            'type': 'success',
            'message': f"High accuracy predictions: {excellent} out of {total} days show excellent accuracy",
        })
    elif good + excellent >= total * 0.6:
        insights.append({
            'type': 'info',
            'message': f"Good prediction reliability: {good + excellent} out of {total} days "
                       f"show good or excellent accuracy",
        })
    else:
        insights.append({
            'type': 'warning',
            'message': "Prediction accuracy could be improved - consider reviewing historical data patterns",
        })

    anomalous = sum(a.is_anomalous for a in analyses)
    if anomalous:
        insights.append({
            'type': 'warning',
            'message': f"{anomalous} day(s) show anomalous predictions that deviate significantly "
                       f"from historical patterns",
        })

    increasing = sum(t['type'] == 'increasing' for t in trends)
    decreasing = sum(t['type'] == 'decreasing' for t in trends)
    if increasing > decreasing:
        insights.append({
            'type': 'info',
            'message': "Upward trend detected - workload is expected to increase over the forecast period",
        })
    elif decreasing > increasing:
        insights.append({
            'type': 'info',
            'message': "Downward trend detected - workload is expected to decrease over the forecast period",
        })

    seasonal = sum(abs(a.seasonal_multiplier - 1) > 0.05 for a in analyses)
    if seasonal:
        insights.append({
            'type': 'info',
            'message': f"{seasonal} day(s) have significant seasonal adjustments affecting predictions",
        })

    return insights


def generate_daily_briefing(forecasts, analyses, insights, improvements=()):
    """
    Plain-text briefing for the log and the operations channel.
    """
    if not forecasts:
        return "No forecast generated."

    total_weight = sum(f.total_predicted_weight for f in forecasts)
    total_revenue = sum(f.total_predicted_revenue for f in forecasts)
    peak_day = max(forecasts, key=lambda f: f.total_predicted_weight)

    briefing = [f"{len(forecasts)}-Day Outlook from {forecasts[0].date.isoformat()}"]
    briefing.append(f"- Total projected weight: {total_weight:,.0f} lbs")
    briefing.append(f"- Total projected revenue: ${total_revenue:,.0f}")
    briefing.append(
        f"- Peak day: {peak_day.day_name} {peak_day.date.isoformat()} ({peak_day.total_predicted_weight:,.0f} lbs)"
    )
    briefing.append(
        f"- Mean confidence: {100 * np.mean([f.confidence_level for f in forecasts]):.0f}%"
    )

    briefing.append("")
    for forecast in forecasts:
        briefing.append(
            f"{forecast.day_name[:3]} {forecast.date.isoformat()}: {forecast.total_predicted_weight:,.0f} lbs, "
            f"{forecast.confidence_level:.0%} - {forecast.staffing_recommendation}"
        )

    flagged = [a for a in analyses if a.is_anomalous]
    if flagged:
        briefing.append("")
        briefing.append(f"Unusual days ({len(flagged)}):")
        for analysis in flagged[:3]:
            briefing.append(
                f"- {analysis.date.isoformat()}: {analysis.predicted_weight:,.0f} lbs vs "
                f"usual {analysis.historical_avg:,.0f} (z={analysis.z_score:.1f})"
            )

    if insights:
        briefing.append("")
        briefing.extend(f"[{i['type']}] {i['message']}" for i in insights)
    if improvements:
        briefing.append("")
        briefing.extend(improvements)

    return "\n".join(briefing)
