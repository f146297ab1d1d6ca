import logging
from datetime import timedelta

import numpy as np

import config
from client_behavior import ClientBehaviorPredictor
from auto_learning import adjust_confidence
from data_processing import days_between
from models import (
    CLIENT_ACTIVITY_KEY, ENSEMBLE_WEIGHT_KEY, PATTERN_WEIGHT_KEY, DayForecast,
)
from weekly_patterns import WeeklyPatternAnalyzer

logger = logging.getLogger(__name__)

HOLIDAYS = {(1, 1), (7, 4), (12, 25)}


def clamp_forecast_days(num_days):
    return max(config.MIN_FORECAST_DAYS, min(config.MAX_FORECAST_DAYS, int(num_days)))


def staffing_recommendation(weight, confidence):
    if confidence <= 0.6:
        return "Normal staffing (Low confidence - monitor actual data)"
    if weight > 1400:
        return "Heavy day - Add 2+ extra staff"
    if weight > 1000:
        return "Busy day - Add 1 extra staff"
    if weight > 600:
        return "Normal+ day - Monitor closely"
    if weight < 300:
        return "Light day - Reduced staffing possible"
    return "Normal staffing"


class EnsembleDayForecaster:
    """
    Multi-day workload forecast that blends three independent opinions.

    Thinks like: "The calendar says Mondays are heavy, the regulars I expect
    add up to 900 lbs, and the last few Mondays have been climbing. Where do
    they agree, and how sure can I be?"

    Model A: the weekday pattern, with weekend and Monday adjustments.
    Model B: the sum of the clients expected that day.
    Model C: the week-over-week trend of the same weekday.
    """

    def __init__(self, pattern_analyzer=None, client_predictor=None, forecast_config=None):
        self.pattern_analyzer = pattern_analyzer or WeeklyPatternAnalyzer()
        self.client_predictor = client_predictor or ClientBehaviorPredictor()
        self.forecast_config = {
            'client_confidence_threshold': config.DEFAULT_CONFIDENCE_THRESHOLD,
            'trend_lookback_days': config.TREND_LOOKBACK_DAYS,
            'recent_days': config.RECENT_ACTIVITY_DAYS,
            'min_trend_entries': 4,
            'min_trend_weeks': 3,
            'full_trend_weeks': 8,
            'drift_bounds': (0.5, 1.5),
            'revenue_per_pound': config.DEFAULT_REVENUE_PER_POUND,
            # pattern, clients, agreement, horizon
            'confidence_weights': (0.4, 0.3, 0.2, 0.1),
            'horizon_decay': 0.05,
        }
        self.forecast_config.update(forecast_config or {})

    def forecast(self, dataset, num_days=config.DEFAULT_FORECAST_DAYS, now=None,
                 patterns=None, adjustments=None):
        """DayForecasts for today and the following days, today first."""
        now = now or dataset.as_of
        adjustments = adjustments or {}
        num_days = clamp_forecast_days(num_days)

        if patterns is None:
            patterns = self.pattern_analyzer.analyze(
                dataset, now, adjustments.get(PATTERN_WEIGHT_KEY, 1.0)
            )
        patterns_by_day = {p.day_of_week: p for p in patterns}

        # Week buckets and client drift are fixed for the whole run
        drift = self._client_drift(dataset, now)
        trend_frame = self._trend_frame(dataset, now)

        forecasts = []
        for days_ahead in range(num_days):
            target_date = now.date() + timedelta(days=days_ahead)
            pattern = patterns_by_day[target_date.weekday()]
            client_predictions = self.client_predictor.predict(
                dataset, target_date, now,
                confidence_threshold=self.forecast_config['client_confidence_threshold'],
                confidence_multiplier=adjustments.get(CLIENT_ACTIVITY_KEY, 1.0),
            )
            forecasts.append(self._forecast_day(
                target_date, days_ahead, pattern, client_predictions, drift, trend_frame,
                adjustments.get(ENSEMBLE_WEIGHT_KEY, 1.0),
            ))

        if forecasts:
            logger.info(
                "Forecast %d days from %s: %.0f lbs total, mean confidence %.0f%%",
                len(forecasts), forecasts[0].date,
                sum(f.total_predicted_weight for f in forecasts),
                100 * np.mean([f.confidence_level for f in forecasts]),
            )
        return forecasts

    def _forecast_day(self, target_date, days_ahead, pattern, client_predictions, drift,
                      trend_frame, ensemble_multiplier):
        cfg = self.forecast_config
        day_of_week = target_date.weekday()
        is_weekend = day_of_week >= 5
        is_monday = day_of_week == 0

        # --- Model A: weekday pattern ---
        pattern_weight = pattern.avg_weight
        pattern_entries = pattern.avg_entries
        client_count = pattern.avg_client_count
        if is_weekend and pattern.confidence > 0.6:
            pattern_weight *= 0.7
            pattern_entries *= 0.6
            client_count *= 0.5
        if is_monday and pattern.confidence > 0.5:
            pattern_weight *= 1.2
            pattern_entries *= 1.3

        models = [(pattern_weight, pattern_entries, pattern.confidence)]
        has_data = pattern.sample_days > 0

        # --- Model B: expected clients ---
        qualifying = [
            cp for cp in client_predictions
            if cp.weekly_presence[day_of_week] and cp.likelihood > 0.3 and cp.days_since_last_seen < 7
        ]
        client_confidence = 0.0
        if qualifying:
            client_weight = sum(
                cp.predicted_weight * drift.get(cp.client_id, 1.0) * cp.likelihood * cp.confidence
                for cp in qualifying
            )
            client_confidence = float(np.mean([cp.confidence for cp in qualifying]))
            models.append((client_weight, len(qualifying), client_confidence))
            has_data = True

        # --- Model C: same-weekday trend ---
        trend_model = self._trend_model(trend_frame, day_of_week, pattern_entries)
        if trend_model is not None:
            models.append(trend_model)
            has_data = True

        # --- Ensemble ---
        weights = np.array([m[0] for m in models], dtype=float)
        entries = np.array([m[1] for m in models], dtype=float)
        confidences = np.array([m[2] for m in models], dtype=float)
        if confidences.sum() > 0:
            total_weight = float(np.dot(weights, confidences) / confidences.sum())
            total_entries = float(np.dot(entries, confidences) / confidences.sum())
        else:
            total_weight, total_entries = pattern_weight, pattern_entries

        model_variance = float(np.mean((weights - total_weight) ** 2)) if len(models) > 1 else 0.0
        if len(models) > 1:
            agreement = max(0.0, 1 - np.sqrt(model_variance) / max(total_weight, 1))
        else:
            agreement = 0.5

        if has_data:
            w_pattern, w_clients, w_agreement, w_horizon = cfg['confidence_weights']
            horizon = max(0.0, 1 - cfg['horizon_decay'] * days_ahead)
            raw_confidence = min(1.0, pattern.confidence * w_pattern + client_confidence * w_clients
                                 + agreement * w_agreement + horizon * w_horizon)
            confidence = adjust_confidence(raw_confidence, ensemble_multiplier)
        else:
            confidence = 0.0

        # --- Peaks, revenue, staffing ---
        peak_hours = {pattern.peak_hour}
        client_hours = {}
        for cp in qualifying:
            hour = int(cp.predicted_time.split(':')[0])
            client_hours[hour] = client_hours.get(hour, 0.0) + cp.likelihood
        if client_hours:
            peak_hours.add(min(client_hours, key=lambda hour: (-client_hours[hour], hour)))
        peak_hours = tuple(sorted(peak_hours))

        if pattern.avg_revenue > 0 and pattern.avg_weight > 0:
            revenue_rate = pattern.avg_revenue / pattern.avg_weight
        else:
            revenue_rate = cfg['revenue_per_pound']
        total_weight = max(0.0, total_weight)

        critical_factors = self._critical_factors(
            target_date, days_ahead, confidence, pattern, qualifying, client_count,
            len(models), model_variance, total_weight, peak_hours,
        )

        return DayForecast(
            date=target_date,
            day_name=config.DAY_NAMES[day_of_week],
            days_ahead=days_ahead,
            total_predicted_weight=round(total_weight),
            total_predicted_entries=round(max(0.0, total_entries)),
            total_predicted_revenue=round(total_weight * revenue_rate),
            predicted_client_count=round(max(0.0, client_count)),
            confidence_level=float(confidence),
            peak_hours=peak_hours,
            staffing_recommendation=staffing_recommendation(total_weight, confidence),
            critical_factors=tuple(critical_factors),
            model_count=len(models),
        )

    def _client_drift(self, dataset, now):
        """Per-client ratio of last-30-day mean weight to overall mean, clamped."""
        pickups = dataset.pickups[dataset.pickups['timestamp'] <= now]
        if pickups.empty:
            return {}
        low, high = self.forecast_config['drift_bounds']
        recent_mask = days_between(now, pickups['timestamp']) <= self.forecast_config['recent_days']
        overall = pickups.groupby('client_id')['weight'].mean()
        recent = pickups[recent_mask].groupby('client_id')['weight'].mean()
        drift = {}
        for client_id, recent_mean in recent.items():
            if overall[client_id] > 0:
                drift[client_id] = float(min(high, max(low, recent_mean / overall[client_id])))
        return drift

    def _trend_frame(self, dataset, now):
        pickups = dataset.pickups[dataset.pickups['timestamp'] <= now]
        days_ago = days_between(now, pickups['timestamp'])
        recent = pickups[days_ago <= self.forecast_config['trend_lookback_days']]
        return recent.assign(
            day_of_week=recent['timestamp'].dt.dayofweek,
            week=(days_ago[recent.index] // 7).astype(int),
        )

    def _trend_model(self, trend_frame, day_of_week, pattern_entries):
        cfg = self.forecast_config
        same_day = trend_frame[trend_frame['day_of_week'] == day_of_week]
        if len(same_day) < cfg['min_trend_entries']:
            return None
        # Higher week index is further back in time
        weekly_totals = same_day.groupby('week')['weight'].sum().sort_index(ascending=False)
        if len(weekly_totals) < cfg['min_trend_weeks']:
            return None
        totals = weekly_totals.to_numpy(dtype=float)
        trend = (totals[-1] - totals[0]) / len(totals)
        return (
            max(0.0, totals.mean() + trend),
            pattern_entries,
            min(1.0, len(totals) / cfg['full_trend_weeks']),
        )

    def _critical_factors(self, target_date, days_ahead, confidence, pattern, qualifying,
                          client_count, model_count, model_variance, total_weight, peak_hours):
        factors = []
        if confidence < 0.4:
            factors.append("Low prediction confidence - high uncertainty")
        elif confidence < 0.6:
            factors.append("Moderate confidence - monitor closely")

        if qualifying and len(qualifying) > client_count * 0.8:
            factors.append("High confirmed client activity")
        if model_count > 1 and model_variance > total_weight * 0.3:
            factors.append("Model disagreement - volatile conditions")

        day_of_week = target_date.weekday()
        if day_of_week == 0 and pattern.confidence > 0.5:
            factors.append("Monday buildup effect expected")
        if day_of_week >= 5:
            factors.append("Weekend patterns - typically reduced activity")
        if (target_date.month, target_date.day) in HOLIDAYS:
            factors.append("Holiday - expect irregular volume")
        if len(peak_hours) > 1:
            factors.append("Multiple peak periods identified")
        if days_ahead == 0:
            factors.append("Today - immediate preparation needed")
        return factors

