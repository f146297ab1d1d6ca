# client_behavior.py - PER-CLIENT NEXT-VISIT PREDICTION
# For every regular client (5+ pickups) estimates, for one target date:
# 1. How likely they are to show up (frequency, recency, regularity, season)
# 2. How much they will bring (recency-weighted, trend-adjusted)
# 3. When they usually arrive (median minute of day)
# 4. How much to trust all of the above

import logging
import math

import numpy as np
import pandas as pd

import config
from auto_learning import adjust_confidence
from data_processing import days_between
from models import ClientPrediction

logger = logging.getLogger(__name__)


def format_minutes(minutes):
    minutes = int(minutes)
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


class ClientBehaviorPredictor:
    """
    Predicts which clients will come in on a given date.

    Thinks like: "Hotel Azul has dropped off about 500 lbs every Monday
    morning for ten weeks. Unless something changed, they'll be here next
    Monday around nine."
    """

    def __init__(self, behavior_config=None):
        self.behavior_config = {
            'min_records': 5,
            'min_likelihood': 0.15,
            'recency_decay_days': 14,
            'weight_decay': 0.9,
            'trend_influence': 0.3,
            'min_trend_records': 3,
            'recent_days': config.RECENT_ACTIVITY_DAYS,
            'volume_target': 20,
            'recent_target': 10,
            # data points, recent activity, consistency, variability
            'factor_weights': (0.3, 0.2, 0.3, 0.2),
        }
        self.behavior_config.update(behavior_config or {})

    def predict(self, dataset, target_date, now=None,
                confidence_threshold=config.DEFAULT_CONFIDENCE_THRESHOLD, confidence_multiplier=1.0):
        """
        Predictions for `target_date` whose adjusted confidence reaches the
        threshold, best (likelihood x confidence) first.
        """
        now = now or dataset.as_of
        target_date = pd.Timestamp(target_date).date()
        names = dataset.client_names

        pickups = dataset.pickups
        pickups = pickups[(pickups['timestamp'] <= now) & (pickups['client_id'] != 'unknown')]

        candidates = []
        for client_id, records in pickups.groupby('client_id', sort=True):
            prediction = self._predict_client(
                client_id, records, target_date, now, names, confidence_multiplier
            )
            if prediction is not None:
                candidates.append(prediction)

        surfaced = [p for p in candidates if p.confidence >= confidence_threshold]
        surfaced.sort(key=lambda p: p.likelihood * p.confidence, reverse=True)

        logger.info(
            "Client predictions for %s: %d of %d likely clients at or above %.0f%% confidence",
            target_date, len(surfaced), len(candidates), confidence_threshold * 100,
        )
        return surfaced

    def _predict_client(self, client_id, records, target_date, now, names, multiplier):
        cfg = self.behavior_config
        n = len(records)
        if n < cfg['min_records']:
            return None

        records = records.sort_values('timestamp', kind='stable')
        timestamps = records['timestamp']
        weekdays = timestamps.dt.dayofweek
        present_days = set(weekdays)
        weekly_presence = tuple(day in present_days for day in range(7))

        target_dow = target_date.weekday()
        same_day = records[weekdays == target_dow]
        days_ago = days_between(now, timestamps)

        # Step 1: Base frequency on the target weekday
        weeks_observed = max(1.0, days_ago.iloc[0] / 7)
        base_likelihood = len(same_day) / weeks_observed

        # Step 2: Recency
        days_since_last = max(0.0, float(days_ago.iloc[-1]))
        recency_factor = math.exp(-days_since_last / cfg['recency_decay_days'])

        # Step 3: Regularity of same-weekday visits
        intervals = np.diff(same_day['timestamp'].to_numpy()) / np.timedelta64(1, 'D')
        consistency_factor = 1.0
        if len(intervals) > 1 and intervals.mean() > 0:
            consistency_factor = max(0.1, 1 - intervals.std() / intervals.mean())

        # Step 4: Seasonality within this client's own history
        seasonal_factor = self._seasonal_factor(records, now)

        likelihood = min(1.0, base_likelihood * recency_factor * consistency_factor * seasonal_factor)
        if likelihood < cfg['min_likelihood']:
            return None

        # Step 5: Weight
        same_weights = same_day['weight'].to_numpy(dtype=float)
        recent_weights = records.loc[days_ago <= cfg['recent_days'], 'weight']
        if len(same_weights):
            decay = cfg['weight_decay'] ** np.arange(len(same_weights) - 1, -1, -1)
            predicted_weight = float(np.dot(same_weights, decay) / decay.sum())
            if len(recent_weights) >= cfg['min_trend_records']:
                slope = (recent_weights.iloc[-1] - recent_weights.iloc[0]) / len(recent_weights)
                predicted_weight += cfg['trend_influence'] * slope
        else:
            predicted_weight = float(records['weight'].mean()) * seasonal_factor
        predicted_weight = max(0.0, predicted_weight)

        # Step 6: Arrival time
        minutes = np.sort((same_day['timestamp'].dt.hour * 60 + same_day['timestamp'].dt.minute).to_numpy())
        predicted_minutes = minutes[len(minutes) // 2] if len(minutes) else config.DEFAULT_PICKUP_MINUTES

        # Step 7: Confidence
        if len(same_weights) > 1:
            spread = math.sqrt(np.mean((same_weights - predicted_weight) ** 2))
            variability_factor = max(0.1, 1 - spread / max(predicted_weight, 1))
        else:
            variability_factor = 0.5

        w_points, w_recent, w_consistency, w_variability = cfg['factor_weights']
        raw_confidence = min(1.0, likelihood * (
            min(1.0, n / cfg['volume_target']) * w_points
            + min(1.0, len(recent_weights) / cfg['recent_target']) * w_recent
            + consistency_factor * w_consistency
            + variability_factor * w_variability
        ))

        return ClientPrediction(
            client_id=client_id,
            client_name=names.get(client_id, client_id),
            target_date=target_date,
            likelihood=float(likelihood),
            predicted_weight=predicted_weight,
            predicted_time=format_minutes(predicted_minutes),
            raw_confidence=float(raw_confidence),
            confidence=adjust_confidence(raw_confidence, multiplier),
            days_since_last_seen=int(days_since_last),
            weekly_presence=weekly_presence,
        )

    def _seasonal_factor(self, records, now):
        """This month's mean pickup weight against the mean of the monthly means."""
        monthly = records.groupby(records['timestamp'].dt.to_period('M'))['weight'].mean()
        current = monthly.get(pd.Period(now, freq='M'))
        overall = monthly.mean()
        if current is None or not overall > 0:
            return 1.0
        return float(current / overall)
