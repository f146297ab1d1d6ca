# backtesting.py - PREDICTIONS VS. ACTUALS
# 1. Day-by-day weight comparison over the last two weeks and the forecast horizon
# 2. Accuracy records for the pattern and client models
# 3. Accuracy records for previously logged ensemble forecasts

import logging
from datetime import datetime, time, timedelta

import pandas as pd

import config
from client_behavior import ClientBehaviorPredictor
from data_processing import build_daily_aggregates, parse_weight
from models import (
    CLIENT_ACTIVITY, CLIENT_BEHAVIOR_MODEL, ENSEMBLE_MODEL, ENTRIES, WEEKLY_PATTERN_MODEL, WEIGHT,
    AccuracyRecord, WeightComparison,
)

logger = logging.getLogger(__name__)


def error_rate(predicted, actual):
    """|predicted - actual| relative to the prediction."""
    return abs(predicted - actual) / max(predicted, config.ERROR_RATE_EPSILON)


def accuracy_label(percentage_difference, has_actual_data, predicted):
    if not has_actual_data or predicted <= 0:
        return 'N/A'
    error = abs(percentage_difference)
    if error <= 15:
        return 'High'
    if error <= 30:
        return 'Medium'
    return 'Low'


class BacktestComparator:
    """
    Lines up what we said would happen with what did happen.

    Thinks like: "Last Tuesday I expected 900 lbs and 1,020 came in. That's
    within 15%, good. This coming Tuesday I'm calling 950, a bit over the
    usual."
    """

    def __init__(self, backtest_config=None):
        self.backtest_config = {
            'history_days': config.BACKTEST_HISTORY_DAYS,
        }
        self.backtest_config.update(backtest_config or {})

    def compare(self, dataset, patterns, forecasts, now=None, num_days=None):
        """WeightComparisons for offsets [-history_days, num_days) around today, by date."""
        now = now or dataset.as_of
        if num_days is None:
            num_days = len(forecasts) or config.DEFAULT_FORECAST_DAYS

        daily = build_daily_aggregates(dataset)
        patterns_by_day = {p.day_of_week: p for p in patterns}
        forecasts_by_date = {f.date: f for f in forecasts}
        today = now.date()

        comparisons = []
        for offset in range(-self.backtest_config['history_days'], num_days):
            day = today + timedelta(days=offset)
            key = pd.Timestamp(day)
            if key in daily.index:
                actual = daily.loc[key]
                actual_weight = float(actual['weight'])
                entry_count = int(actual['entry_count'])
                client_count = int(actual['client_count'])
            else:
                actual_weight, entry_count, client_count = 0.0, 0, 0

            pattern = patterns_by_day.get(day.weekday())
            average_weight = pattern.avg_weight if pattern else 0.0
            forecast = forecasts_by_date.get(day)
            predicted_weight = float(forecast.total_predicted_weight) if forecast else average_weight

            has_actual_data = offset < 0
            if has_actual_data:
                difference = actual_weight - predicted_weight
            else:
                difference = predicted_weight - average_weight
            percentage = difference / predicted_weight * 100 if predicted_weight > 0 else 0.0

            comparisons.append(WeightComparison(
                date=day,
                day_name=config.DAY_NAMES[day.weekday()],
                average_weight=average_weight,
                predicted_weight=predicted_weight,
                actual_pickup_weight=actual_weight,
                difference=difference,
                percentage_difference=percentage,
                accuracy=accuracy_label(percentage, has_actual_data, predicted_weight),
                has_actual_data=has_actual_data,
                client_count=client_count,
                entry_count=entry_count,
            ))

        labelled = [c for c in comparisons if c.accuracy != 'N/A']
        logger.info(
            "Compared %d days, %d with actuals (%d high accuracy)",
            len(comparisons), len(labelled), sum(c.accuracy == 'High' for c in labelled),
        )
        return comparisons


def build_accuracy_records(dataset, comparisons, patterns, now=None, client_predictor=None):
    """
    Accuracy records for the pattern model (weight and entries) and the
    client model. Client activity is scored by predicting yesterday from the
    snapshot as it stood before yesterday began.
    """
    now = now or dataset.as_of
    records = []

    patterns_by_day = {p.day_of_week: p for p in patterns}
    for comp in comparisons:
        if not comp.has_actual_data:
            continue
        if comp.predicted_weight > 0:
            records.append(AccuracyRecord(
                date=comp.date,
                model_name=WEEKLY_PATTERN_MODEL,
                prediction_type=WEIGHT,
                predicted_value=comp.predicted_weight,
                actual_value=comp.actual_pickup_weight,
                error_rate=error_rate(comp.predicted_weight, comp.actual_pickup_weight),
            ))
        pattern = patterns_by_day.get(comp.date.weekday())
        if pattern is not None and pattern.avg_entries > 0:
            records.append(AccuracyRecord(
                date=comp.date,
                model_name=WEEKLY_PATTERN_MODEL,
                prediction_type=ENTRIES,
                predicted_value=pattern.avg_entries,
                actual_value=comp.entry_count,
                error_rate=error_rate(pattern.avg_entries, comp.entry_count),
            ))

    records.extend(client_activity_records(dataset, now, client_predictor))
    logger.info("Built %d accuracy records", len(records))
    return records


def client_activity_records(dataset, now=None, client_predictor=None):
    now = now or dataset.as_of
    client_predictor = client_predictor or ClientBehaviorPredictor()
    yesterday = now.date() - timedelta(days=1)
    yesterday_start = datetime.combine(yesterday, time.min)

    # Only what was known before yesterday began
    before = dataset.truncated(yesterday_start)
    predictions = client_predictor.predict(before, yesterday, yesterday_start, confidence_threshold=0.0)

    pickups = dataset.pickups
    day_mask = pickups['timestamp'].dt.normalize() == pd.Timestamp(yesterday)
    showed_up = set(pickups.loc[day_mask, 'client_id'])

    records = []
    for prediction in predictions:
        actual = 1.0 if prediction.client_id in showed_up else 0.0
        records.append(AccuracyRecord(
            date=yesterday,
            model_name=CLIENT_BEHAVIOR_MODEL,
            prediction_type=CLIENT_ACTIVITY,
            predicted_value=prediction.likelihood,
            actual_value=actual,
            error_rate=error_rate(prediction.likelihood, actual),
            client_id=prediction.client_id,
        ))
    return records


def forecast_log_accuracy(log_entries, dataset, now=None):
    """
    Scores previously logged forecasts against actual daily totals.

    `log_entries` are forecast_log documents with at least `date`,
    `total_predicted_weight` and `total_predicted_entries`. Only days that
    are over (before today) are scored.
    """
    now = now or dataset.as_of
    log = pd.DataFrame(list(log_entries))
    if log.empty or 'date' not in log:
        return []

    log['day'] = pd.to_datetime(log['date'], errors='coerce').dt.normalize()
    log = log.dropna(subset=['day'])
    log = log[log['day'] < pd.Timestamp(now.date())]

    daily = build_daily_aggregates(dataset)
    actuals = daily[['weight', 'entry_count']].reset_index()
    # Days without pickups count as zero actual volume
    comparison = pd.merge(log, actuals, on='day', how='left').fillna({'weight': 0.0, 'entry_count': 0})

    records = []
    for _, row in comparison.iterrows():
        day = row['day'].date()
        for prediction_type, predicted_column, actual_column in (
            (WEIGHT, 'total_predicted_weight', 'weight'),
            (ENTRIES, 'total_predicted_entries', 'entry_count'),
        ):
            predicted = parse_weight(row.get(predicted_column))
            if not predicted:
                continue
            actual = float(row[actual_column])
            records.append(AccuracyRecord(
                date=day,
                model_name=ENSEMBLE_MODEL,
                prediction_type=prediction_type,
                predicted_value=float(predicted),
                actual_value=actual,
                error_rate=error_rate(float(predicted), actual),
            ))
    logger.info("Scored %d logged forecast values against actuals", len(records))
    return records
