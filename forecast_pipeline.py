# forecast_pipeline.py - ENTRY POINTS AND THE ADAPTIVE RUN
# 1. Thin compute_* functions, one per engine, for callers that need one piece
# 2. run_pipeline: patterns and clients in parallel, backtest, learn, recompute

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import config
from auto_learning import AdaptiveConfidenceLearner, record_document_id
from backtesting import BacktestComparator, build_accuracy_records, forecast_log_accuracy
from client_behavior import ClientBehaviorPredictor
from data_processing import parse_timestamp
from forecasting import EnsembleDayForecaster, clamp_forecast_days
from intelligent_engine import ForecastAnalyzer, detect_trends, generate_smart_insights
from models import CLIENT_ACTIVITY_KEY, PATTERN_WEIGHT_KEY, PipelineResult
from weekly_patterns import WeeklyPatternAnalyzer

logger = logging.getLogger(__name__)


def resolve_now(dataset, now=None):
    """The caller's `now` on the dataset's clock, or the snapshot time."""
    if now is None:
        return dataset.as_of
    resolved = parse_timestamp(now, config.LOCAL_TIMEZONE)
    if resolved is None:
        raise ValueError(f"Unreadable time: {now!r}")
    return resolved


def compute_weekly_patterns(dataset, now=None, adjustments=None):
    adjustments = adjustments or {}
    return WeeklyPatternAnalyzer().analyze(
        dataset, resolve_now(dataset, now), adjustments.get(PATTERN_WEIGHT_KEY, 1.0)
    )


def compute_client_predictions(dataset, target_date, confidence_threshold=config.DEFAULT_CONFIDENCE_THRESHOLD,
                               now=None, adjustments=None):
    adjustments = adjustments or {}
    return ClientBehaviorPredictor().predict(
        dataset, target_date, resolve_now(dataset, now),
        confidence_threshold=confidence_threshold,
        confidence_multiplier=adjustments.get(CLIENT_ACTIVITY_KEY, 1.0),
    )


def compute_day_forecasts(dataset, num_days=config.DEFAULT_FORECAST_DAYS, now=None, adjustments=None,
                          patterns=None):
    return EnsembleDayForecaster().forecast(
        dataset, num_days, resolve_now(dataset, now), patterns=patterns, adjustments=adjustments
    )


def compute_weight_comparisons(dataset, forecasts, now=None, patterns=None):
    now = resolve_now(dataset, now)
    if patterns is None:
        patterns = WeeklyPatternAnalyzer().analyze(dataset, now)
    return BacktestComparator().compare(dataset, patterns, forecasts, now)


def compute_confidence_adjustments(accuracy_records):
    return AdaptiveConfidenceLearner().compute_adjustments(accuracy_records)


def merge_accuracy_records(history, new_records):
    """History plus new records, a new record replacing a stored one with the same identity."""
    merged = {record_document_id(r): r for r in history}
    merged.update((record_document_id(r), r) for r in new_records)
    return sorted(merged.values(), key=lambda r: r.date)


def run_pipeline(dataset, now=None, num_days=config.DEFAULT_FORECAST_DAYS, accuracy_history=(),
                 max_workers=2, forecast_log=(), confidence_threshold=config.DEFAULT_CONFIDENCE_THRESHOLD):
    """
    One complete, self-correcting forecast run.

    Steps:
    1. Raw weekly patterns (and tomorrow's clients) in parallel
    2. Backtest the raw patterns, the client model and logged forecasts
    3. Learn confidence multipliers from stored plus new accuracy records
    4. Recompute patterns and clients with the multipliers, in parallel
    5. Forecast, compare, analyse and summarise
    """
    now = resolve_now(dataset, now)
    num_days = clamp_forecast_days(num_days)
    tomorrow = now.date() + timedelta(days=1)

    analyzer = WeeklyPatternAnalyzer()
    predictor = ClientBehaviorPredictor()
    forecaster = EnsembleDayForecaster(analyzer, predictor)
    comparator = BacktestComparator()
    learner = AdaptiveConfidenceLearner()

    logger.info(
        "Pipeline run at %s: %d pickups, %d invoices, %d clients, %d days ahead",
        now, len(dataset.pickups), len(dataset.invoices), len(dataset.clients), num_days,
    )

    # Step 1: Raw pass
    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        patterns_future = pool.submit(analyzer.analyze, dataset, now)
        clients_future = pool.submit(predictor.predict, dataset, tomorrow, now, confidence_threshold)
        raw_patterns = patterns_future.result()
        raw_clients = clients_future.result()
    logger.debug("Raw pass: %d client predictions for %s", len(raw_clients), tomorrow)

    # Step 2: Backtest
    raw_comparisons = comparator.compare(dataset, raw_patterns, [], now, num_days)
    new_records = build_accuracy_records(dataset, raw_comparisons, raw_patterns, now, predictor)
    new_records += forecast_log_accuracy(forecast_log, dataset, now)

    # Step 3: Learn
    all_records = merge_accuracy_records(accuracy_history, new_records)
    adjustments = learner.compute_adjustments(all_records)

    # Step 4: Adjusted pass
    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        patterns_future = pool.submit(
            analyzer.analyze, dataset, now, adjustments.get(PATTERN_WEIGHT_KEY, 1.0)
        )
        clients_future = pool.submit(
            predictor.predict, dataset, tomorrow, now, confidence_threshold,
            adjustments.get(CLIENT_ACTIVITY_KEY, 1.0),
        )
        patterns = patterns_future.result()
        client_predictions = clients_future.result()

    # Step 5: Forecast and explain
    forecasts = forecaster.forecast(dataset, num_days, now, patterns=patterns, adjustments=adjustments)
    comparisons = comparator.compare(dataset, patterns, forecasts, now, num_days)
    analyses = ForecastAnalyzer().analyze_forecasts(forecasts, patterns)
    insights = generate_smart_insights(analyses, detect_trends(analyses))

    return PipelineResult(
        as_of=now,
        weekly_patterns=patterns,
        client_predictions=client_predictions,
        day_forecasts=forecasts,
        weight_comparisons=comparisons,
        accuracy_records=new_records,
        confidence_adjustments=adjustments,
        analyses=analyses,
        insights=insights,
        improvements=learner.improvement_log(adjustments),
    )
