# run_forecast.py
# Scheduled runner: Firestore snapshot in, adaptive forecast out.

import argparse
import logging
import sys
from datetime import datetime

import firebase_admin
from firebase_admin import credentials, firestore

import config
from auto_learning import AdaptiveConfidenceLearner, multiplier_changes
from data_processing import DataSourceError, fetch_forecast_log, load_dataset, parse_timestamp
from forecast_pipeline import run_pipeline
from intelligent_engine import generate_daily_briefing

logger = logging.getLogger(__name__)


def get_db():
    if not firebase_admin._apps:
        if config.CREDENTIALS_PATH:
            firebase_admin.initialize_app(credentials.Certificate(config.CREDENTIALS_PATH))
        else:
            firebase_admin.initialize_app()
    return firestore.client()


def forecast_to_document(forecast, generated_at):
    return {
        'date': forecast.date.isoformat(),
        'day_name': forecast.day_name,
        'days_ahead': forecast.days_ahead,
        'total_predicted_weight': forecast.total_predicted_weight,
        'total_predicted_entries': forecast.total_predicted_entries,
        'total_predicted_revenue': forecast.total_predicted_revenue,
        'predicted_client_count': forecast.predicted_client_count,
        'confidence_level': forecast.confidence_level,
        'peak_hours': list(forecast.peak_hours),
        'staffing_recommendation': forecast.staffing_recommendation,
        'critical_factors': list(forecast.critical_factors),
        'model_count': forecast.model_count,
        'generated_at': generated_at,
    }


def save_forecasts(db_client, forecasts, generated_at):
    """One forecast_log document per forecast date; the latest run wins."""
    try:
        collection = db_client.collection(config.FORECAST_LOG_COLLECTION)
        for forecast in forecasts:
            collection.document(forecast.date.isoformat()).set(forecast_to_document(forecast, generated_at))
        return True
    except Exception as e:
        logger.error("Failed to save forecasts: %s", e)
        return False


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Linen demand forecast with adaptive confidence")
    parser.add_argument('--days', type=int, default=config.DEFAULT_FORECAST_DAYS,
                        help=f"days to forecast ({config.MIN_FORECAST_DAYS}-{config.MAX_FORECAST_DAYS})")
    parser.add_argument('--threshold', type=float, default=config.DEFAULT_CONFIDENCE_THRESHOLD,
                        help="minimum confidence for listed client predictions")
    parser.add_argument('--lookback', type=int, default=config.PATTERN_LOOKBACK_DAYS,
                        help="days of history to load")
    parser.add_argument('--as-of', dest='as_of', default=None,
                        help="run as if it were this time (ISO format); defaults to now")
    parser.add_argument('--dry-run', action='store_true',
                        help="compute and log, but write nothing to Firestore")
    parser.add_argument('--log-level', default='INFO',
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'])
    return parser.parse_args(argv)


def main(argv=None, db_client=None):
    args = parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format=config.LOG_FORMAT)

    now = parse_timestamp(args.as_of, config.LOCAL_TIMEZONE) if args.as_of else datetime.now()
    if now is None:
        logger.error("Could not read --as-of value %r", args.as_of)
        return 2

    # 1) Load the snapshot and what we learned before
    db_client = db_client or get_db()
    learner = AdaptiveConfidenceLearner(db_client)
    try:
        dataset = load_dataset(db_client, now, args.lookback)
        forecast_log = fetch_forecast_log(db_client)
    except DataSourceError as e:
        logger.error("Forecast run aborted: %s", e)
        return 1
    accuracy_history = learner.load_accuracy_history()
    saved_adjustments = learner.load_learned_adjustments()

    # 2) Forecast
    result = run_pipeline(
        dataset, now, args.days,
        accuracy_history=accuracy_history,
        forecast_log=forecast_log,
        confidence_threshold=args.threshold,
    )
    logger.info("\n%s", generate_daily_briefing(
        result.day_forecasts, result.analyses, result.insights, result.improvements
    ))
    for prediction in result.client_predictions:
        logger.info(
            "Tomorrow: %s around %s, ~%.0f lbs (likelihood %.0f%%, confidence %.0f%%, last seen %s)",
            prediction.client_name, prediction.predicted_time, prediction.predicted_weight,
            100 * prediction.likelihood, 100 * prediction.confidence, prediction.last_seen,
        )
    for line in multiplier_changes(saved_adjustments, result.confidence_adjustments):
        logger.info("Multiplier change since last run: %s", line)

    # 3) Save results
    if args.dry_run:
        logger.info("Dry run - nothing written")
        return 0

    saved = [
        save_forecasts(db_client, result.day_forecasts, now),
        learner.record_accuracy(result.accuracy_records),
        learner.save_learning_results(result.confidence_adjustments, now),
    ]
    if not all(saved):
        logger.warning("Forecast run complete, but some results could not be saved")
    else:
        logger.info("Forecast run complete: %d days logged", len(result.day_forecasts))
    return 0


if __name__ == '__main__':
    sys.exit(main())
