# auto_learning.py - ADAPTIVE CONFIDENCE LEARNING
# This module handles:
# 1. Turning logged prediction errors into per-model accuracy histories
# 2. Learning one confidence multiplier per (model, prediction type)
# 3. Applying multipliers to raw confidence without losing the raw value
# 4. Explaining what was learned
# 5. Persisting accuracy records and learned multipliers to Firestore

import logging
from collections import defaultdict

import numpy as np
import pandas as pd

import config
from models import AccuracyRecord, ModelKey

logger = logging.getLogger(__name__)

ADJUSTMENTS_DOCUMENT = 'confidence_adjustments'


def adjust_confidence(raw_confidence, multiplier=1.0):
    """Raw confidence scaled by a learned multiplier, kept within [0, 1]."""
    return float(min(1.0, max(0.0, raw_confidence * multiplier)))


def record_to_document(record):
    return {
        'date': record.date.isoformat(),
        'model_name': record.model_name,
        'prediction_type': record.prediction_type,
        'predicted_value': float(record.predicted_value),
        'actual_value': float(record.actual_value),
        'error_rate': float(record.error_rate),
        'client_id': record.client_id,
    }


def record_from_document(doc):
    """Rebuilds an AccuracyRecord from a stored document; None if unusable."""
    try:
        return AccuracyRecord(
            date=pd.Timestamp(doc['date']).date(),
            model_name=doc['model_name'],
            prediction_type=doc['prediction_type'],
            predicted_value=float(doc.get('predicted_value', 0)),
            actual_value=float(doc.get('actual_value', 0)),
            error_rate=float(doc['error_rate']),
            client_id=doc.get('client_id'),
        )
    except (KeyError, TypeError, ValueError):
        return None


def record_document_id(record):
    parts = [record.date.isoformat(), record.model_name, record.prediction_type]
    if record.client_id:
        parts.append(record.client_id)
    return '_'.join(parts)


def multiplier_changes(previous, current, min_change=0.05):
    """
    Lines describing how each multiplier moved since the last saved run.
    Keys new to this run are compared against 1.0; moves under `min_change`
    are left out.
    """
    previous = previous or {}
    lines = []
    for key in sorted(current, key=str):
        before = previous.get(key, 1.0)
        after = current[key]
        if abs(after - before) >= min_change:
            lines.append(f"{key}: x{before:.2f} -> x{after:.2f}")
    return lines


class AdaptiveConfidenceLearner:
    """
    Learns how far each model's confidence can be trusted.

    Think of this as the forecaster's memory of its own track record: a model
    that kept hitting the mark earns a confidence boost, one that kept
    missing gets talked down, and a model we know little about is left alone.
    """

    def __init__(self, db_client=None, learning_config=None):
        self.db_client = db_client
        self.learning_config = {
            'min_records': 3,
            'recent_share': 0.3,
            'excellent_accuracy': 0.85,
            'good_accuracy': 0.7,
            'fair_accuracy': 0.5,
            'max_excellent_multiplier': 1.5,
            'min_poor_multiplier': 0.3,
            'improving_factor': 1.1,
            'declining_factor': 0.95,
            'max_volume_factor': 1.2,
            'multiplier_bounds': (0.1, 2.0),
        }
        self.learning_config.update(learning_config or {})

    def compute_adjustments(self, accuracy_records):
        """
        Returns {ModelKey: multiplier} for every key present in the records.

        Steps:
        1. Group records by model key in chronological order
        2. Convert error rates to accuracies
        3. Tier the recent accuracy into a base multiplier
        4. Scale by trend and volume, then clamp
        """
        # Step 1: Group
        histories = defaultdict(list)
        for record in sorted(accuracy_records, key=lambda r: r.date):
            # Step 2: Accuracy
            histories[record.model_key].append(max(0.0, 1 - record.error_rate))

        adjustments = {}
        for key, accuracies in histories.items():
            adjustments[key] = self._multiplier(accuracies)
            logger.info(
                "Model %s: %d records, recent accuracy %.1f%%, confidence x%.2f",
                key, len(accuracies), 100 * self._recent_average(accuracies), adjustments[key],
            )
        return adjustments

    def _recent_average(self, accuracies):
        recent_count = max(3, int(len(accuracies) * self.learning_config['recent_share']))
        return float(np.mean(accuracies[-recent_count:]))

    def _multiplier(self, accuracies):
        cfg = self.learning_config
        n = len(accuracies)
        if n < cfg['min_records']:
            return 1.0

        # Step 3: Tiers
        recent = self._recent_average(accuracies)
        if recent > cfg['excellent_accuracy']:
            multiplier = min(cfg['max_excellent_multiplier'], 1 + (recent - cfg['excellent_accuracy']) * 2)
        elif recent > cfg['good_accuracy']:
            multiplier = 1 + (recent - cfg['good_accuracy']) * 0.5
        elif recent > cfg['fair_accuracy']:
            multiplier = 1.0
        else:
            multiplier = max(cfg['min_poor_multiplier'], recent * 1.5)

        # Step 4: Trend and volume
        half = n // 2
        improving = np.mean(accuracies[half:]) > np.mean(accuracies[:half])
        multiplier *= cfg['improving_factor'] if improving else cfg['declining_factor']
        multiplier *= min(cfg['max_volume_factor'], 1 + (n / 100) * 0.2)

        low, high = cfg['multiplier_bounds']
        return float(max(low, min(high, multiplier)))

    def improvement_log(self, adjustments):
        """Human-readable lines for the multipliers that moved noticeably."""
        lines = []
        for key in sorted(adjustments):
            multiplier = adjustments[key]
            if multiplier > 1.1:
                lines.append(
                    f"{key}: accuracy has been strong - confidence raised {100 * (multiplier - 1):.0f}%"
                )
            elif multiplier < 0.9:
                lines.append(
                    f"{key}: recent misses - confidence lowered {100 * (1 - multiplier):.0f}%"
                )
        return lines

    def save_learning_results(self, adjustments, updated_at):
        """Save learned multipliers to Firestore, stamped with the run time."""
        if self.db_client is None:
            return False

        try:
            self.db_client.collection(config.LEARNING_COLLECTION).document(ADJUSTMENTS_DOCUMENT).set({
                'updated_at': updated_at,
                'adjustments': {str(key): float(value) for key, value in adjustments.items()},
                'improvements': self.improvement_log(adjustments),
            }, merge=True)
            return True
        except Exception as e:
            logger.error("Failed to save learning results: %s", e)
            return False

    def load_learned_adjustments(self):
        """Previously saved multipliers as {ModelKey: multiplier}, or None."""
        if self.db_client is None:
            return None

        try:
            doc = self.db_client.collection(config.LEARNING_COLLECTION).document(ADJUSTMENTS_DOCUMENT).get()
        except Exception as e:
            logger.error("Failed to load learned adjustments: %s", e)
            return None
        if not doc.exists:
            return None

        adjustments = {}
        for name, value in (doc.to_dict() or {}).get('adjustments', {}).items():
            model_name, _, prediction_type = name.partition('/')
            adjustments[ModelKey(model_name, prediction_type)] = float(value)
        return adjustments

    def record_accuracy(self, accuracy_records):
        """Appends accuracy records; a rerun for the same day overwrites its own records."""
        if self.db_client is None:
            return False

        try:
            collection = self.db_client.collection(config.ACCURACY_COLLECTION)
            for record in accuracy_records:
                collection.document(record_document_id(record)).set(record_to_document(record))
            return True
        except Exception as e:
            logger.error("Failed to record prediction accuracy: %s", e)
            return False

    def load_accuracy_history(self):
        """Every stored AccuracyRecord, oldest first."""
        if self.db_client is None:
            return []

        try:
            docs = list(self.db_client.collection(config.ACCURACY_COLLECTION).stream())
        except Exception as e:
            logger.error("Failed to load accuracy history: %s", e)
            return []

        records = [record_from_document(doc.to_dict() or {}) for doc in docs]
        usable = [record for record in records if record is not None]
        if len(usable) < len(records):
            logger.warning("Skipped %d unreadable accuracy records", len(records) - len(usable))
        return sorted(usable, key=lambda r: r.date)
