# config.py - shared settings for the forecasting engine
import os

# --- Lookback windows (days) ---
PATTERN_LOOKBACK_DAYS = 90
TREND_LOOKBACK_DAYS = 60
RECENT_ACTIVITY_DAYS = 30

# --- Forecast horizon ---
DEFAULT_FORECAST_DAYS = 7
MIN_FORECAST_DAYS = 1
MAX_FORECAST_DAYS = 14
BACKTEST_HISTORY_DAYS = 14

# --- Prediction defaults ---
DEFAULT_CONFIDENCE_THRESHOLD = 0.6
DEFAULT_REVENUE_PER_POUND = 2.5
DEFAULT_PEAK_HOUR = 9
DEFAULT_PICKUP_MINUTES = 9 * 60
ERROR_RATE_EPSILON = 1e-6

DAY_NAMES = ['Monday', 'Tuesday', 'Wednesday', 'Thursday', 'Friday', 'Saturday', 'Sunday']

# --- Firestore collections ---
PICKUP_COLLECTION = 'pickup_entries'
INVOICE_COLLECTION = 'invoices'
CLIENT_COLLECTION = 'clients'
FORECAST_LOG_COLLECTION = 'forecast_log'
ACCURACY_COLLECTION = 'prediction_accuracy'
LEARNING_COLLECTION = 'ai_learning'

# --- Environment ---
CREDENTIALS_PATH = os.getenv('GOOGLE_APPLICATION_CREDENTIALS')
LOCAL_TIMEZONE = os.getenv('FORECAST_TIMEZONE') or None
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
