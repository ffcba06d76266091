"""Centralized constants for the mnemos engine.

All magic numbers and configuration defaults live here so every layer
imports from a single source of truth.
"""

# ---------- Daily limits ----------
DEFAULT_NEW_CARDS_PER_DAY = 20
DEFAULT_MAX_REVIEWS_PER_DAY = 200  # 0 = unlimited

# ---------- Steps (minutes) ----------
DEFAULT_LEARNING_STEPS = (1, 10)
DEFAULT_RELEARNING_STEPS = (10, 1440)

# ---------- Graduation (days) ----------
DEFAULT_GRADUATING_INTERVAL = 1
DEFAULT_EASY_INTERVAL = 4

# ---------- Ease ----------
DEFAULT_STARTING_EASE = 2.5
DEFAULT_MINIMUM_EASE = 1.3
DEFAULT_MAXIMUM_EASE = 5.0
DEFAULT_EASY_BONUS = 1.3
EASY_EASE_INCREMENT = 0.15
EASE_TOLERANCE = 1e-9

# ---------- Interval factors ----------
DEFAULT_HARD_INTERVAL_FACTOR = 1.2
DEFAULT_EASY_INTERVAL_FACTOR = 1.3
DEFAULT_INTERVAL_MODIFIER = 1.0
DEFAULT_MAX_INTERVAL = 36500  # 100 years

# ---------- Lapses ----------
DEFAULT_LAPSE_RECOVERY_FACTOR = 0.2
DEFAULT_LAPSE_EASE_PENALTY = 0.2
DEFAULT_LEECH_THRESHOLD = 8

# ---------- Deck options ----------
DEFAULT_LEECH_ACTION = "suspend"
DEFAULT_NEW_CARD_ORDER = "random"
DEFAULT_REVIEW_AHEAD = False
DEFAULT_BURY_SIBLINGS = False
DEFAULT_TIMEZONE = "UTC"

# ---------- Store ----------
DEFAULT_MAX_WRITE_RETRIES = 3
DEFAULT_INVALIDATION_TIMEOUT = 5.0  # seconds
SQLITE_BUSY_TIMEOUT = 30.0  # seconds
CHUNK_SIZE = 500  # ids per IN (...) query

# ---------- Review history ----------
UNDO_HISTORY_LIMIT = 20  # ratings kept per project for undo
ESTIMATED_SECONDS_PER_CARD = 30
