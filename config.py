"""Configuration: environment variables and constants."""

import os
import logging

# ── Logging ──────────────────────────────────────────────────────────
logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
)
logger = logging.getLogger("reqprof")

# ── Environment variables ────────────────────────────────────────────
TELEGRAM_TOKEN = os.getenv("TELEGRAM_TOKEN")
REDIS_URL = os.getenv("REDIS_URL")
WEBHOOK_SECRET = os.getenv("WEBHOOK_SECRET", "")
SUBMISSION_WEBHOOK_URL = os.getenv("SUBMISSION_WEBHOOK_URL")
FORM_WEBAPP_URL = os.getenv("FORM_WEBAPP_URL")

# ── Profiled request ─────────────────────────────────────────────────
# Only Mini App submissions whose JSON "action" matches are profiled.
PROFILE_ACTION = os.getenv("REQPROF_ACTION", "form_submit")
PROFILER_ENABLED = os.getenv("REQPROF_ENABLED", "1") not in ("0", "false", "no")

# ── Profiler thresholds (seconds) ────────────────────────────────────
SLOW_THRESHOLD = float(os.getenv("REQPROF_SLOW_THRESHOLD", "0.1"))
VERY_SLOW_THRESHOLD = float(os.getenv("REQPROF_VERY_SLOW_THRESHOLD", "1.0"))
GAP_THRESHOLD = float(os.getenv("REQPROF_GAP_THRESHOLD", "0.5"))
TIMELINE_NOISE_THRESHOLD = float(os.getenv("REQPROF_TIMELINE_NOISE", "0.01"))

# Late-checkpoint and post-checkpoint heuristics
REACH_INIT_THRESHOLD = 1.0        # time to reach INIT
REACH_ACTIONS_THRESHOLD = 1.0     # time to reach BEFORE_ACTIONS
AFTER_ACTIONS_THRESHOLD = 2.0     # time spent after BEFORE_ACTIONS

# Overall assessment, measured on real time when the arrival time is known
ASSESSMENT_ISSUE_SECONDS = 3.0
ASSESSMENT_WARNING_SECONDS = 1.0
ASSESSMENT_QUEUE_SECONDS = 1.0
ASSESSMENT_EXECUTION_SECONDS = 2.0

# ── Report limits ────────────────────────────────────────────────────
TOP_N_QUERIES = int(os.getenv("REQPROF_TOP_N_QUERIES", "10"))
TOP_N_NETWORK_CALLS = int(os.getenv("REQPROF_TOP_N_NETWORK_CALLS", "10"))
QUERY_TEXT_LIMIT = 500
MAX_QUERY_COUNT = 100            # warn above this many queries per request
REPEATED_QUERY_MIN = 10          # same query shape this often → N+1 pattern
CALLER_DEPTH = 5                 # frames walked when resolving a call site

# ── Submissions ──────────────────────────────────────────────────────
SUBMISSION_REQUIRED_FIELDS = ["name", "email"]
SUBMISSION_KEY_TTL_DAYS = 30
WEBHOOK_TIMEOUT = 10.0

# ── Telegram connection pool ─────────────────────────────────────────
TELEGRAM_POOL_SIZE = 128
TELEGRAM_POOL_TIMEOUT = 5.0
TELEGRAM_READ_TIMEOUT = 30
TELEGRAM_WRITE_TIMEOUT = 30
TELEGRAM_CONNECT_TIMEOUT = 15
