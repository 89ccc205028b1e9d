import os
from dotenv import load_dotenv

load_dotenv()


def _float_or_none(value):
    if value in (None, ""):
        return None
    return float(value)


# HTTP server
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "5000"))

# Persisted state
DATA_DIR = os.getenv("DATA_DIR", os.path.join(os.getcwd(), "data"))
JOBS_FILE = os.getenv("JOBS_FILE", os.path.join(DATA_DIR, "cron-jobs.json"))
LOGS_FILE = os.getenv("LOGS_FILE", os.path.join(DATA_DIR, "cron-logs.jsonl"))
MAX_LOG_ENTRIES = int(os.getenv("MAX_LOG_ENTRIES", "1000"))
JOB_HISTORY_LIMIT = int(os.getenv("JOB_HISTORY_LIMIT", "50"))
# Progress entries one scheduled run may write to the log
RUN_LOG_LIMIT = int(os.getenv("RUN_LOG_LIMIT", "200"))

# Driver timeouts, in seconds
DB_CONNECT_TIMEOUT = int(os.getenv("DB_CONNECT_TIMEOUT", "10"))
DB_READ_TIMEOUT = int(os.getenv("DB_READ_TIMEOUT", "600"))
DB_WRITE_TIMEOUT = int(os.getenv("DB_WRITE_TIMEOUT", "600"))

# Unset means a clone never fails because of row-level failures
MAX_FAILED_ROW_RATIO = _float_or_none(os.getenv("MAX_FAILED_ROW_RATIO"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
