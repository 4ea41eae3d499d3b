import os

from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def _list(name, default):
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


ALLOW_ORIGINS = _list("ALLOW_ORIGINS", "*")
MAX_UPLOAD_MB = float(os.getenv("MAX_UPLOAD_MB", "5"))
ANALYZE_RATE_LIMIT = os.getenv("ANALYZE_RATE_LIMIT", "10/minute")
REPORT_RATE_LIMIT = os.getenv("REPORT_RATE_LIMIT", "5/minute")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Tai analysis defaults
TAI_MAX_MISSING = float(os.getenv("TAI_MAX_MISSING", "0.1"))
TAI_CONFIDENCE = float(os.getenv("TAI_CONFIDENCE", "0.95"))
MISSING_TOLERANCE = float(os.getenv("MISSING_TOLERANCE", "1e-6"))
