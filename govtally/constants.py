"""
govtally Constants

This module consolidates all global constants and environment configuration
used throughout the codebase. Constants are organized by category for easy
reference and maintenance.
"""
import ast
from dotenv import dotenv_values

# =============================================================================
# ENVIRONMENT CONFIGURATION
# =============================================================================
# Load environment variables once at module import
_config = dotenv_values(".env")

STORE_DEFAULTS = {
    'GOVTALLY_DB_PATH':                'data/govtally.db',
    'GOVTALLY_EVENTS_URL':             '',
    'GOVTALLY_WEIGHT_DECIMALS':        '7',
}

LOGGER_DEFAULTS = {
    'LOG_LEVEL':                       'INFO',
    'LOG_FORMAT':                      '%(asctime)s - %(levelname)s - %(name)s - %(message)s',
    'LOG_DATE_FORMAT':                 '%Y-%m-%dT%H:%M:%S',
    'LOG_CONSOLE_HIGHLIGHTING':        'True',
    'LOG_FILE_OUTPUT':                 'False',
}

LOG_MAX_FILE_SIZE = 10 * 1024 * 1024 # 10MB
LOG_BACKUP_COUNT = 5


# ==================================================================================
# WEIGHT ARITHMETIC
# ==================================================================================
# Fractional digits carried by every vote weight and quorum threshold.
# 7 digits is the smallest unit of a Stellar asset (1 stroop).
WEIGHT_DECIMALS_DEFAULT = 7

# Digits used when reporting the average vote weight
AVERAGE_WEIGHT_DECIMALS = 7

# Digits used when reporting ratios such as the participation rate
RATE_DECIMALS = 2


# ==================================================================================
# PROPOSAL / VOTE LIMITS
# ==================================================================================
MAX_TITLE_LENGTH = 200
MAX_DESCRIPTION_LENGTH = 10_000

# Pagination
DEFAULT_PAGE_SIZE = 20           # proposals
DEFAULT_VOTES_PAGE_SIZE = 100    # votes per proposal
DEFAULT_AUDIT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 500

# Resolution
# Compare-and-swap attempts made by a single evaluate() before giving up for
# this round. Losing every attempt means other writers keep moving the
# proposal; the next evaluate() picks it up.
EVALUATE_MAX_ATTEMPTS = 5

# Default voting window applied by front ends that do not pass a deadline
DEFAULT_VOTING_PERIOD_SECONDS = 7 * 86400

# On-chain event source
EVENTS_REQUEST_TIMEOUT = 10.0  # seconds


# ==================================================================================
# CONFIGURATION WRAPPERS
# ==================================================================================
class ConfigString(str):
    """
    String subclass that stores a default value.
    """
    def __new__(cls, value, default):
        obj = str.__new__(cls, value)
        obj._default = default
        return obj

    def default(self):
        return self._default

class ConfigBool(int):
    """
    Int subclass acting as a boolean that stores a default value.
    """
    def __new__(cls, value, default):
        obj = int.__new__(cls, bool(value))
        obj._default = default
        return obj

    def default(self):
        return self._default

    def __repr__(self):
        return str(bool(self))

    def __str__(self):
        return str(bool(self))

    def __eq__(self, other):
        return bool(self) == other

    __hash__ = int.__hash__


# ==================================================================================
# DYNAMIC CONFIGURATION LOADING
# ==================================================================================
DEFAULTS = STORE_DEFAULTS | LOGGER_DEFAULTS
namespace = globals()

def parse_bool(v):
    """
    Convert "True"/"False" (any casing, with surrounding whitespace) into bool.
    Avoids exceptions by only calling ast.literal_eval for known literals.
    """
    if not isinstance(v, str):
        return v
    s = v.strip()
    if not s:
        return v
    if s.casefold() in {"true", "false"}:
        return ast.literal_eval(s.title())
    return v

for key, default_raw in DEFAULTS.items():
    # dotenv_values returns strings or None. None is treated as missing.
    raw = _config.get(key)
    value_raw = default_raw if raw is None else raw

    value = parse_bool(value_raw)
    default_val = parse_bool(default_raw)

    if isinstance(value, bool):
        namespace[key] = ConfigBool(value, default_val)
    else:
        namespace[key] = ConfigString(value_raw, default_val)


def _weight_decimals() -> int:
    raw = namespace.get('GOVTALLY_WEIGHT_DECIMALS', '')
    try:
        decimals = int(str(raw))
    except ValueError:
        return WEIGHT_DECIMALS_DEFAULT
    # Beyond 18 digits the integer unit columns stop fitting in SQLite INTEGER
    if not 0 <= decimals <= 18:
        return WEIGHT_DECIMALS_DEFAULT
    return decimals


WEIGHT_DECIMALS = _weight_decimals()
