from decimal import Decimal
import os
from dotenv import load_dotenv
load_dotenv()
# ---- Ledger JSON-RPC ----
LEDGER_RPC_URL = os.environ.get("LEDGER_RPC_URL", "https://xrplcluster.com/")
LEDGER_TIMEOUT_SEC = float(os.environ.get("LEDGER_TIMEOUT_SEC", "20"))
LEDGER_REQUESTS_PER_SEC = float(os.environ.get("LEDGER_REQUESTS_PER_SEC", "4.0"))

# ---- Request scheduler ----
SCHEDULER_MAX_CONCURRENT = int(os.environ.get("SCHEDULER_MAX_CONCURRENT", "2"))
SCHEDULER_MAX_RETRIES = int(os.environ.get("SCHEDULER_MAX_RETRIES", "3"))
SCHEDULER_BACKOFF_BASE_SEC = float(os.environ.get("SCHEDULER_BACKOFF_BASE_SEC", "1.0"))
SCHEDULER_BACKOFF_CAP_SEC = float(os.environ.get("SCHEDULER_BACKOFF_CAP_SEC", "10.0"))

# request priorities (higher runs first)
PRIORITY_ACCOUNT_INFO = 10
PRIORITY_TRANSACTIONS = 5
PRIORITY_ACTIVATION = 3
PRIORITY_LINES = 1

# ---- Paging / scan budgets ----
PAGE_LIMIT = 200
MAX_PAGES_PER_NODE = 200
MAX_TX_SCAN_PER_NODE = 50_000

ACTIVATION_PAGE_LIMIT = 200
ACTIVATION_MAX_PAGES = 2000
ACTIVATION_MAX_TX_SCAN = 350_000

LINES_MAX_PAGES = 50

# ---- Graph defaults ----
DEFAULT_DEPTH = 2
DEFAULT_PER_NODE = 100
DEFAULT_MAX_ACCOUNTS = 250
DEFAULT_MAX_EDGES = 1600

# Strict base58 check on addresses (shape check only when off)
STRICT_ADDRESS_CHECK = os.environ.get("STRICT_ADDRESS_CHECK", "0").lower() in {"1", "true", "yes"}

# ---- Pattern detection ----
CYCLE_MAX_DEPTH = 8
CYCLE_TOP_K = 5
CYCLE_MAX_CYCLES = 60

FAN_DEGREE_THRESHOLD = 10

HUB_MIN_PARENTS = 3
HUB_MAX_CHILDREN = 2
HUB_MIN_IN_EDGES = 5
HUB_MIN_OUT_EDGES = 5

BURST_LEDGER_WINDOW = 50
BURST_MIN_COUNT = 10

PING_PONG_MIN_REPEATS = 3

CONCENTRATION_SHARE = Decimal("0.5")
CONCENTRATION_MIN_PAYMENTS = 3

RAPID_REPEAT_SECONDS = 10

SANDWICH_LEDGER_WINDOW = 5
DEX_WASH_MIN_OFFERS = 6

MULTI_KIND_MIN_KINDS = 3
MULTI_KIND_MIN_TRANSFERS = 15

TOKEN_DISTRIBUTION_MIN_PAYMENTS = 3

# ---- Logging ----
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
