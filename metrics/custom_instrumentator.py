from prometheus_client import Counter
from prometheus_fastapi_instrumentator import Instrumentator

instrumentator = Instrumentator(
    should_ignore_untemplated=True,      # /inventory/123 -> /inventory/{product_id}
    excluded_handlers=["/metrics"],      # exclude metrics endpoint from instrumentation
    should_instrument_requests_inprogress=True,
    should_group_status_codes=False,
)

txn_retries = Counter(
    "stockledger_txn_retries_total",
    "Retries scheduled by the retry executors after a transient failure",
    ["executor", "prefix"],
)

txn_exhausted = Counter(
    "stockledger_txn_exhausted_total",
    "Operations that gave up after exhausting their retry budget",
    ["executor", "prefix"],
)

stock_mutations = Counter(
    "stockledger_stock_mutations_total",
    "Accepted stock mutations by ledger entry kind",
    ["kind", "transaction_type"],
)
