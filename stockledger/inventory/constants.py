from stockledger.common.logging_setup import get_logger

logger = get_logger("stockledger.inventory")

DEFAULT_ADJUSTMENT_REASON = "Manual adjustment"
INVENTORY_PAGE_DEFAULT = 50
INVENTORY_PAGE_MAX = 200
CURSOR_MAX_AGE_SECONDS = 24 * 3600
