"""Prometheus Metrics for Detection."""

from prometheus_client import Counter, Gauge, Histogram, start_http_server
import structlog

logger = structlog.get_logger(__name__)

# Counters
TRADES_DETECTED = Counter(
    'polycopy_trades_detected_total',
    'Total trades detected from watched wallets',
    ['event']
)

WINDOWS_SCANNED = Counter(
    'polycopy_windows_scanned_total',
    'Block windows scanned'
)

CHAIN_QUERY_ERRORS = Counter(
    'polycopy_chain_query_errors_total',
    'RPC failures that left a gap in a scanned window'
)

LOGS_SKIPPED = Counter(
    'polycopy_logs_skipped_total',
    'Logs that could not be decoded'
)

DUPLICATE_LOGS = Counter(
    'polycopy_duplicate_logs_total',
    'Logs returned by more than one role query'
)

# Gauges
SCANNER_CURSOR = Gauge(
    'polycopy_scanner_cursor_block',
    'Last fully scanned block'
)

WATCHED_WALLETS = Gauge(
    'polycopy_watched_wallets',
    'Number of wallets tracked by the scanner'
)

# Histograms
WINDOW_SCAN_TIME = Histogram(
    'polycopy_window_scan_seconds',
    'Time to scan one block window',
    buckets=[0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30]
)


def start_metrics_server(port: int = 9091):
    """Start Prometheus metrics HTTP server."""
    start_http_server(port)
    logger.info("metrics_server_started", port=port)
