"""Prometheus Metrics for Decision."""

from prometheus_client import Counter, Gauge, Histogram

# Counters
TRADES_RECEIVED = Counter(
    'polycopy_trades_received_total',
    'Detected trades handed to the decision engine'
)

DECISIONS = Counter(
    'polycopy_decisions_total',
    'Terminal decision per trade',
    ['state']
)

ORDERS_SENT = Counter(
    'polycopy_orders_sent_total',
    'Orders submitted to the execution service'
)

TRADES_DROPPED = Counter(
    'polycopy_trades_dropped_total',
    'Trades dropped because the decision queue was full'
)

# Gauges
OPEN_POSITIONS = Gauge(
    'polycopy_open_positions',
    'Number of open positions'
)

TOTAL_EXPOSURE = Gauge(
    'polycopy_total_exposure_usd',
    'Total USD exposure across all positions'
)

DAILY_BALANCE = Gauge(
    'polycopy_daily_balance_usd',
    'Running balance for the current day'
)

DAILY_LOSS = Gauge(
    'polycopy_daily_loss_usd',
    'Cumulative loss for the current day'
)

QUEUE_DEPTH = Gauge(
    'polycopy_decision_queue_depth',
    'Trades waiting for a decision'
)

# Histograms
ORDER_VALUE = Histogram(
    'polycopy_order_value_usd',
    'Distribution of replica order values',
    buckets=[1, 5, 10, 25, 50, 100, 200, 500]
)

DECISION_TIME = Histogram(
    'polycopy_decision_seconds',
    'Time to evaluate, size and execute one trade',
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5]
)
