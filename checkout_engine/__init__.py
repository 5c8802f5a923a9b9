"""
Checkout Reservation & Payment Reconciliation Engine

Keeps product stock consistent across three weakly-synchronized systems:
1. Redis counters and holds for soft cart reservations
2. The SQL store holding authoritative stock, orders and payments
3. The payment provider that confirms or rejects payment asynchronously
"""

__version__ = "1.0.0"
