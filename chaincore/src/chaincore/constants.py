"""
Protocol and accounting constants shared across chainbooks components.
"""

from __future__ import annotations

from decimal import Decimal

SATS_PER_BTC = 100_000_000

# Smallest representable BTC amount (1 sat)
MIN_BTC_AMOUNT = Decimal("0.00000001")
BTC_QUANTUM = Decimal("0.00000001")
USD_QUANTUM = Decimal("0.01")

# BIP32: indices at or above this are hardened and need a private key
HARDENED_OFFSET = 0x80000000

# Address discovery
DEFAULT_GAP_LIMIT = 20
DEFAULT_SCAN_BATCH_SIZE = 20
DEFAULT_MAX_ADDRESSES_PER_CHAIN = 200
DEFAULT_FETCH_CONCURRENCY = 3

# Esplora paging
ESPLORA_PAGE_SIZE = 25

# Change-vs-spend heuristic
MIN_FEE_TOLERANCE_SATS = 1000
FEE_TOLERANCE_MULTIPLIER = 2
SELF_TRANSFER_MIN_OUTPUT_RATIO = 0.8
SELF_TRANSFER_MAX_EXTERNAL_SHARE = 0.5

# Confirmation depth reported for any confirmed transaction
CONFIRMED_DEPTH = 6
