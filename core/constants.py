"""
Fixed business constants for pricing, bidding, matching and settlement.

Tariff rules, not deployment settings; they are not read from the environment.
"""
from datetime import timedelta

# Pricing
TAX_RATE = 0.18
PEAK_SURGE_FACTOR = 1.5
DEFAULT_VEHICLE_TYPE = "bike"

# Custom bids
MIN_BID_RATIO = 0.7
BID_WINDOW = timedelta(hours=24)

# Matching
NEARBY_RADIUS_KM = 5.0
NEARBY_RESULT_LIMIT = 10

# Settlement
PARTNER_PAYOUT_RATIO = 0.8

# Tracking codes
TRACKING_PREFIX = "KTR"
TRACKING_CODE_LENGTH = 8
