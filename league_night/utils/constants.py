"""
Constants used across the league night service.
"""

# Scoring rules
GAME_TO_POINTS = 11  # Points needed to win a game
WIN_BY = 2  # Required margin once a game goes past GAME_TO_POINTS - 1

# Realtime fan-out
REALTIME_TIMEOUT_SECONDS = 60  # Subscribers silent for longer are dropped
REALTIME_CHANNEL_PREFIX = "league-night"

# Push delivery
PUSH_DELIVERY_TIMEOUT_SECONDS = 10  # Per-subscription bound
PUSH_TTL_SECONDS = 24 * 60 * 60

# Background monitor
MONITOR_POLL_INTERVAL_SECONDS = 60

# Slot references look like "night-0", "night-1", ...
SLOT_REFERENCE_PREFIX = "night-"
