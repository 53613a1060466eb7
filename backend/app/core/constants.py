"""
Shared constants for the backend application.
"""

# ---------------------------------------------------------------------------
# Reservation statuses
# ---------------------------------------------------------------------------
RESERVATION_ACTIVE = "active"
RESERVATION_COMMITTED = "committed"
RESERVATION_RELEASED = "released"
RESERVATION_EXPIRED = "expired"

# ---------------------------------------------------------------------------
# Serial number statuses
# ---------------------------------------------------------------------------
SERIAL_AVAILABLE = "available"
SERIAL_RESERVED = "reserved"
SERIAL_SOLD = "sold"

# ---------------------------------------------------------------------------
# Release reasons
# ---------------------------------------------------------------------------
RELEASE_CART_REMOVAL = "cart_removal"
RELEASE_CANCELLED = "cancelled"
RELEASE_EXPIRED = "expired"
RELEASE_PARTIAL_COMMIT = "partial_commit"

# ---------------------------------------------------------------------------
# Inventory event types
# ---------------------------------------------------------------------------
CHANGE_RESERVED = "RESERVED"
CHANGE_RELEASED = "RELEASED"
CHANGE_EXPIRED = "EXPIRED"
CHANGE_SOLD = "SOLD"
CHANGE_ADJUSTED = "ADJUSTED"

# ---------------------------------------------------------------------------
# Cart sessions
# ---------------------------------------------------------------------------
MAX_CART_SESSION_ID_LENGTH = 128
MAX_SERIALS_PER_REQUEST = 1000

# PostgreSQL lock_not_available, raised when lock_timeout runs out
LOCK_NOT_AVAILABLE_SQLSTATE = "55P03"
