from __future__ import annotations

from typing import Literal

ALL_CHANNELS_SENTINEL = "all"

CHANNELS = (
  "booking_com",
  "expedia",
  "airbnb",
  "agoda",
  "hotels_com",
  "amadeus",
  "sabre",
  "galileo",
  "worldspan",
  "direct_web",
)

ChannelId = Literal[
  "booking_com",
  "expedia",
  "airbnb",
  "agoda",
  "hotels_com",
  "amadeus",
  "sabre",
  "galileo",
  "worldspan",
  "direct_web",
]

# Event types accepted by the queue. `reservation_ack` is internal: it is only
# produced by the inbound reservation webhook.
EVENT_TYPES = (
  "rate_update",
  "availability_update",
  "restriction_update",
  "room_type_update",
  "booking_modification",
  "cancellation",
  "stop_sell_update",
  "reservation_ack",
)

EventType = Literal[
  "rate_update",
  "availability_update",
  "restriction_update",
  "room_type_update",
  "booking_modification",
  "cancellation",
  "stop_sell_update",
  "reservation_ack",
]

EVENT_STATUSES = ("pending", "processing", "completed", "failed", "cancelled")
TERMINAL_STATUSES = frozenset({"completed", "failed", "cancelled"})
REAPABLE_STATUSES = ("completed", "cancelled")

EVENT_SOURCES = ("manual", "system", "webhook", "scheduler", "bulk_operation")

# 1 = highest
EVENT_PRIORITIES = {
  "booking_modification": 2,
  "cancellation": 2,
  "reservation_ack": 2,
  "stop_sell_update": 2,
  "availability_update": 3,
  "rate_update": 3,
  "restriction_update": 3,
  "room_type_update": 4,
}

# Resource touched on the channel side; drives ordering (same hotel, room type,
# channel and resource must apply in producer order) and `last_sync` keys.
EVENT_RESOURCE = {
  "rate_update": "rates",
  "availability_update": "availability",
  "restriction_update": "restrictions",
  "stop_sell_update": "restrictions",
  "room_type_update": "content",
  "booking_modification": "bookings",
  "cancellation": "bookings",
  "reservation_ack": "reservations",
}

# Adapter capability invoked per event type.
EVENT_CAPABILITY = {
  "rate_update": "push_rates",
  "availability_update": "push_availability",
  "restriction_update": "push_restrictions",
  "stop_sell_update": "push_restrictions",
  "room_type_update": "push_content",
  "booking_modification": "push_booking_modification",
  "cancellation": "push_cancellation",
  "reservation_ack": "acknowledge_reservation",
}

# Base retry delay per event type when the channel configuration has none.
EVENT_RETRY_BASE_MS = {
  "booking_modification": 5_000,
  "cancellation": 5_000,
  "reservation_ack": 5_000,
  "availability_update": 10_000,
  "stop_sell_update": 10_000,
  "rate_update": 30_000,
  "restriction_update": 30_000,
  "room_type_update": 60_000,
}

MAX_RETRY_DELAY_MS = 15 * 60 * 1000
DEFAULT_MAX_ATTEMPTS = 3
MAX_PAYLOAD_BYTES = 256 * 1024

# Required keys inside payload.data per event type.
EVENT_DATA_REQUIRED = {
  "rate_update": ("rates",),
  "availability_update": ("availability",),
  "restriction_update": ("restrictions",),
  "stop_sell_update": ("stop_sell",),
  "room_type_update": ("content",),
  "booking_modification": ("external_reservation_ref", "change_set"),
  "cancellation": ("external_reservation_ref",),
  "reservation_ack": ("external_reservation_ref",),
}

# Event types whose payload must name a room type.
ROOM_SCOPED_EVENTS = frozenset(
  {"rate_update", "availability_update", "restriction_update", "room_type_update"}
)

CONNECTION_STATES = ("connected", "disconnected", "error", "testing")

# Content limits applied when a configuration does not define its own.
DEFAULT_CONTENT_RULES = {
  "booking_com": {"min_description_length": 50, "max_description_length": 2000, "min_images": 5},
  "expedia": {"min_description_length": 50, "max_description_length": 1500, "min_images": 3},
  "airbnb": {"min_description_length": 20, "max_description_length": 500, "min_images": 5},
  "agoda": {"min_description_length": 50, "max_description_length": 1800, "min_images": 4},
}
FALLBACK_CONTENT_RULES = {"min_description_length": 0, "max_description_length": 2000, "min_images": 1}

# ISO 4217 minor units; everything else uses 2.
CURRENCY_DECIMALS = {
  "JPY": 0,
  "KRW": 0,
  "VND": 0,
  "CLP": 0,
  "ISK": 0,
  "IDR": 0,
  "BHD": 3,
  "KWD": 3,
  "OMR": 3,
  "JOD": 3,
  "TND": 3,
}

PRICE_UPDATE_TTL_S = {
  "real_time": 60,
  "hourly": 3600,
  "daily": 86400,
}
