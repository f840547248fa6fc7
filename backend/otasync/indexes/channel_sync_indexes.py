from __future__ import annotations

from datetime import timedelta

from pymongo import ASCENDING, DESCENDING
from pymongo.errors import OperationFailure

from otasync import config


async def ensure_channel_sync_indexes(db):
    """Ensure indexes for channel sync collections.

    Collections: sync_events, room_mappings, rate_mappings,
    channel_configurations, channel_sync_health, sync_throttle_buckets,
    fx_daily_snapshots, reservation_receipts, channel_payloads.
    Uniqueness indexes are the write-time guard for mapping and configuration
    conflicts, so they are created before the API serves traffic.
    """

    async def _safe_create(collection, keys, **kwargs):
        try:
            await collection.create_index(keys, **kwargs)
        except Exception:
            # Index creation failures must not crash app in preview/dev
            return

    # --- sync_events ---
    await _safe_create(
        db.sync_events,
        [("status", ASCENDING), ("priority", ASCENDING), ("scheduled_for", ASCENDING)],
        name="sync_events_by_status_priority_scheduled",
    )
    await _safe_create(
        db.sync_events,
        [("status", ASCENDING), ("processing.next_retry_at", ASCENDING)],
        name="sync_events_by_status_next_retry",
    )
    await _safe_create(
        db.sync_events,
        [("payload.hotel_id", ASCENDING), ("status", ASCENDING), ("event_type", ASCENDING)],
        name="sync_events_by_hotel_status_type",
    )
    await _safe_create(
        db.sync_events,
        [("batch_id", ASCENDING), ("status", ASCENDING)],
        name="sync_events_by_batch_status",
    )
    await _safe_create(
        db.sync_events,
        [("correlation_id", ASCENDING)],
        name="sync_events_by_correlation",
    )
    # Lease-time overlap check
    await _safe_create(
        db.sync_events,
        [
            ("payload.hotel_id", ASCENDING),
            ("resource", ASCENDING),
            ("status", ASCENDING),
            ("seq", ASCENDING),
        ],
        name="sync_events_overlap_scan",
    )
    await _safe_create(
        db.sync_events,
        [("updated_at", ASCENDING)],
        name="ttl_sync_events_terminal",
        expireAfterSeconds=int(timedelta(days=config.TTL_DAYS).total_seconds()),
        partialFilterExpression={"status": {"$in": ["completed", "cancelled"]}},
    )

    # --- mappings ---
    # Superseded by uniq_active_room_mapping_channel_room.
    try:
        await db.room_mappings.drop_index("uniq_room_mapping_channel_room")
    except OperationFailure:
        pass
    await _safe_create(
        db.room_mappings,
        [("channel", ASCENDING), ("channel_room_id", ASCENDING)],
        unique=True,
        name="uniq_active_room_mapping_channel_room",
        partialFilterExpression={"is_active": True},
    )
    await _safe_create(
        db.room_mappings,
        [("hotel_id", ASCENDING), ("pms_room_type_id", ASCENDING), ("channel", ASCENDING)],
        unique=True,
        name="uniq_active_room_mapping_room_type",
        partialFilterExpression={"is_active": True},
    )
    await _safe_create(
        db.room_mappings,
        [("pms_room_type_id", ASCENDING), ("is_active", ASCENDING)],
        name="room_mappings_by_room_type_active",
    )
    await _safe_create(
        db.room_mappings,
        [("hotel_id", ASCENDING), ("channel", ASCENDING), ("is_active", ASCENDING)],
        name="room_mappings_by_hotel_channel",
    )
    await _safe_create(
        db.rate_mappings,
        [("room_mapping_id", ASCENDING), ("channel_rate_plan_id", ASCENDING)],
        unique=True,
        name="uniq_rate_mapping_room_plan",
    )

    # --- configurations / health ---
    await _safe_create(
        db.channel_configurations,
        [("hotel_id", ASCENDING), ("channel", ASCENDING)],
        unique=True,
        name="uniq_channel_configuration",
    )
    await _safe_create(
        db.channel_sync_health,
        [("hotel_id", ASCENDING), ("channel", ASCENDING)],
        name="channel_sync_health_by_hotel",
    )

    # --- helpers ---
    await _safe_create(
        db.sync_throttle_buckets,
        [("hotel_id", ASCENDING), ("bucket_minute", ASCENDING)],
        unique=True,
        name="uniq_throttle_bucket",
    )
    await _safe_create(
        db.sync_throttle_buckets,
        [("created_at", ASCENDING)],
        name="ttl_throttle_buckets",
        expireAfterSeconds=3600,
    )
    await _safe_create(
        db.fx_daily_snapshots,
        [("base", ASCENDING), ("quote", ASCENDING), ("day", ASCENDING)],
        unique=True,
        name="uniq_fx_daily_snapshot",
    )
    await _safe_create(
        db.reservation_receipts,
        [("channel", ASCENDING), ("external_reservation_ref", ASCENDING)],
        unique=True,
        name="uniq_reservation_receipt",
    )

    # --- payload audit log ---
    await _safe_create(
        db.channel_payloads,
        [("hotel_id", ASCENDING), ("channel", ASCENDING), ("created_at", DESCENDING)],
        name="channel_payloads_by_hotel_channel",
    )
    await _safe_create(
        db.channel_payloads,
        [("event_id", ASCENDING), ("created_at", ASCENDING)],
        name="channel_payloads_by_event",
    )
    await _safe_create(
        db.channel_payloads,
        [("created_at", ASCENDING)],
        name="ttl_channel_payloads",
        expireAfterSeconds=int(timedelta(days=config.PAYLOAD_LOG_TTL_DAYS).total_seconds()),
    )
