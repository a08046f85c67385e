"""
Tunables shared by the journey engine services.

Built once from the Flask config in ``app.py``; services receive the object
instead of reading ``current_app`` so they stay usable outside a request.
"""

from dataclasses import dataclass, fields
from typing import Any, Mapping, Optional


@dataclass(frozen=True)
class JourneySettings:
    poll_interval_seconds: int = 60
    max_processing_seconds: float = 45
    time_delay_batch_size: int = 500
    batch_size: int = 100
    spread_window_minutes: int = 120
    call_cooldown_minutes: int = 5
    call_timeout_minutes: int = 5
    in_flight_call_lookback_minutes: int = 60
    loop_window_seconds: float = 5
    stale_pending_hours: float = 1
    reschedule_queue_max: int = 10000
    cache_ttl_seconds: int = 300
    call_log_cache_size: int = 1000
    node_cache_size: int = 5000
    webhook_timeout_ms: int = 30000
    webhook_retries: int = 3
    webhook_retry_delay_ms: int = 1000
    booking_link_base_url: Optional[str] = None
    app_base_url: Optional[str] = None

    # Flask config key for each field
    CONFIG_KEYS = {
        'poll_interval_seconds': 'JOURNEY_POLL_INTERVAL_SECONDS',
        'max_processing_seconds': 'JOURNEY_MAX_PROCESSING_SECONDS',
        'time_delay_batch_size': 'JOURNEY_TIME_DELAY_BATCH_SIZE',
        'batch_size': 'JOURNEY_BATCH_SIZE',
        'spread_window_minutes': 'JOURNEY_SPREAD_WINDOW_MINUTES',
        'call_cooldown_minutes': 'JOURNEY_CALL_COOLDOWN_MINUTES',
        'call_timeout_minutes': 'JOURNEY_CALL_TIMEOUT_MINUTES',
        'loop_window_seconds': 'JOURNEY_LOOP_WINDOW_SECONDS',
        'stale_pending_hours': 'JOURNEY_STALE_PENDING_HOURS',
        'reschedule_queue_max': 'JOURNEY_RESCHEDULE_QUEUE_MAX',
        'cache_ttl_seconds': 'JOURNEY_CACHE_TTL_SECONDS',
        'call_log_cache_size': 'JOURNEY_CALL_LOG_CACHE_SIZE',
        'node_cache_size': 'JOURNEY_NODE_CACHE_SIZE',
        'webhook_timeout_ms': 'WEBHOOK_DEFAULT_TIMEOUT_MS',
        'webhook_retries': 'WEBHOOK_DEFAULT_RETRIES',
        'webhook_retry_delay_ms': 'WEBHOOK_DEFAULT_RETRY_DELAY_MS',
        'booking_link_base_url': 'BOOKING_LINK_BASE_URL',
        'app_base_url': 'APP_BASE_URL',
    }

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> 'JourneySettings':
        values = {}
        for item in fields(cls):
            key = cls.CONFIG_KEYS.get(item.name)
            if key and config.get(key) is not None:
                values[item.name] = config[key]
        return cls(**values)
