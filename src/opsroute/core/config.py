"""Core configuration dataclasses.

We keep config parsing outside the core, but these dataclasses define the
shape the core expects so adapters and app layers can build safely.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff for transient delivery failures."""

    max_attempts: int = 3
    base_delay_ms: int = 500
    factor: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after the given (1-based) failed attempt."""

        return (self.base_delay_ms / 1000.0) * (self.factor ** (attempt - 1))


@dataclass(frozen=True)
class DispatchConfig:
    """Dispatcher settings."""

    retry: RetryPolicy = RetryPolicy()
    max_in_flight: int = 8
    fallback_channel_id: Optional[int] = None
    excerpt_chars: int = 400
    # Successful deliveries remembered for idempotent re-dispatch.
    idempotency_cache: int = 4096


@dataclass(frozen=True)
class EscalationConfig:
    """Escalation state machine settings."""

    max_levels: int = 3
    # Acknowledgeable records of rules that never escalate; oldest are dropped first.
    max_passive_chains: int = 512


@dataclass(frozen=True)
class LivenessConfig:
    """Channel liveness cache settings."""

    ttl_seconds: float = 45.0


@dataclass(frozen=True)
class EngineConfig:
    """Top-level engine settings."""

    workers: int = 4
    fan_out: bool = False
    # Dispatch records kept in memory; the audit store keeps the full trail.
    history_size: int = 2048
    dispatch: DispatchConfig = DispatchConfig()
    escalation: EscalationConfig = EscalationConfig()
    liveness: LivenessConfig = LivenessConfig()
