"""
Quick Tab Sync Configuration
============================

All tunables are sourced from environment variables with defaults that match
the sync protocol's timing contract. Each component receives its own config
dataclass; ``SyncEngineConfig`` bundles them for one execution context.

ENVIRONMENT VARIABLES:
    QUICKTABS_STORAGE_KEY              - Store key holding the snapshot record
    QUICKTABS_STATE_DIR                - Directory used by the file backend

    QUICKTABS_WRITE_TIMEOUT            - Write deadline from enqueue (seconds)
    QUICKTABS_WRITE_LANE_CAPACITY      - Max queued intents per priority lane
    QUICKTABS_WRITE_HISTORY            - Committed intents kept for replay

    QUICKTABS_RETRY_MAX_ATTEMPTS       - Attempts for transient backend errors
    QUICKTABS_RETRY_BASE_DELAY         - First retry delay (seconds)
    QUICKTABS_RETRY_MAX_DELAY          - Retry delay cap (seconds)
    QUICKTABS_CONFLICT_MAX_ATTEMPTS    - Optimistic-concurrency attempts

    QUICKTABS_HEARTBEAT_INTERVAL       - Heartbeat interval (seconds)
    QUICKTABS_HEARTBEAT_TIMEOUT        - Heartbeat round-trip timeout (seconds)
    QUICKTABS_HOST_IDLE_WINDOW         - Host idle-termination window (seconds)
    QUICKTABS_CIRCUIT_THRESHOLD        - Consecutive misses that open the circuit
    QUICKTABS_CIRCUIT_WINDOW           - Window the misses must fall into (seconds)
    QUICKTABS_PROBE_BASE_DELAY         - First health-probe delay (seconds)
    QUICKTABS_PROBE_MAX_DELAY          - Health-probe delay cap (seconds)
    QUICKTABS_OUTBOX_SIZE              - Messages buffered while the circuit is open
    QUICKTABS_OUTBOX_TTL               - Buffered message lifetime (seconds)

    QUICKTABS_COORDINATOR_HOST         - Coordinator server bind host
    QUICKTABS_COORDINATOR_PORT         - Coordinator server port
    QUICKTABS_ORPHAN_GRACE             - Delay before orphan cleanup (seconds)
    QUICKTABS_PEER_IDLE_TIMEOUT        - Silence after which a peer is dropped (seconds)
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


# =============================================================================
# Environment Helpers
# =============================================================================

def _env_str(key: str, default: str) -> str:
    return os.getenv(key, default)

def _env_int(key: str, default: int) -> int:
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default

def _env_float(key: str, default: float) -> float:
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        return default

def _env_bool(key: str, default: bool) -> bool:
    return os.getenv(key, str(default)).lower() in ("true", "1", "yes", "on")


DEFAULT_STORAGE_KEY = "quick_tabs_state_v2"


# =============================================================================
# Retry / Backoff
# =============================================================================

@dataclass
class BackoffConfig:
    """Exponential backoff settings shared by every retrying component."""
    max_attempts: int = field(default_factory=lambda: _env_int(
        "QUICKTABS_RETRY_MAX_ATTEMPTS", 3
    ))
    base_delay: float = field(default_factory=lambda: _env_float(
        "QUICKTABS_RETRY_BASE_DELAY", 0.1
    ))
    max_delay: float = field(default_factory=lambda: _env_float(
        "QUICKTABS_RETRY_MAX_DELAY", 0.4
    ))
    multiplier: float = 2.0
    jitter: float = 0.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < self.base_delay:
            raise ValueError(
                f"invalid backoff delays: base={self.base_delay} max={self.max_delay}"
            )


# =============================================================================
# Write Coordinator
# =============================================================================

@dataclass
class WriteCoordinatorConfig:
    """Configuration for the per-context write queue."""
    write_timeout: float = field(default_factory=lambda: _env_float(
        "QUICKTABS_WRITE_TIMEOUT", 2.0
    ))
    lane_capacity: int = field(default_factory=lambda: _env_int(
        "QUICKTABS_WRITE_LANE_CAPACITY", 256
    ))
    commit_history: int = field(default_factory=lambda: _env_int(
        "QUICKTABS_WRITE_HISTORY", 64
    ))
    retry: BackoffConfig = field(default_factory=BackoffConfig)

    def __post_init__(self):
        if self.write_timeout <= 0:
            raise ValueError("write_timeout must be positive")
        if self.lane_capacity < 1:
            raise ValueError("lane_capacity must be at least 1")


# =============================================================================
# Revision Ledger
# =============================================================================

@dataclass
class LedgerConfig:
    """Optimistic-concurrency settings for the revision ledger."""
    conflict_max_attempts: int = field(default_factory=lambda: _env_int(
        "QUICKTABS_CONFLICT_MAX_ATTEMPTS", 5
    ))
    conflict_base_delay: float = 0.01
    conflict_max_delay: float = 0.2
    entry_history: int = 256

    def backoff(self) -> BackoffConfig:
        return BackoffConfig(
            max_attempts=self.conflict_max_attempts,
            base_delay=self.conflict_base_delay,
            max_delay=self.conflict_max_delay,
            jitter=0.25,
        )


# =============================================================================
# Connection Health
# =============================================================================

@dataclass
class HeartbeatConfig:
    """Heartbeat and circuit-breaker settings for the coordinator link.

    The interval must leave a generous margin below the host's idle
    termination window (at most half of it) and the round-trip timeout is
    capped at 2 seconds.
    """
    interval: float = field(default_factory=lambda: _env_float(
        "QUICKTABS_HEARTBEAT_INTERVAL", 15.0
    ))
    timeout: float = field(default_factory=lambda: _env_float(
        "QUICKTABS_HEARTBEAT_TIMEOUT", 2.0
    ))
    host_idle_window: float = field(default_factory=lambda: _env_float(
        "QUICKTABS_HOST_IDLE_WINDOW", 30.0
    ))
    circuit_failure_threshold: int = field(default_factory=lambda: _env_int(
        "QUICKTABS_CIRCUIT_THRESHOLD", 2
    ))
    failure_window: float = field(default_factory=lambda: _env_float(
        "QUICKTABS_CIRCUIT_WINDOW", 45.0
    ))
    probe_base_delay: float = field(default_factory=lambda: _env_float(
        "QUICKTABS_PROBE_BASE_DELAY", 0.2
    ))
    probe_max_delay: float = field(default_factory=lambda: _env_float(
        "QUICKTABS_PROBE_MAX_DELAY", 5.0
    ))
    max_timeout: float = 2.0

    def __post_init__(self):
        if self.interval <= 0 or self.timeout <= 0:
            raise ValueError("heartbeat interval and timeout must be positive")
        if self.timeout > self.max_timeout:
            raise ValueError(
                f"heartbeat timeout {self.timeout}s exceeds {self.max_timeout}s"
            )
        if self.timeout >= self.interval:
            raise ValueError("heartbeat timeout must be shorter than the interval")
        if self.interval > self.host_idle_window / 2:
            raise ValueError(
                f"heartbeat interval {self.interval}s leaves too little margin "
                f"below the {self.host_idle_window}s host idle window"
            )
        if not 2 <= self.circuit_failure_threshold <= 3:
            raise ValueError("circuit_failure_threshold must be 2 or 3")

    def probe_backoff(self) -> BackoffConfig:
        # Probing never gives up, the attempt count only bounds the exponent.
        return BackoffConfig(
            max_attempts=32,
            base_delay=self.probe_base_delay,
            max_delay=self.probe_max_delay,
            jitter=0.1,
        )


@dataclass
class OutboxConfig:
    """Local buffer for non-critical messages while the circuit is open."""
    max_size: int = field(default_factory=lambda: _env_int(
        "QUICKTABS_OUTBOX_SIZE", 100
    ))
    ttl_seconds: float = field(default_factory=lambda: _env_float(
        "QUICKTABS_OUTBOX_TTL", 30.0
    ))


# =============================================================================
# Coordinator
# =============================================================================

@dataclass
class CoordinatorConfig:
    """Settings for the coordinator hub and its server."""
    host: str = field(default_factory=lambda: _env_str(
        "QUICKTABS_COORDINATOR_HOST", "127.0.0.1"
    ))
    port: int = field(default_factory=lambda: _env_int(
        "QUICKTABS_COORDINATOR_PORT", 8765
    ))
    orphan_grace_seconds: float = field(default_factory=lambda: _env_float(
        "QUICKTABS_ORPHAN_GRACE", 0.2
    ))
    peer_idle_timeout: float = field(default_factory=lambda: _env_float(
        "QUICKTABS_PEER_IDLE_TIMEOUT", 45.0
    ))
    state_dir: Path = field(default_factory=lambda: Path(_env_str(
        "QUICKTABS_STATE_DIR", str(Path.home() / ".quicktabs" / "state")
    )))


# =============================================================================
# Engine
# =============================================================================

@dataclass
class SyncEngineConfig:
    """Everything one execution context needs."""
    storage_key: str = field(default_factory=lambda: _env_str(
        "QUICKTABS_STORAGE_KEY", DEFAULT_STORAGE_KEY
    ))
    writes: WriteCoordinatorConfig = field(default_factory=WriteCoordinatorConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    heartbeat: HeartbeatConfig = field(default_factory=HeartbeatConfig)
    outbox: OutboxConfig = field(default_factory=OutboxConfig)
    warn_on_suspicious_drop: bool = field(default_factory=lambda: _env_bool(
        "QUICKTABS_WARN_SUSPICIOUS_DROP", True
    ))
