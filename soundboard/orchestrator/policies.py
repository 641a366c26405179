from __future__ import annotations

from dataclasses import dataclass


@dataclass
class CooldownGate:
    """Minimum spacing between accepted hits, measured on a monotonic clock (seconds)."""

    cooldown_ms: float
    _last_hit_at: float | None = None

    @property
    def last_hit_at(self) -> float | None:
        return self._last_hit_at

    def remaining_ms(self, now: float) -> float:
        if self._last_hit_at is None:
            return 0.0
        return max(self.cooldown_ms - (now - self._last_hit_at) * 1000.0, 0.0)

    def try_acquire(self, now: float) -> bool:
        if self._last_hit_at is not None and (now - self._last_hit_at) * 1000.0 < self.cooldown_ms:
            return False
        if self._last_hit_at is None or now > self._last_hit_at:
            self._last_hit_at = now
        return True

    def reset(self) -> None:
        self._last_hit_at = None


@dataclass
class RecognitionPolicies:
    min_confidence: float = 0.3
    restart_delay_sec: float = 0.1
    already_running_retry_sec: float = 0.2
    max_consecutive_errors: int = 3
    periodic_reset_sec: float = 120.0
    reset_restart_delay_sec: float = 0.5
    transcript_revert_sec: float = 3.0
    transcript_placeholder: str = "-"


@dataclass
class ChannelPolicies:
    reconnect_delay_sec: float = 2.0


@dataclass
class VoicePolicies:
    ready_timeout_sec: float = 10.0
    session_invalid_timeout_sec: float = 5.0
    session_invalid_close_code: int = 4014
    max_rejoin_attempts: int = 5
    rejoin_backoff_sec: float = 1.0

    def rejoin_delay(self, attempts_so_far: int) -> float:
        return (attempts_so_far + 1) * self.rejoin_backoff_sec


__all__ = ["CooldownGate", "RecognitionPolicies", "ChannelPolicies", "VoicePolicies"]
