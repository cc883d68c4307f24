"""Recency decay for price observations."""

from __future__ import annotations

import math
from datetime import datetime

from coinvalue.storage.store import to_utc

_SECONDS_PER_DAY = 86_400.0


class RecencyDecay:
    """Exponential time decay applied to observation weights.

    The decay weight follows: weight = exp(-age_days / tau_days)

    At age 0: weight = 1.0
    At age = tau: weight ~ 0.368
    At age = 3 * tau: weight ~ 0.050

    Usage:
        decay = RecencyDecay(tau_days=30)
        w = decay.compute_weight(obs.observed_at, as_of=now)
    """

    def __init__(self, tau_days: float = 30.0):
        if tau_days <= 0:
            raise ValueError(f"tau_days must be > 0, got {tau_days}")
        self._tau = float(tau_days)

    @property
    def tau_days(self) -> float:
        return self._tau

    @staticmethod
    def age_days(observed_at: datetime, as_of: datetime) -> float:
        return (to_utc(as_of) - to_utc(observed_at)).total_seconds() / _SECONDS_PER_DAY

    def compute_weight(self, observed_at: datetime, as_of: datetime) -> float:
        """Decay weight in (0.0, 1.0]. Observations at or after `as_of` are not decayed."""
        age = self.age_days(observed_at, as_of)
        if age <= 0:
            return 1.0
        return math.exp(-age / self._tau)
