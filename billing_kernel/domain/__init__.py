"""Pure domain helpers shared across the billing kernel."""

from billing_kernel.domain.clock import Clock, DeterministicClock, SystemClock

__all__ = ["Clock", "SystemClock", "DeterministicClock"]
