"""Policy layer between detection and delivery."""

from sentinel.policy.engine import PolicyEngine, group_batches
from sentinel.policy.rate_limiter import SlidingWindowLimiter

__all__ = ["PolicyEngine", "SlidingWindowLimiter", "group_batches"]
