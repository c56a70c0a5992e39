"""Tool permission policy, request lifecycle and expiry timers."""
