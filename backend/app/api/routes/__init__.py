from . import enrollments, health, webhooks

__all__ = [
    "enrollments",
    "health",
    "webhooks",
]
