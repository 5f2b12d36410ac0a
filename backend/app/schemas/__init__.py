from app.schemas import common, enrollment

__all__ = [
    "common",
    "enrollment",
]
