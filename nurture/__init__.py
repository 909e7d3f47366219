"""
🌱 SMS Nurture Engine
---------------------
Classifies inbound seller replies, routes leads between nurture states and
sends the scheduled DAY_1 → DAY_7 follow-up texts.
"""

from .config import settings

__all__ = ["settings"]
