"""
Order Pipeline

  Validation  — field check → credit debit → upload check
  Generation  — Replicate background (with fallback) → Google TTS voice-over
                → D-ID animation → moviepy composite → R2 upload → email
"""

from .orchestrator import OrderWorkflow, route_change
from .routes import order_router
from .models import CreditStatus, Order, OrderStatus

__all__ = [
    "OrderWorkflow",
    "route_change",
    "order_router",
    "CreditStatus",
    "Order",
    "OrderStatus",
]
