from .completion_tools import complete
from .messenger_tools import send_message, booking_quick_replies

__all__ = [
    "complete",
    "send_message", "booking_quick_replies",
]
