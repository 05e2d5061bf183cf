from src.integrations.notifications import LarkNotifier, Notifier, notify_all
from src.integrations.vendor import VendorTicket, VendorTicketClient

__all__ = ["LarkNotifier", "Notifier", "notify_all", "VendorTicket", "VendorTicketClient"]
