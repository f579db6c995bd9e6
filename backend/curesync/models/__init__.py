from .medication import Medication, DoseRecord
from .ledger import LedgerEntry
from .alarm import DeviceAlarm
from .telegram import TelegramChat
from .notification import NotificationEvent


__all__ = [
    "Medication",
    "DoseRecord",
    "LedgerEntry",
    "DeviceAlarm",
    "TelegramChat",
    "NotificationEvent",
]
