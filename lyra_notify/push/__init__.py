"""
Push delivery: transport contract, device directory and dispatcher.
"""

from lyra_notify.push.devices import DeviceDirectory, SQLiteDeviceDirectory
from lyra_notify.push.dispatcher import DeliveryOutcome, Dispatcher
from lyra_notify.push.transport import LogTransport, Transport

__all__ = [
    "DeliveryOutcome",
    "DeviceDirectory",
    "Dispatcher",
    "LogTransport",
    "SQLiteDeviceDirectory",
    "Transport",
]
