# insulctrl/exception.py
"""Exceptions raised by the insulctrl package."""

from __future__ import annotations

# Handshake failure reasons, shown to the operator as-is
NO_DEVICE_CHOSEN = "no device chosen"
LINK_FAILED = "link failed"
SERVICE_NOT_FOUND = "service not found"
CHARACTERISTIC_NOT_FOUND = "characteristic not found"
SUBSCRIPTION_FAILED = "subscription failed"
ALREADY_CONNECTING = "connection already in progress"
CONNECT_CANCELLED = "connection attempt cancelled"


class InsulCtrlError(Exception):
    """Base class for all insulctrl errors."""


class ConnectError(InsulCtrlError):
    """The connection handshake did not reach the connected state."""

    def __init__(self, reason: str, detail: str | None = None) -> None:
        self.reason = reason
        self.detail = detail
        super().__init__(f"{reason}: {detail}" if detail else reason)


class ServiceMissingError(ConnectError):
    """The appliance does not expose the control service."""

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(SERVICE_NOT_FOUND, detail)


class CharacteristicMissingError(ConnectError):
    """The control service lacks the command characteristic."""

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(CHARACTERISTIC_NOT_FOUND, detail)


class NotConnectedError(InsulCtrlError):
    """A command was issued while the link is not connected."""


class CommandSendError(InsulCtrlError):
    """Writing a command frame to the appliance failed."""


class FrameDecodeError(InsulCtrlError):
    """A notification or command frame could not be parsed."""
