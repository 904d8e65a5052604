"""InsulCtrl appliance control over Bluetooth Low Energy."""

__version__ = "0.1.0"
