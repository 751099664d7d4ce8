"""Protocol toolkit for iOS device services: plist framing, usbmux, lockdown, keyed archives and service clients."""

__version__ = "0.1.0"