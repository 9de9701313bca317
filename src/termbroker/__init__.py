"""termbroker: keeps project shells alive across reconnecting viewers."""

__version__ = "0.1.0"
