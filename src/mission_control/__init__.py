"""Mission control: task scheduling core for gateway-executed agent sessions."""

__version__ = "0.1.0"
