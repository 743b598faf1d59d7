"""cligate: local API gateway with scenario routing and failover for AI coding CLIs."""

__version__ = "0.1.0"
