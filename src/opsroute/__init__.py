"""opsroute: routes classified gym-chain messages to operational WhatsApp groups."""

__version__ = "0.1.0"
