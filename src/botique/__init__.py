"""TheBotique: agent marketplace hub with USDC payments on Base."""

__version__ = "2.0.0"
