"""Position monitoring and liquidation orchestration for a collateralized lending platform."""

__version__ = "0.1.0"
