"""Price-driven heat pump setpoint controller."""

__version__ = "0.1.0"
