"""Custom exceptions for the price-driven setpoint controller.

All control-loop, device and storage exceptions live here
to avoid circular imports between modules.
"""


class ControllerError(Exception):
    """Base exception for all controller errors."""


class PriceFeedError(ControllerError):
    """Raised when price data is unavailable or malformed (e.g. duplicate starts)."""


class DeviceError(ControllerError):
    """Base exception for device adapter failures."""


class DeviceUnavailableError(DeviceError):
    """Raised when no source can provide a device status."""


class DeviceCommandError(DeviceError):
    """Raised when the device explicitly rejects or fails a write."""


class QuotaExhaustedError(ControllerError):
    """Raised when a pull/write call is attempted without remaining budget."""


class InvalidSettingsError(ControllerError):
    """Raised when automation settings are internally inconsistent."""


class CycleInProgressError(ControllerError):
    """Raised when a control cycle is requested while another one is running."""


class SetpointBoundsViolation(ControllerError):
    """Raised when a setpoint about to be written lies outside [min_temp, max_temp].

    Clamping happens before any external effect, so this signals an
    internal logic bug. It must never be caught and silently re-clamped.
    """


class InvalidCommandError(ControllerError):
    """Raised when a manual override asks for something the controller must refuse."""
