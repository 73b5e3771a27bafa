"""Abstract device adapter interface.

The adapter owns every protocol-level detail of the device cloud
(authentication, request signing, transport retries). The controller depends
only on this interface and sees success/failure plus a status snapshot.
"""

from abc import ABC, abstractmethod
from decimal import Decimal

from poolheat.models import DeviceStatus


class DeviceAdapter(ABC):
    """Abstract base class for heat pump adapters.

    Every call against the device cloud counts against the call budget;
    callers (arbiter, dispatcher) are responsible for consulting the
    QuotaTracker before calling.
    """

    device_id: str

    @abstractmethod
    async def read_status(self) -> DeviceStatus:
        """Pull the current device status (source_kind=POLLED).

        Raises:
            DeviceError: If the device cloud cannot be reached or errors.
        """
        ...

    @abstractmethod
    async def write_setpoint(self, value: Decimal) -> None:
        """Send a new target temperature.

        Returning normally is an acknowledgement that the cloud accepted the
        command, not that the device applied it.

        Raises:
            DeviceCommandError: If the cloud rejected the command.
        """
        ...

    @abstractmethod
    async def set_power(self, on: bool) -> None:
        """Switch the heat pump on or off.

        Raises:
            DeviceCommandError: If the cloud rejected the command.
        """
        ...
