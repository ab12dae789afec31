"""Exception taxonomy for the telemetry pipeline.

Per-tick problems (:class:`PollingFailure`, :class:`InvalidReadingError`,
:class:`NoContactError`) are absorbed where they occur and reported on the
event bus.  Connection-fatal problems (:class:`DeviceConnectionError` and
:class:`LostConnectionError`) flip the link state and reach the consumer
with a human-readable :attr:`~NeuroNestError.user_message`.
"""

from __future__ import annotations

from enum import Enum


class NeuroNestError(Exception):
    """Base class for all pipeline errors."""

    user_message: str = "Something went wrong while talking to the wearable."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.user_message)
        if message:
            self.user_message = message


class ConnectionErrorKind(str, Enum):
    TIMEOUT = "timeout"
    NETWORK = "network"
    UNREACHABLE = "unreachable"
    LOST = "lost"


_KIND_MESSAGES: dict[ConnectionErrorKind, str] = {
    ConnectionErrorKind.TIMEOUT: (
        "Connection timeout. Check the IP address and that this host is on "
        "the same WiFi network as the wearable."
    ),
    ConnectionErrorKind.NETWORK: (
        "Network error. Make sure this host and the wearable are on the same "
        "WiFi network."
    ),
    ConnectionErrorKind.UNREACHABLE: (
        "Cannot reach the wearable. Verify the IP address and WiFi network."
    ),
    ConnectionErrorKind.LOST: "Lost connection to the wearable device.",
}


class DeviceConnectionError(NeuroNestError, ConnectionError):
    """The sensor node could not be reached (recoverable by reconnecting)."""

    def __init__(self, kind: ConnectionErrorKind, detail: str = "") -> None:
        self.kind = kind
        self.detail = detail
        super().__init__(_KIND_MESSAGES[kind])


class LostConnectionError(DeviceConnectionError):
    """Raised once when consecutive poll failures reach the configured limit."""

    def __init__(self, failures: int) -> None:
        self.failures = failures
        super().__init__(ConnectionErrorKind.LOST, detail=f"{failures} consecutive failures")
        self.user_message = (
            f"Lost connection to the wearable after {failures} failed polls."
        )


class PollingFailure(NeuroNestError):
    """A single poll tick failed; counted towards the disconnect threshold."""

    def __init__(self, consecutive: int, detail: str = "") -> None:
        self.consecutive = consecutive
        self.detail = detail
        super().__init__(f"Sensor poll failed ({consecutive} in a row): {detail}")


class InvalidReadingError(NeuroNestError, ValueError):
    """The payload could not be interpreted as a sensor reading."""

    user_message = "Invalid sensor data format."


class NoContactError(NeuroNestError):
    """Heart rate outside the physiological band: no finger on the sensor."""

    user_message = "No valid heart rate. Ensure finger is on the sensor."
