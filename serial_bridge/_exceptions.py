"""Exception hierarchy for serial_bridge"""


class SerialBridgeException(OSError):
    kind = "error"

    def __init__(
        self,
        message: str,
        port: str | None = None,
    ):
        super().__init__(f"{port}: {message}" if port else message)
        self.port = port


class SerialOpenException(SerialBridgeException):
    kind = "open_failed"


class SerialOpenNotFound(SerialOpenException):
    kind = "not_found"


class SerialOpenBusy(SerialOpenException):
    kind = "busy"


class SerialOpenDenied(SerialOpenException):
    kind = "denied"


class SerialNotOpen(SerialBridgeException):
    kind = "not_open"


class SerialIoException(SerialBridgeException):
    kind = "io_error"


class SerialDeviceRemoved(SerialIoException):
    kind = "device_removed"


class SerialScanException(SerialBridgeException):
    kind = "discovery_failed"


class BridgeConfigInvalid(ValueError):
    pass
