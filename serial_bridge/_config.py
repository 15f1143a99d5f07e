import os
import pathlib
from typing import Mapping

import pydantic

from serial_bridge import _connection
from serial_bridge import _exceptions

_ENV_FIELDS = {
    "SERIAL_PORT": "port",
    "SERIAL_BAUD": "baud",
    "SERIAL_AUTODETECT": "autodetect",
    "SERIAL_KEEPALIVE": "keepalive",
    "HOST": "host",
    "PORT": "http_port",
    "STATIC_DIR": "static_dir",
}


class BridgeConfig(pydantic.BaseModel):
    """Process-wide settings, normally taken from the environment"""

    model_config = pydantic.ConfigDict(frozen=True)

    port: str | None = None
    baud: int = pydantic.Field(_connection.DEFAULT_BAUD, gt=0)
    autodetect: bool = True
    keepalive: float = pydantic.Field(20.0, gt=0)
    host: str = "0.0.0.0"
    http_port: int = pydantic.Field(3000, ge=0, le=65535)
    static_dir: pathlib.Path | None = None

    @classmethod
    def from_env(
        cls, environ: Mapping[str, str] | None = None, **overrides
    ) -> "BridgeConfig":
        """Reads SERIAL_PORT, SERIAL_BAUD, ... and applies 'overrides' on top

        Empty variables count as unset; None overrides are ignored.
        """

        environ = os.environ if environ is None else environ
        values: dict[str, object] = {
            field: environ[var]
            for var, field in _ENV_FIELDS.items()
            if environ.get(var, "").strip()
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        try:
            return cls.model_validate(values)
        except pydantic.ValidationError as ex:
            raise _exceptions.BridgeConfigInvalid(
                f"Bad bridge configuration:\n{ex}"
            ) from ex
