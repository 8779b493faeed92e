"""Syslog transport for collector records.

One SysLogHandler per collector, tagged with the collector name, facility
USER, severity INFO. A record is one formatted line and goes out in a
single send under the handler lock.
"""

from __future__ import annotations

import logging
import logging.handlers
import sys
from typing import Protocol

import structlog

from trident.errors import InitError, SinkWriteError

log = structlog.get_logger()


class RecordSink(Protocol):
    def write(self, record: str) -> None: ...


class _StrictSysLogHandler(logging.handlers.SysLogHandler):
    """SysLogHandler that raises send failures instead of printing them."""

    def handleError(self, record: logging.LogRecord) -> None:  # noqa: N802
        exc = sys.exc_info()[1]
        raise SinkWriteError(f"syslog send failed: {exc}") from exc


def parse_address(address: str) -> str | tuple[str, int]:
    """Turn "host:port" into a UDP address; anything else is a socket path."""
    if not address.startswith("/") and ":" in address:
        host, port = address.rsplit(":", 1)
        return (host, int(port))
    return address


class SyslogSink:
    """Writes records to the local system logger under one tag."""

    def __init__(self, tag: str, address: str = "/dev/log") -> None:
        self.tag = tag
        self.address = address
        try:
            handler = _StrictSysLogHandler(
                address=parse_address(address),
                facility=logging.handlers.SysLogHandler.LOG_USER,
            )
        except (OSError, ValueError) as e:
            raise InitError(f"failed to connect syslog at {address}: {e}") from e
        # Python 3.11+ leaves a failed Unix socket connect unreported
        if handler.unixsocket and handler.socket is None:
            handler.close()
            raise InitError(f"failed to connect syslog at {address}: no listening socket")
        handler.ident = f"{tag}: "
        handler.append_nul = False
        handler.setFormatter(logging.Formatter("%(message)s"))
        self._handler = handler
        log.debug("syslog_connected", tag=tag, address=address)

    def write(self, record: str) -> None:
        """Send one LF-terminated record at INFO severity."""
        if not record.endswith("\n"):
            record += "\n"
        entry = logging.makeLogRecord(
            {"msg": record, "levelno": logging.INFO, "levelname": "INFO", "name": self.tag}
        )
        self._handler.handle(entry)

    def close(self) -> None:
        self._handler.close()

    def __enter__(self) -> SyslogSink:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
