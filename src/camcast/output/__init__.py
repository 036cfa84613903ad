"""
Output Module
=============

Where frames leave the appliance.

Components:
    - BroadcastServer: Multi-client TCP fan-out of the encoded bitstream
    - StillWriter: Single-frame image files
"""

from camcast.output.broadcast import (
    AddressError,
    BroadcastServer,
    Connection,
    ServerAddress,
    parse_address,
)
from camcast.output.still import StillFormat, StillWriter


__all__ = [
    "AddressError",
    "BroadcastServer",
    "Connection",
    "ServerAddress",
    "parse_address",
    "StillFormat",
    "StillWriter",
]
