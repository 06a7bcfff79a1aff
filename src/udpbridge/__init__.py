"""TCP→UDP bridge utilities.

The main tool is a single-threaded, selector-driven forwarder that relays
every chunk read from any number of TCP clients to one fixed UDP destination.
Around it sit a few smaller helpers:
- a thread-per-connection forwarder variant
- a UDP server that appends received datagrams to a log file
- a test client that sends one timestamped message over TCP or UDP
"""

from .net import ForwardingSink, SetupError, send_all
from .reactor import ForwarderConfig, ForwarderStats, Reactor

__all__ = [
    "ForwarderConfig",
    "ForwarderStats",
    "ForwardingSink",
    "Reactor",
    "SetupError",
    "send_all",
]
