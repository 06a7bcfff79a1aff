from __future__ import annotations

import inspect
import os
import socket
from datetime import datetime
from typing import Literal, Optional

from .constants import CLIENT_CONNECT_TIMEOUT_S
from .net import send_all


def format_message(message: str, now: Optional[datetime] = None) -> bytes:
    """Render ``[timestamp][message][source_file][line]`` plus a newline.

    The file and line are those of the caller.
    """
    now = now or datetime.now()
    frame = inspect.currentframe()
    caller = frame.f_back if frame is not None else None
    if caller is not None:
        source = os.path.basename(caller.f_code.co_filename)
        line = caller.f_lineno
    else:
        source, line = "?", 0
    del frame, caller

    return f"[{now:%Y-%m-%d %H:%M:%S}][{message}][{source}][{line}]\n".encode("utf-8")


def send_message(
    mode: Literal["tcp", "udp"],
    host: str,
    port: int,
    payload: bytes,
    timeout: float = CLIENT_CONNECT_TIMEOUT_S,
) -> None:
    if mode == "tcp":
        with socket.create_connection((host, port), timeout=timeout) as s:
            send_all(s, payload)
    elif mode == "udp":
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
            s.sendto(payload, (host, port))
    else:
        raise ValueError(f"invalid mode: {mode!r} (must be 'tcp' or 'udp')")
