from __future__ import annotations

import logging
import os
import select
import sys
from typing import IO, Optional, Union

from .constants import QUIT_COMMAND

logger = logging.getLogger(__name__)


class ControlChannel:
    """Operator command stream checked between reactor iterations.

    Input is read straight from the descriptor, never through a buffered text
    wrapper, so a poll only consumes what is already available. Reaching EOF
    closes the channel for good; it never counts as a shutdown request.
    """

    def __init__(self, stream: Union[int, IO], command: str = QUIT_COMMAND):
        self.fd = stream if isinstance(stream, int) else stream.fileno()
        self.command = command.encode("utf-8")
        self.closed = False
        self._pending = b""

    @classmethod
    def from_stdin(cls) -> Optional["ControlChannel"]:
        if sys.stdin is None:
            return None
        try:
            return cls(sys.stdin)
        except (AttributeError, OSError, ValueError):
            return None

    def poll_shutdown_requested(self, timeout: float = 0.0) -> bool:
        if self.closed:
            return False

        try:
            readable, _, _ = select.select([self.fd], [], [], timeout)
        except (OSError, ValueError) as e:
            logger.warning("control channel unusable, console commands disabled: %s", e)
            self.closed = True
            return False
        if not readable:
            return False

        try:
            chunk = os.read(self.fd, 1024)
        except BlockingIOError:
            return False
        except OSError as e:
            logger.warning("control channel read failed, console commands disabled: %s", e)
            self.closed = True
            return False

        self._pending += chunk
        *lines, self._pending = self._pending.split(b"\n")
        if not chunk:
            logger.info("control channel reached EOF; console commands disabled")
            self.closed = True
            lines.append(self._pending)
            self._pending = b""

        for line in lines:
            if line.strip() == self.command:
                return True
            if line.strip():
                logger.debug("ignoring console input %r", line)
        return False
