from __future__ import annotations

BUFFER_SIZE = 4096  # per-read buffer; also the largest forwarded datagram
MAX_DATAGRAM_SIZE = 65507  # largest UDP/IPv4 payload
POLL_TIMEOUT_MS = 100
ACCEPT_RETRY_DELAY_S = 0.1  # listener pause after running out of descriptors
LISTEN_BACKLOG = 10

DEFAULT_LISTEN_HOST = "0.0.0.0"
QUIT_COMMAND = "quit"

LOG_SERVER_RECV_TIMEOUT_S = 1.0
THREADED_ACCEPT_TIMEOUT_S = 0.5
CLIENT_CONNECT_TIMEOUT_S = 5.0
