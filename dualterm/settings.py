"""Process-wide defaults, overridable through environment variables."""
from __future__ import annotations

import os
from pathlib import Path

CONFIG_DIR = Path(os.getenv("DUALTERM_CONFIG_DIR", str(Path.home() / ".config" / "dualterm")))
KNOWN_HOSTS_PATH = Path(os.getenv("DUALTERM_KNOWN_HOSTS", str(CONFIG_DIR / "known_hosts.csv")))
# OpenSSH known_hosts, read only; keys trusted there are trusted here too.
SYSTEM_KNOWN_HOSTS_PATH = Path(
    os.getenv("DUALTERM_SYSTEM_KNOWN_HOSTS", str(Path.home() / ".ssh" / "known_hosts"))
)

# Unanswered host-key prompts are rejected after this many seconds.
HOST_KEY_PROMPT_TIMEOUT = float(os.getenv("DUALTERM_PROMPT_TIMEOUT", "300"))

# Cadence at which presentation loops drain actor events.
EVENT_TICK_INTERVAL = int(os.getenv("DUALTERM_EVENT_TICK_MS", "20")) / 1000.0

EVENT_QUEUE_CAPACITY = 128
COMMAND_QUEUE_CAPACITY = 32

# Driver-level read timeout; reads loop on it so a released handle is noticed.
READ_POLL_INTERVAL = 0.05
READ_CHUNK_SIZE = 4096

SSH_TERM = "xterm-256color"
SSH_TERM_COLUMNS = 220
SSH_TERM_ROWS = 50

# Seconds between SSH keepalive requests, so a dead peer eventually ends the session.
SSH_KEEPALIVE_INTERVAL = int(os.getenv("DUALTERM_SSH_KEEPALIVE", "15"))

LINE_ENDINGS = {"lf": b"\n", "cr": b"\r", "crlf": b"\r\n", "none": b""}

__all__ = [
    "COMMAND_QUEUE_CAPACITY",
    "CONFIG_DIR",
    "EVENT_QUEUE_CAPACITY",
    "EVENT_TICK_INTERVAL",
    "HOST_KEY_PROMPT_TIMEOUT",
    "KNOWN_HOSTS_PATH",
    "LINE_ENDINGS",
    "READ_CHUNK_SIZE",
    "READ_POLL_INTERVAL",
    "SSH_KEEPALIVE_INTERVAL",
    "SSH_TERM",
    "SSH_TERM_COLUMNS",
    "SSH_TERM_ROWS",
    "SYSTEM_KNOWN_HOSTS_PATH",
]
