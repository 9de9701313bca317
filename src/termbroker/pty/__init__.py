"""Terminal sessions: shells on pseudo-terminals that outlive their viewers.

Each session runs one shell in its own process group, keeps a bounded
scrollback of raw output for replay, and fans live output out to every
attached connection.
"""

from termbroker.pty.buffer import ScrollbackBuffer
from termbroker.pty.process import PTYProcess, ProcessStatus
from termbroker.pty.registry import SessionRegistry
from termbroker.pty.session import Session, SessionState, validate_geometry

__all__ = [
    "PTYProcess",
    "ProcessStatus",
    "ScrollbackBuffer",
    "Session",
    "SessionRegistry",
    "SessionState",
    "validate_geometry",
]
