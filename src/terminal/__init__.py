"""
Xanthus Terminal — authenticated WebSocket shells on managed instances
"""

from .sessions import SessionManager, SessionStatus, TerminalSession
from .bridge import TerminalBridge
from .tokens import TokenService

__all__ = ['SessionManager', 'SessionStatus', 'TerminalSession', 'TerminalBridge', 'TokenService']
