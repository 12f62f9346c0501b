"""세션 모듈.

공유 세션 상태와 공개 미팅 클라이언트를 제공합니다.
"""

from .state import Session, ConnectionStatus, RoomStatus
from .meeting import MeetingClient

__all__ = [
    "Session",
    "ConnectionStatus",
    "RoomStatus",
    "MeetingClient",
]
