"""시그널링 모듈.

외부 릴레이와 주고받는 메시지 스키마와 시그널링 브리지를 제공합니다.
"""

from .messages import (
    SignalingMessage,
    ParticipantInfo,
    ParticipantDescriptor,
    normalize_meeting_code,
    room_id,
)
from .bridge import SignalingBridge, WebSocketSignalingBridge

__all__ = [
    "SignalingMessage",
    "ParticipantInfo",
    "ParticipantDescriptor",
    "normalize_meeting_code",
    "room_id",
    "SignalingBridge",
    "WebSocketSignalingBridge",
]
