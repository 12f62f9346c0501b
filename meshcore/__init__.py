"""풀 메시 WebRTC 미팅 코어 패키지.

참가자마다 직접 피어 연결을 맺는 멀티파티 화상회의의 미디어 코어입니다.

Modules:
    webrtc: 로컬 미디어, 피어 연결, 트랙, SDP 유틸리티
    signaling: 시그널링 메시지와 릴레이 브리지
    session: 세션 상태와 공개 MeetingClient
"""

from .session import MeetingClient, Session, ConnectionStatus, RoomStatus
from .signaling import SignalingMessage, ParticipantInfo, SignalingBridge, WebSocketSignalingBridge
from .webrtc import MeshError, MediaAccessError, NegotiationError, SignalingDeliveryError

__all__ = [
    "MeetingClient",
    "Session",
    "ConnectionStatus",
    "RoomStatus",
    "SignalingMessage",
    "ParticipantInfo",
    "SignalingBridge",
    "WebSocketSignalingBridge",
    "MeshError",
    "MediaAccessError",
    "NegotiationError",
    "SignalingDeliveryError",
]
