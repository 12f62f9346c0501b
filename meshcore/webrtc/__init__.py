"""WebRTC 모듈.

로컬 미디어 제어, 풀 메시 피어 연결 관리, 트랙 래퍼, SDP 유틸리티를 제공합니다.

Classes:
    LocalMediaController: 카메라/마이크/화면 공유 스트림 관리
    PeerConnectionManager: 피어별 RTCPeerConnection 생성 및 협상
    PeerConnectionEntry: 원격 피어 하나의 연결 상태
    MediaStream: 트랙 묶음
    LocalMediaTrack: enabled 토글이 가능한 로컬 트랙 래퍼
    RelayTrack: 프레임레이트 상한이 있는 트랙 래퍼
    PlayerMediaDevices: aiortc MediaPlayer 기반 장치 접근

Config:
    ice_config: ICE 서버 설정
    media_config: 캡처 설정
    encoding_config: 송신/수신 트랙 설정
"""

from .config import (
    ice_config,
    media_config,
    encoding_config,
    ICEServerConfig,
    MediaConfig,
    EncodingConfig,
    QUALITY_PROFILES,
)
from .errors import MeshError, MediaAccessError, NegotiationError, SignalingDeliveryError
from .events import PeerState, TrackAdded, IceCandidateProduced, StateChanged, next_state
from .tracks import MediaStream, RelayTrack, LocalMediaTrack
from .devices import MediaDevices, PlayerMediaDevices
from .media import LocalMediaController
from .peer_manager import PeerConnectionManager, PeerConnectionEntry, EncodingParameters

__all__ = [
    # Classes
    "LocalMediaController",
    "PeerConnectionManager",
    "PeerConnectionEntry",
    "EncodingParameters",
    "MediaStream",
    "RelayTrack",
    "LocalMediaTrack",
    "MediaDevices",
    "PlayerMediaDevices",
    # Events
    "PeerState",
    "TrackAdded",
    "IceCandidateProduced",
    "StateChanged",
    "next_state",
    # Errors
    "MeshError",
    "MediaAccessError",
    "NegotiationError",
    "SignalingDeliveryError",
    # Config
    "ice_config",
    "media_config",
    "encoding_config",
    "ICEServerConfig",
    "MediaConfig",
    "EncodingConfig",
    "QUALITY_PROFILES",
]
