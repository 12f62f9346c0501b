"""피어 연결 이벤트와 연결 상태 머신.

aiortc의 네이티브 콜백(track, icecandidate, connectionstatechange)은 모두
아래 세 가지 이벤트 중 하나로 변환되어 PeerConnectionManager.dispatch()로
전달됩니다. 상태 전이는 next_state()만으로 결정되므로 실제 전송 계층 없이
테스트할 수 있습니다.

State Machine:
    new → connecting → connected → {disconnected, failed, closed}
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from aiortc import MediaStreamTrack, RTCIceCandidate


class PeerState(str, Enum):
    """피어 연결 상태."""

    NEW = "new"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"
    CLOSED = "closed"

    @property
    def is_terminal(self) -> bool:
        return self in (PeerState.DISCONNECTED, PeerState.FAILED, PeerState.CLOSED)

    @classmethod
    def from_native(cls, value: str) -> Optional["PeerState"]:
        """aiortc/브라우저 상태 문자열을 PeerState로 변환합니다.

        ICE 상태 이름(checking, completed)도 허용합니다.
        알 수 없는 값이면 None.
        """
        aliases = {"checking": cls.CONNECTING, "completed": cls.CONNECTED}
        if value in aliases:
            return aliases[value]
        try:
            return cls(value)
        except ValueError:
            return None


def next_state(current: PeerState, reported: Optional[PeerState]) -> PeerState:
    """보고된 상태를 반영한 다음 상태를 반환합니다.

    종료 상태(disconnected, failed, closed)에서는 더 이상 전이하지 않습니다.
    """
    if reported is None or current.is_terminal:
        return current
    return reported


@dataclass(frozen=True)
class TrackAdded:
    """원격 피어로부터 미디어 트랙 수신."""

    peer_id: str
    track: MediaStreamTrack


@dataclass(frozen=True)
class IceCandidateProduced:
    """로컬 ICE candidate 발견 (None이면 수집 완료)."""

    peer_id: str
    candidate: Optional[RTCIceCandidate]


@dataclass(frozen=True)
class StateChanged:
    """네이티브 연결 상태 변경."""

    peer_id: str
    state: str


PeerEvent = Union[TrackAdded, IceCandidateProduced, StateChanged]
