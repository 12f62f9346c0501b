"""시그널링 메시지 스키마.

외부 릴레이와 주고받는 메시지의 와이어 형식(camelCase)을 pydantic 모델로 정의합니다.

Wire Format:
    {
        "type": "offer" | "answer" | "ice-candidate" | "user-joined" | "user-left" | "participant-update",
        "peerId": str,
        "meetingCode": str,
        "timestamp": int (ms),
        "targetPeerId"?: str,
        "data"?: SessionDescription | IceCandidate | {"participants": [...]},
        "participantInfo"?: {"name": str, "isHost": bool}
    }
"""

import json
import time
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

MessageType = Literal[
    "offer",
    "answer",
    "ice-candidate",
    "user-joined",
    "user-left",
    "participant-update",
]

MESSAGE_TYPES = ("offer", "answer", "ice-candidate", "user-joined", "user-left", "participant-update")


def now_ms() -> int:
    return int(time.time() * 1000)


def normalize_meeting_code(code: str) -> str:
    """대소문자/공백 차이를 없앤 미팅 코드."""
    return code.strip().upper()


def room_id(meeting_code: str) -> str:
    """미팅 코드로부터 릴레이 채널 ID를 만듭니다."""
    return f"meeting-{normalize_meeting_code(meeting_code)}"


class ParticipantInfo(BaseModel):
    """참가자 정보 (로스터 항목, 미디어 연결과는 무관)."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str
    is_host: bool = Field(default=False, alias="isHost")
    joined_at: int = Field(default_factory=now_ms, alias="joinedAt")


class ParticipantDescriptor(BaseModel):
    """user-joined 메시지에 실리는 자기소개."""

    model_config = ConfigDict(populate_by_name=True)

    name: str
    is_host: bool = Field(default=False, alias="isHost")


class SignalingMessage(BaseModel):
    """시그널링 메시지.

    Examples:
        >>> msg = SignalingMessage.from_wire('{"type": "user-left", "peerId": "b", "meetingCode": "ABC123"}')
        >>> msg.peer_id
        'b'
    """

    model_config = ConfigDict(populate_by_name=True)

    type: MessageType
    peer_id: str = Field(alias="peerId")
    meeting_code: str = Field(alias="meetingCode")
    timestamp: int = Field(default_factory=now_ms)
    target_peer_id: Optional[str] = Field(default=None, alias="targetPeerId")
    data: Optional[Dict[str, Any]] = None
    participant_info: Optional[ParticipantDescriptor] = Field(default=None, alias="participantInfo")

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)

    @classmethod
    def from_wire(cls, raw: Union[str, bytes, Dict[str, Any]]) -> "SignalingMessage":
        """JSON 문자열 또는 딕셔너리에서 메시지를 생성합니다.

        Raises:
            pydantic.ValidationError: 스키마 불일치
            json.JSONDecodeError: JSON 파싱 실패
        """
        if isinstance(raw, (str, bytes)):
            raw = json.loads(raw)
        return cls.model_validate(raw)

    def participants(self) -> List[ParticipantInfo]:
        """participant-update 메시지의 참가자 목록."""
        items = (self.data or {}).get("participants") or []
        return [ParticipantInfo.model_validate(item) for item in items]
