"""메시 코어 예외 정의.

코어는 어떤 오류도 재시도하지 않습니다. 재시도/재연결 정책은 호출자가 결정합니다.
"""

from typing import Optional


class MeshError(Exception):
    """메시 코어 예외의 기본 클래스."""


class MediaAccessError(MeshError):
    """카메라/마이크/화면 캡처 장치를 열 수 없거나 권한이 거부됨."""


class NegotiationError(MeshError):
    """SDP 생성/적용 또는 ICE candidate 추가 실패.

    Attributes:
        peer_id (str): 협상 중이던 피어 ID
        stage (str): 실패 단계 (guard, offer, remote-offer, answer, remote-answer, candidate)
        cause (Optional[BaseException]): 원인 예외
    """

    def __init__(self, peer_id: str, stage: str, cause: Optional[BaseException] = None):
        self.peer_id = peer_id
        self.stage = stage
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"negotiation with {peer_id} failed at {stage}{detail}")


class SignalingDeliveryError(MeshError):
    """시그널링 채널 연결 또는 메시지 전송 실패."""
