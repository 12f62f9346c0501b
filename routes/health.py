"""Health Check API 라우터.

릴레이 서버 상태 확인용 엔드포인트를 제공합니다.
"""

from fastapi import APIRouter

from meshcore.webrtc.config import ice_config

from .signaling import get_room_manager

router = APIRouter(prefix="/api/health", tags=["health"])


@router.get("")
async def health_check():
    """릴레이 상태를 확인합니다.

    Returns:
        dict: 매니저 초기화 여부, 활성 룸/참가자 수, TURN 설정 여부
    """
    room_manager = get_room_manager()
    if room_manager is None:
        return {"status": "not_initialized"}

    return {
        "status": "ok",
        "rooms": len(room_manager.rooms),
        "peers": len(room_manager.peer_to_room),
        "turn_configured": ice_config.has_turn_server,
    }
