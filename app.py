"""FastAPI 시그널링 릴레이 서버.

풀 메시 미팅 클라이언트들이 offer/answer/ICE candidate와 참가자 정보를
주고받는 WebSocket 릴레이입니다. 미디어는 참가자끼리 직접 전송되므로
서버는 메시지 전달만 담당합니다.

주요 기능:
    - 미팅 코드 단위 룸 관리
    - 대상 지정(targetPeerId) 또는 룸 브로드캐스트 중계
    - 참가/퇴장 알림 (joined 응답, user-left 브로드캐스트)
    - 브라우저용 ICE 설정 제공

Run:
    python app.py
    uvicorn app:app --host 0.0.0.0 --port 8000
"""
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from meshcore.logging_config import setup_logging
from room_manager import RoomManager
from routes import health_router, signaling_router, init_signaling_managers

# config/.env 환경변수 로드
load_dotenv(Path(__file__).parent / "config" / ".env")

setup_logging(os.getenv("LOG_LEVEL", "INFO"), os.getenv("LOG_FILE"))
logger = logging.getLogger(__name__)

RELAY_HOST = os.getenv("RELAY_HOST", "0.0.0.0")
RELAY_PORT = int(os.getenv("RELAY_PORT", "8000"))
CORS_ORIGINS = [origin.strip() for origin in os.getenv("CORS_ORIGINS", "").split(",") if origin.strip()]

# 글로벌 매니저 인스턴스
room_manager = RoomManager()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """서버 시작/종료 시 로그를 남기고, 종료 시 남은 연결을 정리합니다."""
    logger.info(f"[Signaling] 릴레이 서버 시작: {RELAY_HOST}:{RELAY_PORT}")

    yield

    logger.info("[Signaling] 릴레이 서버 종료 중...")
    for peer_id in list(room_manager.peer_to_room):
        peer = room_manager.get_peer(peer_id)
        room_manager.leave_room(peer_id)
        if peer is not None:
            try:
                await peer.websocket.close(code=1001)
            except RuntimeError:
                # already closed by the client
                pass


app = FastAPI(title="Mesh Meeting Signaling Relay", lifespan=lifespan)

# CORS - 목록이 없으면 로컬 개발 주소만 허용
if CORS_ORIGINS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origin_regex=r"^http://(localhost|127\.0\.0\.1|192\.168\.\d{1,3}\.\d{1,3}):\d+$",
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

# 라우터 등록
app.include_router(health_router)
app.include_router(signaling_router)

# WebSocket 릴레이 라우터에 매니저 인스턴스 전달
init_signaling_managers(room_manager)


@app.get("/")
async def root():
    """서버 상태 확인 엔드포인트.

    Examples:
        >>> response = await root()
        >>> print(response)
        {"status": "ok", "service": "Mesh Meeting Signaling Relay"}
    """
    return {"status": "ok", "service": "Mesh Meeting Signaling Relay"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=RELAY_HOST, port=RELAY_PORT, log_level="info")
