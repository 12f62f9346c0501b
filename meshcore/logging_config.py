"""
===========================================
로깅 설정 모듈
===========================================

릴레이 서버와 헤드리스 미팅 클라이언트가 공통으로 사용하는 로깅 설정.

코드 전반의 로그 메시지는 "[WebRTC] ...", "[Media] ...", "[Signaling] ..."처럼
구성 요소 접두어로 시작합니다. ComponentFormatter는 이 접두어를 별도 컬럼으로
옮겨서 한 구성 요소의 로그만 grep/필터하기 쉽게 만듭니다.

출력 예시:
    2026-10-18 12:00:00 | INFO     | WebRTC    | meshcore.webrtc.peer_manager | offer 전송 → peer-b
    2026-10-18 12:00:01 | WARNING  | aioice    | aioice.ice                   | Connection(0) ...

사용 예시:
    from meshcore.logging_config import setup_logging

    setup_logging("DEBUG", "logs/meshcore.log")
"""

import logging
import os
import re
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

COMPONENT_PREFIX = re.compile(r"^\[(WebRTC|Media|Signaling)\]\s*")

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(component)-9s | %(name)-28s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# ICE/RTP 패킷 단위 로그를 내는 라이브러리
NOISY_LOGGERS = ("aioice", "aiortc", "websockets")


class ComponentFormatter(logging.Formatter):
    """메시지 접두어를 component 컬럼으로 분리하는 포매터.

    접두어가 없는 레코드(외부 라이브러리 등)는 로거 이름의 첫 부분을 component로 씁니다.
    핸들러끼리 공유하는 원본 레코드는 바꾸지 않고 복사본을 포맷합니다.
    """

    def __init__(self):
        super().__init__(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)

    def format(self, record: logging.LogRecord) -> str:
        message = record.getMessage()
        match = COMPONENT_PREFIX.match(message)

        view = logging.makeLogRecord(record.__dict__)
        if match:
            view.component = match.group(1)
            view.msg = message[match.end():]
        else:
            view.component = record.name.split(".")[0]
            view.msg = message
        view.args = None
        return super().format(view)


def _rotating_file_handler(log_file: str) -> RotatingFileHandler:
    Path(log_file).parent.mkdir(parents=True, exist_ok=True)
    # 10MB마다 교체, 백업 5개
    return RotatingFileHandler(log_file, maxBytes=10 * 1024 * 1024, backupCount=5, encoding="utf-8")


def setup_logging(level: Optional[str] = None, log_file: Optional[str] = None) -> None:
    """
    로깅 설정 초기화

    Args:
        level: 로그 레벨 (기본: 환경변수 LOG_LEVEL, 없으면 INFO)
        log_file: 로그 파일 경로 (기본: 환경변수 LOG_FILE, 없으면 콘솔만)

    Note:
        기존 루트 핸들러를 교체하므로 프로세스 시작 시 한 번만 호출합니다.
    """
    level = level or os.getenv("LOG_LEVEL", "INFO")
    log_file = log_file or os.getenv("LOG_FILE")
    log_level = getattr(logging, level.upper(), logging.INFO)

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(_rotating_file_handler(log_file))

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()
    formatter = ComponentFormatter()
    for handler in handlers:
        handler.setLevel(log_level)
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.getLogger("uvicorn").setLevel(log_level)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

    logging.info(f"로깅 설정 완료: level={level}, file={log_file or 'None'}")
