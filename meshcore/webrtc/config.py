"""WebRTC 모듈 설정.

STUN/TURN 서버, ICE 정책, 캡처 품질 프로파일, 송신 인코딩 상한 등
메시 코어가 사용하는 상수와 환경변수 기반 설정.
"""

import os
import logging
from pathlib import Path
from dataclasses import dataclass
from typing import Optional, List, Dict, Any

from aiortc.rtcconfiguration import RTCBundlePolicy, RTCConfiguration, RTCIceServer
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

_env_path = Path(__file__).parent.parent.parent / "config" / ".env"
load_dotenv(_env_path)


# ============================================================
# ICE Server 설정
# ============================================================

@dataclass(frozen=True)
class ICEServerConfig:
    """ICE 서버 설정.

    기본값은 STUN 전용 구성입니다. TURN 릴레이는 세 개의 환경변수
    (URL, 사용자명, 자격증명)가 모두 있을 때만 추가됩니다.
    """

    # TURN 서버
    TURN_SERVER_URL: Optional[str] = os.getenv("TURN_SERVER_URL")
    TURN_USERNAME: Optional[str] = os.getenv("TURN_USERNAME")
    TURN_CREDENTIAL: Optional[str] = os.getenv("TURN_CREDENTIAL")

    # STUN 서버
    STUN_SERVER_URL: Optional[str] = os.getenv("STUN_SERVER_URL")

    # 기본 공개 STUN 서버
    DEFAULT_STUN_SERVERS: tuple = (
        "stun:stun.l.google.com:19302",
        "stun:stun1.l.google.com:19302",
        "stun:stun2.l.google.com:19302",
    )

    # 연결 정책 (브라우저 RTCConfiguration과 동일한 이름)
    BUNDLE_POLICY: str = "max-bundle"
    RTCP_MUX_POLICY: str = "require"
    ICE_CANDIDATE_POOL_SIZE: int = 10

    @property
    def has_turn_server(self) -> bool:
        """TURN 서버 설정 완료 여부."""
        return all([self.TURN_SERVER_URL, self.TURN_USERNAME, self.TURN_CREDENTIAL])

    @property
    def stun_urls(self) -> List[str]:
        """사용할 STUN URL 목록 (커스텀 STUN이 있으면 맨 앞)."""
        urls = list(self.DEFAULT_STUN_SERVERS)
        if self.STUN_SERVER_URL and self.STUN_SERVER_URL not in urls:
            urls.insert(0, self.STUN_SERVER_URL)
        return urls

    def ice_servers(self) -> List[RTCIceServer]:
        """aiortc RTCIceServer 목록을 생성합니다."""
        servers = [RTCIceServer(urls=[url]) for url in self.stun_urls]
        if self.has_turn_server:
            servers.append(RTCIceServer(
                urls=[self.TURN_SERVER_URL],
                username=self.TURN_USERNAME,
                credential=self.TURN_CREDENTIAL
            ))
        return servers

    def build_configuration(self) -> RTCConfiguration:
        """RTCPeerConnection 생성에 사용할 RTCConfiguration을 반환합니다.

        Note:
            - aiortc는 rtcp-mux를 항상 사용하고 candidate pool을 지원하지 않으므로
              RTCP_MUX_POLICY, ICE_CANDIDATE_POOL_SIZE는 브라우저용 설정에만 반영됨
        """
        return RTCConfiguration(
            iceServers=self.ice_servers(),
            bundlePolicy=RTCBundlePolicy(self.BUNDLE_POLICY),
        )

    def to_browser_config(self) -> Dict[str, Any]:
        """브라우저 RTCPeerConnection에 그대로 넘길 수 있는 설정 딕셔너리.

        Returns:
            dict: iceServers, bundlePolicy, rtcpMuxPolicy, iceCandidatePoolSize
        """
        ice_servers: List[Dict[str, Any]] = [{"urls": url} for url in self.stun_urls]
        if self.has_turn_server:
            ice_servers.append({
                "urls": self.TURN_SERVER_URL,
                "username": self.TURN_USERNAME,
                "credential": self.TURN_CREDENTIAL,
            })
        return {
            "iceServers": ice_servers,
            "bundlePolicy": self.BUNDLE_POLICY,
            "rtcpMuxPolicy": self.RTCP_MUX_POLICY,
            "iceCandidatePoolSize": self.ICE_CANDIDATE_POOL_SIZE,
        }


# ============================================================
# 로컬 미디어 캡처 설정
# ============================================================

@dataclass(frozen=True)
class VideoProfile:
    """품질 단계별 캡처 해상도/프레임레이트."""

    width: int
    height: int
    frame_rate: int


QUALITY_PROFILES: Dict[str, VideoProfile] = {
    "small": VideoProfile(width=320, height=240, frame_rate=15),
    "medium": VideoProfile(width=640, height=480, frame_rate=20),
    "large": VideoProfile(width=960, height=720, frame_rate=25),
}


@dataclass(frozen=True)
class MediaConfig:
    """카메라/마이크/화면 캡처 설정."""

    # 오디오 제약 (항상 요청)
    AUDIO_SAMPLE_RATE: int = 48000
    AUDIO_CHANNEL_COUNT: int = 1
    ECHO_CANCELLATION: bool = True
    NOISE_SUPPRESSION: bool = True
    AUTO_GAIN_CONTROL: bool = True

    # 장치 이름 (비어 있으면 플랫폼 기본값)
    CAMERA_DEVICE: Optional[str] = os.getenv("CAMERA_DEVICE")
    MICROPHONE_DEVICE: Optional[str] = os.getenv("MICROPHONE_DEVICE")
    SCREEN_DEVICE: Optional[str] = os.getenv("SCREEN_DEVICE")

    # 화면 공유
    SCREEN_WIDTH: int = 1920
    SCREEN_HEIGHT: int = 1080
    SCREEN_FRAME_RATE: int = 30

    def audio_constraints(self) -> Dict[str, Any]:
        return {
            "echoCancellation": self.ECHO_CANCELLATION,
            "noiseSuppression": self.NOISE_SUPPRESSION,
            "autoGainControl": self.AUTO_GAIN_CONTROL,
            "sampleRate": self.AUDIO_SAMPLE_RATE,
            "channelCount": self.AUDIO_CHANNEL_COUNT,
        }

    def build_constraints(self, audio_only: bool = False, quality_tier: str = "medium") -> Dict[str, Any]:
        """getUserMedia 형태의 캡처 제약 조건을 생성합니다.

        Args:
            audio_only (bool): True면 비디오를 요청하지 않음
            quality_tier (str): "small" | "medium" | "large"

        Returns:
            dict: {"audio": {...}, "video": False | {...}}

        Raises:
            ValueError: 알 수 없는 품질 단계

        Examples:
            >>> media_config.build_constraints(False, "small")["video"]["width"]
            320
        """
        if quality_tier not in QUALITY_PROFILES:
            raise ValueError(f"Unknown quality tier: {quality_tier!r}")

        profile = QUALITY_PROFILES[quality_tier]
        video: Any = False
        if not audio_only:
            video = {
                "width": profile.width,
                "height": profile.height,
                "frameRate": profile.frame_rate,
                "facingMode": "user",
            }
        return {"audio": self.audio_constraints(), "video": video}

    def build_display_options(self, with_audio: bool = False) -> Dict[str, Any]:
        """getDisplayMedia 형태의 화면 캡처 옵션을 생성합니다."""
        audio: Any = False
        if with_audio:
            audio = {
                "echoCancellation": True,
                "noiseSuppression": True,
                "suppressLocalAudioPlayback": True,
            }
        return {
            "video": {
                "displaySurface": "monitor",
                "cursor": "always",
                "width": self.SCREEN_WIDTH,
                "height": self.SCREEN_HEIGHT,
                "frameRate": self.SCREEN_FRAME_RATE,
            },
            "audio": audio,
        }


# ============================================================
# 송신 인코딩 / 수신 트랙 설정
# ============================================================

@dataclass(frozen=True)
class EncodingConfig:
    """송신 비디오 인코딩 상한과 수신 트랙 처리 설정."""

    # 송신 비디오 상한
    MAX_VIDEO_BITRATE: int = 800_000
    MAX_VIDEO_FRAMERATE: int = 25
    SCALE_RESOLUTION_DOWN_BY: float = 1.0

    # 수신 비디오 트랙 힌트/프레임레이트 제한
    REMOTE_VIDEO_CONTENT_HINT: str = "motion"
    REMOTE_VIDEO_MAX_FRAMERATE: int = 25

    # 연결 품질 로그 주기 (초)
    STATS_INTERVAL: float = float(os.getenv("STATS_INTERVAL", "10"))


# ============================================================
# 싱글톤 인스턴스
# ============================================================

ice_config = ICEServerConfig()
media_config = MediaConfig()
encoding_config = EncodingConfig()


# ============================================================
# 설정 로드 확인 로그
# ============================================================

logger.info(f"[WebRTC Config] .env 경로: {_env_path} (존재: {_env_path.exists()})")
logger.info(f"[WebRTC Config] STUN 서버: {len(ice_config.stun_urls)}개")
if ice_config.has_turn_server:
    logger.info(f"[WebRTC Config] TURN URL: {ice_config.TURN_SERVER_URL}")
else:
    logger.warning("[WebRTC Config] TURN 미설정 - STUN만 사용")
logger.info(f"[WebRTC Config] 송신 비디오 상한: {encoding_config.MAX_VIDEO_BITRATE // 1000}kbps, "
            f"{encoding_config.MAX_VIDEO_FRAMERATE}fps")
