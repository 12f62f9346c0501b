"""SDP / ICE candidate 변환 유틸리티."""

from typing import Any, Dict, List, Optional

from aiortc import RTCIceCandidate
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp


def _split_sections(sdp: str) -> List[List[str]]:
    # sections[0] is the session part, the rest start with an m= line
    sections: List[List[str]] = [[]]
    for line in sdp.splitlines():
        if not line:
            continue
        if line.startswith("m="):
            sections.append([])
        sections[-1].append(line)
    return sections


def limit_video_bandwidth(sdp: str, max_bitrate: int) -> str:
    """비디오 m-섹션에 대역폭 상한(b=AS, b=TIAS)을 기록합니다.

    기존 b= 라인은 교체됩니다. RFC 4566 순서에 따라 c= 라인 뒤에,
    c= 라인이 없으면 m=/i= 라인 뒤에 삽입합니다.

    Args:
        sdp (str): 원본 SDP
        max_bitrate (int): 상한 (bps)

    Returns:
        str: CRLF로 끝나는 수정된 SDP

    Examples:
        >>> "b=AS:800" in limit_video_bandwidth(offer_sdp, 800_000)
        True
    """
    out: List[str] = []
    for section in _split_sections(sdp):
        if not section or not section[0].startswith("m=video"):
            out.extend(section)
            continue

        lines = [line for line in section if not line.startswith("b=")]
        insert_at = 1
        for index, line in enumerate(lines):
            if line.startswith("c="):
                insert_at = index + 1
                break
            if line.startswith("i="):
                insert_at = index + 1
        lines[insert_at:insert_at] = [
            f"b=AS:{max_bitrate // 1000}",
            f"b=TIAS:{max_bitrate}",
        ]
        out.extend(lines)
    return "\r\n".join(out) + "\r\n"


def count_candidates(sdp: str) -> int:
    """SDP에 포함된 candidate 라인 수."""
    return sdp.count("a=candidate:")


def candidate_to_dict(candidate: RTCIceCandidate) -> Dict[str, Any]:
    """aiortc candidate를 브라우저 RTCIceCandidateInit 형태로 변환합니다."""
    return {
        "candidate": "candidate:" + candidate_to_sdp(candidate),
        "sdpMid": candidate.sdpMid,
        "sdpMLineIndex": candidate.sdpMLineIndex,
    }


def candidate_from_dict(data: Dict[str, Any]) -> Optional[RTCIceCandidate]:
    """RTCIceCandidateInit 딕셔너리를 aiortc candidate로 변환합니다.

    candidate 문자열이 비어 있으면 (end-of-candidates) None을 반환합니다.
    중첩된 {"candidate": {...}} 형태도 허용합니다.

    Raises:
        ValueError: candidate 문자열을 해석할 수 없음
    """
    inner = data.get("candidate")
    if isinstance(inner, dict):
        data = inner
        inner = data.get("candidate")

    candidate_str = (inner or "").strip()
    if candidate_str.startswith("candidate:"):
        candidate_str = candidate_str[len("candidate:"):]
    if not candidate_str:
        return None

    try:
        candidate = candidate_from_sdp(candidate_str)
    except (AssertionError, IndexError, ValueError) as e:
        raise ValueError(f"Invalid ICE candidate: {candidate_str!r}") from e

    candidate.sdpMid = data.get("sdpMid")
    candidate.sdpMLineIndex = data.get("sdpMLineIndex")
    return candidate
