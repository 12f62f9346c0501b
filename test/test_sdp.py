"""SDP / candidate 변환 테스트.

사용법:
    pytest test/test_sdp.py
"""

import pytest
from aiortc.sdp import candidate_from_sdp

from meshcore.webrtc.sdp import candidate_from_dict, candidate_to_dict, count_candidates, limit_video_bandwidth

from conftest import HOST_CANDIDATE, SAMPLE_SDP


def test_bandwidth_limit_lands_after_connection_line():
    sdp = limit_video_bandwidth(SAMPLE_SDP, 800_000)
    video_lines = sdp.split("m=video")[1].split("\r\n")

    c_index = video_lines.index("c=IN IP4 0.0.0.0")
    assert video_lines[c_index + 1] == "b=AS:800"
    assert video_lines[c_index + 2] == "b=TIAS:800000"
    assert "b=" not in sdp.split("m=video")[0]
    assert sdp.endswith("\r\n")


def test_bandwidth_limit_replaces_existing_lines():
    sdp = SAMPLE_SDP.replace("m=video 9 UDP/TLS/RTP/SAVPF 96\r\nc=IN IP4 0.0.0.0\r\n",
                             "m=video 9 UDP/TLS/RTP/SAVPF 96\r\nc=IN IP4 0.0.0.0\r\nb=AS:2000\r\n")

    limited = limit_video_bandwidth(sdp, 500_000)

    assert "b=AS:2000" not in limited
    assert limited.count("b=AS:500") == 1


def test_bandwidth_limit_without_connection_line():
    sdp = "v=0\r\nm=video 9 UDP/TLS/RTP/SAVPF 96\r\na=mid:0\r\n"

    lines = limit_video_bandwidth(sdp, 300_000).split("\r\n")

    assert lines[1] == "m=video 9 UDP/TLS/RTP/SAVPF 96"
    assert lines[2] == "b=AS:300"


def test_count_candidates():
    assert count_candidates(SAMPLE_SDP) == 2
    assert count_candidates("v=0\r\n") == 0


def test_candidate_dict_conversion():
    candidate = candidate_from_dict(HOST_CANDIDATE)

    assert candidate.type == "srflx"
    assert candidate.protocol == "udp"
    assert candidate.relatedAddress == "0.0.0.0"
    assert candidate_to_dict(candidate) == HOST_CANDIDATE


def test_candidate_accepts_nested_init_and_bare_string():
    nested = candidate_from_dict({"candidate": HOST_CANDIDATE})
    bare = candidate_from_dict({**HOST_CANDIDATE, "candidate": HOST_CANDIDATE["candidate"][len("candidate:"):]})

    assert nested.ip == bare.ip == "203.0.113.7"
    assert nested.sdpMid == "0"


def test_empty_candidate_means_end_of_candidates():
    assert candidate_from_dict({"candidate": ""}) is None
    assert candidate_from_dict({}) is None


def test_invalid_candidate_raises_value_error():
    with pytest.raises(ValueError):
        candidate_from_dict({"candidate": "candidate:1 1 udp"})


def test_candidate_to_dict_keeps_sdp_fields():
    candidate = candidate_from_sdp("1 1 udp 2130706431 192.168.1.10 50000 typ host")
    candidate.sdpMid = "1"
    candidate.sdpMLineIndex = 1

    assert candidate_to_dict(candidate) == {
        "candidate": "candidate:1 1 udp 2130706431 192.168.1.10 50000 typ host",
        "sdpMid": "1",
        "sdpMLineIndex": 1,
    }
