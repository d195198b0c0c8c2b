from __future__ import annotations

from shelfscale.frames import AmplitudeFrame, FrameParser


def test_decode_amplitude_list() -> None:
    parser = FrameParser()
    frame = parser.decode(">1,2,3<END>")
    assert isinstance(frame, AmplitudeFrame)
    assert frame.values == [1.0, 2.0, 3.0]
    assert parser.stats() == {"frames": 1, "decode_errors": 0}


def test_decode_ignores_noise_around_payload() -> None:
    parser = FrameParser()
    frame = parser.decode("boot ok >512.5, -3 ,7e2<END>\r")
    assert frame.values == [512.5, -3.0, 700.0]


def test_decode_garbage_is_empty() -> None:
    parser = FrameParser()
    frame = parser.decode("garbage")
    assert not frame
    assert len(frame) == 0
    assert parser.stats()["decode_errors"] == 1


def test_decode_rejects_non_numeric_and_empty_payloads() -> None:
    parser = FrameParser()
    assert parser.decode(">1,abc,3<END>").values == []
    assert parser.decode("><END>").values == []
    assert parser.decode(">1,nan,3<END>").values == []
    assert parser.decode(">1,2,3").values == []
    stats = parser.stats()
    assert stats["decode_errors"] == 4
    assert stats["frames"] == 0


def test_custom_markers() -> None:
    parser = FrameParser(start_marker="[", end_token="]")
    assert parser.decode("[10,20]").values == [10.0, 20.0]
    assert parser.decode(">10,20<END>").values == []


def test_decode_fractional_and_negative_values() -> None:
    assert FrameParser().decode(">110,80.5,-2<END>").values == [110.0, 80.5, -2.0]
