import pytest

from holepunch.framing import FrameDecoder, MAGIC, encode_frame


def test_encode_frame_wire_bytes():
    assert encode_frame(b"abc") == b"\x00\x12\x34\x56\x00\x03abc"


def test_magic_prefixes_every_frame():
    frame = encode_frame(b"")
    assert frame[:4] == MAGIC.to_bytes(4, "big")
    assert frame == b"\x00\x12\x34\x56\x00\x00"


def test_round_trip_several_frames():
    packets = [b"first", b"", b"x" * 1500, bytes(range(256))]
    stream = b"".join(encode_frame(p) for p in packets)
    decoder = FrameDecoder()
    assert decoder.feed(stream) == packets
    assert decoder.pending == 0


def test_partial_frames_are_kept_across_feeds():
    frame = encode_frame(b"hello world")
    decoder = FrameDecoder()
    out = []
    for byte in frame:
        out.extend(decoder.feed(bytes([byte])))
    assert out == [b"hello world"]


def test_split_header_waits():
    frame = encode_frame(b"payload")
    decoder = FrameDecoder()
    assert decoder.feed(frame[:3]) == []
    assert decoder.pending == 3
    assert decoder.feed(frame[3:]) == [b"payload"]


def test_bad_magic_drops_buffer():
    decoder = FrameDecoder()
    assert decoder.feed(b"\xff\xff\xff\xff\x00\x01z") == []
    assert decoder.pending == 0
    assert decoder.feed(encode_frame(b"ok")) == [b"ok"]


def test_oversized_payload_rejected():
    with pytest.raises(ValueError):
        encode_frame(b"\x00" * 0x10000)


def test_maximum_payload_round_trip():
    payload = b"\x01" * 0xFFFF
    assert FrameDecoder().feed(encode_frame(payload)) == [payload]