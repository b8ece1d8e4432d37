from unittest.mock import MagicMock

import pytest
from hypothesis import given, strategies as st

import range_streaming
from errors import BackendError, NotFound, RangeNotSatisfiable
from range_streaming import (
    ByteRange,
    ByteStream,
    RangeParseError,
    ResolvedFile,
    build_stream_response,
    content_disposition,
    parse_range_header,
    resolve_request_range,
    validate_bounds,
)

SIZE = 4096
DATA = bytes(i % 251 for i in range(SIZE))


@pytest.fixture(scope="module")
def media_file(tmp_path_factory):
    path = tmp_path_factory.mktemp("media") / "clip.webm"
    path.write_bytes(DATA)
    return ResolvedFile(path=str(path), size=SIZE, mime_type="video/webm", name="clip.webm")


class TestParseRangeHeader:
    def test_no_header(self):
        assert parse_range_header(None, 100) is None
        assert parse_range_header("   ", 100) is None

    def test_closed_range(self):
        assert parse_range_header("bytes=500-699", 1000) == ByteRange(500, 699)

    def test_open_ended(self):
        assert parse_range_header("bytes=10-", 100) == ByteRange(10, 99)

    def test_suffix(self):
        assert parse_range_header("bytes=-10", 100) == ByteRange(90, 99)

    def test_suffix_clamped_to_file(self):
        assert parse_range_header("bytes=-500", 100) == ByteRange(0, 99)

    def test_whitespace_and_case(self):
        assert parse_range_header("  Bytes = 1 - 2 ", 100) == ByteRange(1, 2)

    @pytest.mark.parametrize("value", ["bytes=1-2,4-5", "lines=1-2", "bytes=-", "bytes", "garbage", "bytes=a-b"])
    def test_unsupported(self, value):
        with pytest.raises(RangeParseError):
            parse_range_header(value, 100)

    @pytest.mark.parametrize("value", ["bytes=50-10", "bytes=100-", "bytes=0-100", "bytes=-0"])
    def test_unsatisfiable(self, value):
        with pytest.raises(RangeNotSatisfiable) as exc:
            parse_range_header(value, 100)
        assert exc.value.size == 100
        assert exc.value.status_code == 416

    def test_empty_file_rejects_every_range(self):
        for value in ("bytes=0-", "bytes=0-0", "bytes=-1"):
            with pytest.raises(RangeNotSatisfiable):
                parse_range_header(value, 0)

    def test_resolve_request_range_ignores_unsupported(self):
        assert resolve_request_range("bytes=0-1,5-6", 100) is None
        assert resolve_request_range("bytes=0-1", 100) == ByteRange(0, 1)


def test_validate_bounds():
    assert validate_bounds(0, 0, 1).length == 1
    with pytest.raises(RangeNotSatisfiable):
        validate_bounds(-1, 5, 10)
    with pytest.raises(RangeNotSatisfiable):
        validate_bounds(5, 10, 10)


@given(st.integers(min_value=1, max_value=10_000), st.data())
def test_valid_ranges_stay_inside_file(size, data):
    start = data.draw(st.integers(min_value=0, max_value=size - 1))
    end = data.draw(st.integers(min_value=start, max_value=size - 1))
    r = parse_range_header(f"bytes={start}-{end}", size)
    assert r == ByteRange(start, end)
    assert r.length == end - start + 1
    assert 0 <= r.start <= r.end < size


@given(st.integers(min_value=0, max_value=10_000), st.integers(min_value=0, max_value=20_000),
       st.integers(min_value=0, max_value=20_000))
def test_parse_never_returns_out_of_bounds(size, start, end):
    try:
        r = parse_range_header(f"bytes={start}-{end}", size)
    except RangeNotSatisfiable:
        assert start > end or end >= size
    else:
        assert 0 <= r.start <= r.end < size


@given(st.text(max_size=40))
def test_resolve_request_range_never_crashes(value):
    try:
        r = resolve_request_range(value, 1000)
    except RangeNotSatisfiable:
        return
    if r is not None:
        assert 0 <= r.start <= r.end < 1000


@given(st.data())
def test_ranged_body_matches_file_slice(media_file, data):
    start = data.draw(st.integers(min_value=0, max_value=SIZE - 1))
    end = data.draw(st.integers(min_value=start, max_value=SIZE - 1))
    res = build_stream_response(media_file, f"bytes={start}-{end}")
    body = b"".join(res.response)
    assert res.status_code == 206
    assert res.headers["Content-Range"] == f"bytes {start}-{end}/{SIZE}"
    assert int(res.headers["Content-Length"]) == len(body) == end - start + 1
    assert body == DATA[start:end + 1]


def test_full_response_headers(media_file):
    res = build_stream_response(media_file, None)
    assert res.status_code == 200
    assert res.mimetype == "video/webm"
    assert res.headers["Accept-Ranges"] == "bytes"
    assert res.headers["Content-Length"] == str(SIZE)
    assert "Content-Range" not in res.headers
    assert "Content-Disposition" not in res.headers
    assert b"".join(res.response) == DATA


def test_stream_reads_in_chunks(media_file):
    stream = ByteStream(media_file.path, 100, 300, chunk_size=128)
    chunks = list(stream)
    assert [len(c) for c in chunks] == [128, 128, 44]
    assert b"".join(chunks) == DATA[100:400]


def test_stream_stops_on_read_error(media_file, caplog):
    stream = ByteStream(media_file.path, 0, 1000, chunk_size=100)
    fh = stream._fh
    fh_mock = MagicMock(wraps=fh)
    fh_mock.read.side_effect = [DATA[:100], OSError("disk gone")]
    stream._fh = fh_mock
    chunks = list(stream)
    assert chunks == [DATA[:100]]
    assert stream._fh is None
    assert "Read failed" in caplog.text
    fh.close()


def test_stream_stops_when_file_is_short(tmp_path):
    path = tmp_path / "short.bin"
    path.write_bytes(b"abc")
    assert b"".join(ByteStream(str(path), 0, 10)) == b"abc"


def test_stream_close_is_idempotent(media_file):
    stream = ByteStream(media_file.path, 0, 10)
    stream.close()
    stream.close()
    assert list(stream) == []


def test_open_missing_file(tmp_path):
    resolved = ResolvedFile(path=str(tmp_path / "nope.mp4"), size=10, mime_type="video/mp4", name="nope.mp4")
    with pytest.raises(NotFound) as exc:
        resolved.open()
    assert exc.value.message == "File not found"


def test_open_unreadable_file(tmp_path):
    resolved = ResolvedFile(path=str(tmp_path), size=10, mime_type="video/mp4", name="dir")
    with pytest.raises((BackendError, NotFound)):
        resolved.open(ByteRange(0, 1))


def test_content_disposition_quotes_unicode():
    value = content_disposition("Amélie (2001).mkv")
    assert value.startswith('attachment; filename="')
    assert "filename*=UTF-8''Am%C3%A9lie%20%282001%29.mkv" in value


def test_content_disposition_falls_back_for_unsafe_names():
    assert 'filename="download"' in content_disposition("..")


def test_chunk_size_is_bounded():
    assert 0 < range_streaming.CHUNK_SIZE <= 1024 * 1024
