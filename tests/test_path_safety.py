import os

import pytest
from hypothesis import given, strategies as st

from errors import PathViolation
from path_safety import is_contained, resolve_safe_path


def test_resolves_nested_path(tmp_path):
    result = resolve_safe_path(str(tmp_path), "Movie/Extras/clip.mkv")
    assert result == os.path.join(str(tmp_path), "Movie", "Extras", "clip.mkv")


def test_backslash_is_a_separator(tmp_path):
    result = resolve_safe_path(str(tmp_path), "Movie\\clip.mkv")
    assert result == os.path.join(str(tmp_path), "Movie", "clip.mkv")


def test_inner_dotdot_that_stays_inside(tmp_path):
    result = resolve_safe_path(str(tmp_path), "Movie/../Other/./a.mp4")
    assert result == os.path.join(str(tmp_path), "Other", "a.mp4")


def test_relative_download_dir_is_made_absolute(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    assert resolve_safe_path("downloads", "a.mp4") == os.path.join(str(tmp_path), "downloads", "a.mp4")


@pytest.mark.parametrize("rel", [
    "../../etc/passwd",
    "..\\..\\Windows\\system.ini",
    "Movie/../../outside.txt",
    "a/b/../../../x",
    "..",
])
def test_rejects_traversal(tmp_path, rel):
    with pytest.raises(PathViolation) as exc:
        resolve_safe_path(str(tmp_path / "downloads"), rel)
    assert exc.value.status_code == 400


@pytest.mark.parametrize("rel", [
    "/etc/passwd",
    "\\Windows\\system.ini",
    "C:\\Windows\\system.ini",
    "c:relative.txt",
    "//server/share/file",
])
def test_rejects_absolute(tmp_path, rel):
    with pytest.raises(PathViolation):
        resolve_safe_path(str(tmp_path), rel)


@pytest.mark.parametrize("rel", ["", ".", "./", "a/..", "bad\x00name"])
def test_rejects_empty_or_directory_itself(tmp_path, rel):
    with pytest.raises(PathViolation):
        resolve_safe_path(str(tmp_path), rel)


def test_rejects_missing_download_dir():
    with pytest.raises(PathViolation):
        resolve_safe_path("", "a.mp4")


def test_sibling_with_common_prefix_is_not_contained(tmp_path):
    base = tmp_path / "downloads"
    assert not is_contained(str(base), str(tmp_path / "downloads-other" / "a"))
    assert is_contained(str(base), str(base / "a"))


def test_violation_is_logged(tmp_path, caplog):
    with pytest.raises(PathViolation):
        resolve_safe_path(str(tmp_path), "../x")
    assert "Blocked file path" in caplog.text


_segment = st.sampled_from(["..", ".", "a", "b", "movie.mkv", "Season 1"])


@given(st.lists(_segment, min_size=1, max_size=8), st.sampled_from(["/", "\\"]))
def test_result_never_leaves_download_dir(segments, sep):
    base = os.path.abspath(os.path.join(os.sep, "srv", "downloads"))
    rel = sep.join(segments)
    try:
        result = resolve_safe_path(base, rel)
    except PathViolation:
        # Rejected exactly when the segments climb above the root or name the root itself.
        depth = 0
        escaped = False
        for seg in segments:
            if seg == "..":
                depth -= 1
                escaped = escaped or depth < 0
            elif seg != ".":
                depth += 1
        assert escaped or depth == 0
        return
    assert result != base
    assert is_contained(base, result)
