import os

import pytest

from codemem.security import PathContext, PathNotAllowed, is_ignored


def test_relative_path_is_normalized(tmp_path):
    (tmp_path / "pkg").mkdir()
    (tmp_path / "pkg" / "mod.py").write_text("x = 1\n")
    ctx = PathContext([str(tmp_path)])
    assert ctx.relative_path(tmp_path / "pkg" / "mod.py") == "pkg/mod.py"
    assert ctx.relative_path("pkg/./mod.py") == "pkg/mod.py"
    # Removed files keep their identity.
    assert ctx.relative_path("pkg/gone.py") == "pkg/gone.py"


def test_paths_outside_root_are_rejected(tmp_path):
    root = tmp_path / "root"
    root.mkdir()
    ctx = PathContext([str(root)])
    with pytest.raises(PathNotAllowed):
        ctx.relative_path(tmp_path / "elsewhere.py")
    with pytest.raises(PathNotAllowed):
        ctx.ensure_allowed("../elsewhere.py")
    with pytest.raises(PathNotAllowed):
        PathContext([]).root


def test_read_bytes_enforces_size(tmp_path):
    (tmp_path / "big.txt").write_bytes(b"a" * 32)
    ctx = PathContext([str(tmp_path)])
    assert ctx.read_bytes("big.txt", max_bytes=64) == b"a" * 32
    with pytest.raises(ValueError):
        ctx.read_bytes("big.txt", max_bytes=16)


@pytest.mark.skipif(os.name == "nt", reason="symlinks need privileges on Windows")
def test_symlink_escaping_root_is_rejected(tmp_path):
    root = tmp_path / "root"
    root.mkdir()
    (tmp_path / "secret.txt").write_text("data")
    os.symlink(tmp_path / "secret.txt", root / "link.txt")
    ctx = PathContext([str(root)])
    with pytest.raises(PathNotAllowed):
        ctx.read_bytes(str(root / "link.txt"), max_bytes=64)


def test_is_ignored():
    assert is_ignored("node_modules/a/b.js", ["**/node_modules/**"])
    assert is_ignored("web/node_modules/a.js", ["**/node_modules/**"])
    assert is_ignored("app.min.js", ["**/*.min.js"])
    assert not is_ignored("src/app.js", ["**/node_modules/**", "**/*.min.js"])
