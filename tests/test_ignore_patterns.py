from codemem.security import PathContext


def test_ignore_patterns(tmp_path):
    root = tmp_path / "root"
    root.mkdir()
    (root / "keep.txt").write_text("ok")
    (root / "ignore.log").write_text("no")
    (root / "build").mkdir()
    (root / "build" / "out.txt").write_text("no")
    path_context = PathContext([str(root)])
    files = list(path_context.iter_files(str(root), ["**/*.log", "**/build/**"]))
    names = {p.name for p in files}
    assert "keep.txt" in names
    assert "ignore.log" not in names
    assert "out.txt" not in names
