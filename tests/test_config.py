import os

import pytest

pytest.importorskip("yaml")
pytest.importorskip("pydantic")

from codemem.config import DEFAULT_IGNORE_PATTERNS, CodememConfig, load_config


def test_missing_file_gives_defaults(tmp_path):
    cfg = load_config(str(tmp_path / "absent.yaml"))
    assert cfg == CodememConfig()
    assert cfg.alpha == 0.6
    assert cfg.vector_backend == "auto"


def test_load_config_normalizes(tmp_path):
    root = tmp_path / "repo"
    root.mkdir()
    path = tmp_path / "codemem.yaml"
    path.write_text(
        "\n".join(
            [
                f"db_path: {tmp_path / 'index.db'}",
                f"allowed_roots: [{root}]",
                "ignore_patterns: ['**/*.gen.py']",
                "vector_backend: FAISS",
                "alpha: 0.25",
            ]
        )
    )
    cfg = load_config(str(path))
    assert cfg.vector_backend == "faiss"
    assert cfg.alpha == 0.25
    assert cfg.allowed_roots == [os.path.realpath(root)]
    assert cfg.ignore_patterns[0] == "**/*.gen.py"
    assert set(DEFAULT_IGNORE_PATTERNS) <= set(cfg.ignore_patterns)
    assert os.path.isabs(cfg.index_dir)


@pytest.mark.parametrize(
    "body",
    [
        "alpha: 1.5",
        "top_k: 0",
        "vector_backend: annoy",
        "embedding_backend: word2vec",
        "unknown_key: 1",
        "- just a list",
    ],
)
def test_invalid_config_rejected(tmp_path, body):
    path = tmp_path / "codemem.yaml"
    path.write_text(body)
    with pytest.raises(ValueError):
        load_config(str(path))


def test_env_var_selects_path(tmp_path, monkeypatch):
    path = tmp_path / "custom.yaml"
    path.write_text("top_k: 7\n")
    monkeypatch.setenv("CODEMEM_CONFIG_PATH", str(path))
    assert load_config().top_k == 7
