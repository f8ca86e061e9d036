from pathlib import Path

import run


def test_load_env_reads_repo_root_file_without_override(tmp_path: Path, monkeypatch):
    env_path = tmp_path / ".env"
    env_path.write_text("DISCOVERY_API_TOKEN=from-dotenv\n", encoding="utf-8")
    calls = []

    monkeypatch.setattr(
        run,
        "_load_dotenv",
        lambda *, dotenv_path, override=False: calls.append((Path(dotenv_path), override)),
    )

    run.load_env(root_dir=tmp_path)

    assert calls == [(env_path.resolve(), False)]


def test_load_env_accepts_custom_file_name(tmp_path: Path, monkeypatch):
    (tmp_path / "staging.env").write_text("DISCOVERY_API_URL=https://staging.test/api\n", encoding="utf-8")
    calls = []
    monkeypatch.setattr(run, "_load_dotenv", lambda **kwargs: calls.append(kwargs["dotenv_path"]))

    run.load_env("staging.env", root_dir=tmp_path)

    assert calls == [(tmp_path / "staging.env").resolve()]


def test_load_env_skips_missing_file(tmp_path: Path, monkeypatch):
    def fail_load_dotenv(**kwargs):
        raise AssertionError("should not be called")

    monkeypatch.setattr(run, "_load_dotenv", fail_load_dotenv)
    run.load_env(root_dir=tmp_path)


def test_env_token_strips_blank(monkeypatch):
    monkeypatch.setenv("DISCOVERY_API_TOKEN", "   ")
    assert run._env_token() is None
    monkeypatch.setenv("DISCOVERY_API_TOKEN", " abc ")
    assert run._env_token() == "abc"
