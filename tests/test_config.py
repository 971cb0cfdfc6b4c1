from galexport.core.config import REPO_ROOT, Settings


def test_empty_optional_env_is_ignored(monkeypatch) -> None:
    monkeypatch.setenv("GALEX_RELAY_BASE_URL", "")
    settings = Settings(_env_file=None)
    assert settings.relay_base_url is None


def test_repo_root_and_default_outputs_path() -> None:
    settings = Settings(_env_file=None)
    assert (REPO_ROOT / "pyproject.toml").exists()
    assert settings.outputs_path == REPO_ROOT / "outputs"
    assert settings.api_port == 8795
    assert settings.max_concurrent_fetches == 4
    assert settings.zip_compress_level == 6


def test_env_overrides(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("GALEX_OUTPUTS_DIR", str(tmp_path / "exports"))
    monkeypatch.setenv("GALEX_MAX_CONCURRENT_FETCHES", "2")
    settings = Settings(_env_file=None)
    assert settings.outputs_path == tmp_path / "exports"
    assert settings.max_concurrent_fetches == 2


def test_gallery_referer() -> None:
    settings = Settings(_env_file=None, GALEX_REFERER_BASE_URL="https://reader.example.test/")
    assert settings.gallery_referer("123") == "https://reader.example.test/reader/123.html"
    assert settings.gallery_referer(None) == "https://reader.example.test/"
