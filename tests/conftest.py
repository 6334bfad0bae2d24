import pytest

_SESSION_VARS = (
    "BREVITA_USER_ID",
    "BREVITA_ACCESS_TOKEN",
    "SUPABASE_URL",
    "SUPABASE_ANON_KEY",
    "BRIEFING_PROXY_URL",
)


@pytest.fixture(autouse=True)
def isolated_history(tmp_path, monkeypatch):
    """Keep every test on a private local history with no remote session."""
    for name in _SESSION_VARS:
        monkeypatch.delenv(name, raising=False)
    history_dir = tmp_path / "history"
    monkeypatch.setenv("HISTORY_DATA_DIR", str(history_dir))
    return history_dir
