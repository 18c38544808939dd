import pytest


@pytest.fixture(autouse=True)
def test_set_env(monkeypatch):
    monkeypatch.setenv("FACEBOOK_ACCESS_TOKEN", "test-token")
    monkeypatch.delenv("FACEBOOK_APP_SECRET", raising=False)
