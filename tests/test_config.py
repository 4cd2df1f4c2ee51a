"""Tests for environment-driven configuration."""

import os
from pathlib import Path
from unittest.mock import patch

import pytest

from chatery.config import Settings, get_sessions_path, get_transport_path
from chatery.transport import load_transport_factory


class TestConfig:

    def test_defaults(self):
        with patch.dict(os.environ, {}, clear=True):
            settings = Settings.from_env()
            assert settings == Settings()
            assert settings.reconnect_delay == 5.0
            assert settings.snapshot_interval == 30.0
            assert settings.backfill_limit == 20
            assert get_sessions_path() == Path.cwd() / "sessions"
            assert get_transport_path() is None

    def test_overrides(self, tmp_path):
        env = {
            "CHATERY_SESSIONS_PATH": str(tmp_path),
            "CHATERY_TRANSPORT": "mypkg.wa:build",
            "CHATERY_RECONNECT_DELAY": "1.5",
            "CHATERY_BACKFILL_LIMIT": "5",
            "CHATERY_COUNTRY_CODE": "61",
        }
        with patch.dict(os.environ, env, clear=True):
            settings = Settings.from_env()
            assert settings.reconnect_delay == 1.5
            assert settings.backfill_limit == 5
            assert settings.country_code == "61"
            assert get_sessions_path() == tmp_path
            assert get_transport_path() == "mypkg.wa:build"


class TestTransportFactoryLoading:

    def test_resolves_callable(self):
        factory = load_transport_factory("conftest:FakeTransportFactory")
        assert callable(factory)

    @pytest.mark.parametrize("path", ["conftest", ":x", "conftest:", "conftest:missing_attr", "conftest:OWN_JID"])
    def test_rejects_bad_paths(self, path):
        with pytest.raises(ValueError):
            load_transport_factory(path)

    def test_missing_module(self):
        with pytest.raises(ImportError):
            load_transport_factory("no_such_module_here:factory")
