#
#  Copyright (C) 2017-2025 Dremio Corporation
#
#  Licensed under the Apache License, Version 2.0 (the "License");
#  you may not use this file except in compliance with the License.
#  You may obtain a copy of the License at
#
#      http://www.apache.org/licenses/LICENSE-2.0
#
#  Unless required by applicable law or agreed to in writing, software
#  distributed under the License is distributed on an "AS IS" BASIS,
#  WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
#  See the License for the specific language governing permissions and
#  limitations under the License.
#

"""
Global pytest fixtures for ga4ai tests.
"""
import os
from datetime import date
from pathlib import Path
from tempfile import TemporaryDirectory
from unittest.mock import patch

import pytest

from ga4ai.config import settings
from ga4ai.analytics.extractor import ParameterExtractor

from mocks.mcp_mock import FakeConnector, FakeSession

TODAY = date(2025, 6, 15)


@pytest.fixture(autouse=True)
def isolated_settings():
    """
    Give every test a fresh, file-less settings instance so nothing reads
    or writes the real ~/.config/ga4ai/config.yaml.
    """
    old = settings._settings.get()
    settings._settings.set(settings.Settings())
    try:
        yield settings.instance()
    finally:
        settings._settings.set(old)


@pytest.fixture
def temp_config_dir():
    """Create a temporary directory for config files"""
    with TemporaryDirectory() as temp_dir:
        yield Path(temp_dir)


@pytest.fixture
def mock_config_dir(temp_config_dir):
    """Mock the home directory to use our temporary directory"""
    with patch.object(Path, "home", return_value=temp_config_dir):
        # Also patch XDG_CONFIG_HOME environment variable
        old_env = os.environ.get("XDG_CONFIG_HOME")
        os.environ["XDG_CONFIG_HOME"] = str(temp_config_dir)
        yield temp_config_dir
        # Restore original environment
        if old_env:
            os.environ["XDG_CONFIG_HOME"] = old_env
        else:
            os.environ.pop("XDG_CONFIG_HOME", None)


@pytest.fixture
def mock_settings_instance():
    """Create a settings instance with test values"""
    old_settings = settings.instance()
    try:
        settings._settings.set(
            settings.Settings.model_validate(
                {
                    "analytics_server": {
                        "command": "analytics-mcp",
                        "args": [],
                        "project_id": "test-project",
                        "call_timeout": 5.0,
                    },
                    "openai": {"api_key": "test-key"},
                    "properties": {
                        "default_property_id": "111111111",
                        "aliases": {"test site": "222222222"},
                    },
                }
            )
        )
        yield settings.instance()
    finally:
        settings._settings.set(old_settings)


@pytest.fixture
def today() -> date:
    return TODAY


@pytest.fixture
def extractor() -> ParameterExtractor:
    """Rule-only extractor with a fixed clock"""
    return ParameterExtractor(clock=lambda: TODAY)


@pytest.fixture
def fake_session() -> FakeSession:
    return FakeSession(tools=["run_report", "get_account_summaries"])


@pytest.fixture
def fake_connector() -> FakeConnector:
    return FakeConnector()
