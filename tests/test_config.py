"""Test the pydantic configuration models."""

import pytest
from pydantic import ValidationError

import pyclosure
from pyclosure import CONFIG, TokenAnalyzer, TreeAnalyzer
from pyclosure.schema import AppConfigModel


class TestConfig:

    def test_defaults(self):
        app = AppConfigModel()

        assert app.ANALYZER == "tree"
        assert app.SIGNING_KEY is None
        assert app.PROTOCOL == 4

    def test_invalid_analyzer(self, config):
        with pytest.raises(ValidationError):
            config.APP.ANALYZER = "regex"

    def test_analyzer_factory(self, config):
        assert isinstance(CONFIG.analyzer(), TreeAnalyzer)

        config.APP.ANALYZER = "token"

        assert isinstance(CONFIG.analyzer(), TokenAnalyzer)

    def test_version(self, load_pyproject_toml):
        assert load_pyproject_toml["project"]["version"] == pyclosure.__version__
