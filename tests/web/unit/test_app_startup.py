"""
Unit tests for application startup helpers in app.py

Tests collaborator loading, topic seeding and orchestrator construction.
"""

import pytest
from unittest.mock import MagicMock

from topicflow.utils.config import Config, SourceSeed, TopicSeed
from topicflow.web import app as app_module
from topicflow.web.config import settings
from topicflow.web.services import topic_service


class TestLoadCollaborator:
    """Tests for load_collaborator function."""

    def test_no_path_returns_none(self):
        """Test an unset collaborator path yields no collaborator."""
        assert app_module.load_collaborator(None) is None
        assert app_module.load_collaborator("") is None

    @pytest.mark.parametrize("path", ["unittest.mock:MagicMock", "unittest.mock.MagicMock"])
    def test_instantiates_named_class(self, path):
        """Test colon and dotted paths both load and instantiate the class."""
        assert isinstance(app_module.load_collaborator(path), MagicMock)

    @pytest.mark.parametrize("path", ["MagicMock", "unittest.mock:Missing", "no_such_module:Thing"])
    def test_bad_path_raises_import_error(self, path):
        """Test unknown modules and classes raise ImportError."""
        with pytest.raises(ImportError):
            app_module.load_collaborator(path)


class TestStartupWiring:
    """Tests for seeding and orchestrator construction at startup."""

    def test_seeds_configured_topics_once(self, session_factory):
        """Test configured topics are created once with their sources."""
        config = Config()
        config.topics = [TopicSeed(name="Harbor", sources=[SourceSeed(name="Harbor Herald")])]

        assert app_module.seed_configured_topics(config, session_factory) == 1
        assert app_module.seed_configured_topics(config, session_factory) == 0

        db = session_factory()
        try:
            topics = topic_service.get_active_topics(db)
            assert [t.name for t in topics] == ["Harbor"]
            assert len(topic_service.get_topic_sources(db, topics[0].id)) == 1
        finally:
            db.close()

    def test_no_seeds(self, session_factory):
        """Test a config without topics seeds nothing."""
        assert app_module.seed_configured_topics(Config(), session_factory) == 0

    def test_orchestrator_gets_configured_collaborators(self, session_factory, monkeypatch):
        """Test the orchestrator is built with the collaborators named in settings."""
        monkeypatch.setattr(settings, "aggregator_class", "unittest.mock:MagicMock")
        monkeypatch.setattr(settings, "generator_class", "unittest.mock:MagicMock")

        orchestrator = app_module.build_orchestrator(Config(), session_factory)

        assert isinstance(orchestrator.aggregator, MagicMock)
        assert isinstance(orchestrator.generator, MagicMock)

    def test_orchestrator_without_collaborators(self, session_factory, monkeypatch):
        """Test an unconfigured orchestrator has no aggregator or generator."""
        monkeypatch.setattr(settings, "aggregator_class", None)
        monkeypatch.setattr(settings, "generator_class", None)

        orchestrator = app_module.build_orchestrator(Config(), session_factory)

        assert orchestrator.aggregator is None
        assert orchestrator.generator is None
