"""
Pytest configuration for web unit tests.

Provides shared fixtures: an in-memory database, fake ingestion and
generation collaborators, and a seeded topic.
"""

import os

# Keep the app lifespan from starting background work during tests
os.environ["TESTING"] = "true"

import pytest

from topicflow.aggregators.base import BaseAggregator
from topicflow.summarizers.base import BaseContentGenerator
from topicflow.utils.models import AttemptOutcome, FetchedContent, FetchResult, GenerationResult
from topicflow.web.database import create_test_session_factory
from topicflow.web.services import topic_service


class FakeAggregator(BaseAggregator):
    """Returns scripted results per source id; unknown sources return nothing."""

    def __init__(self):
        super().__init__()
        self.results = {}
        self.errors = {}
        self.calls = []

    def succeed(self, source_id, *texts):
        self.errors.pop(source_id, None)
        self.results[source_id] = FetchResult(
            outcome=AttemptOutcome.SUCCESS,
            items=[FetchedContent(title=t[:40], content=t) for t in texts],
            response_time_ms=25,
        )

    def fail(self, source_id, error="timeout"):
        self.results[source_id] = FetchResult(outcome=AttemptOutcome.FAILURE, error=error)

    def raise_error(self, source_id, exc):
        self.errors[source_id] = exc

    async def fetch(self, source):
        self.calls.append(source.id)
        if source.id in self.errors:
            raise self.errors[source.id]
        return self.results.get(
            source.id, FetchResult(outcome=AttemptOutcome.SUCCESS, response_time_ms=10)
        )


class FakeGenerator(BaseContentGenerator):
    """Succeeds with two slides unless told to fail a stage."""

    def __init__(self):
        super().__init__()
        self.fail_simplify = False
        self.fail_illustrate = False
        self.simplified = []
        self.illustrated = []

    async def simplify(self, item):
        self.simplified.append(item.id)
        if self.fail_simplify:
            return GenerationResult(success=False, error="model unavailable")
        return GenerationResult(success=True, slides=[f"{item.title} (1)", f"{item.title} (2)"])

    async def illustrate(self, story):
        self.illustrated.append(story.id)
        if self.fail_illustrate:
            return GenerationResult(success=False, error="image service down")
        return GenerationResult(success=True)


@pytest.fixture
def session_factory():
    """Session factory bound to a fresh in-memory database."""
    factory = create_test_session_factory()
    yield factory
    factory.kw["bind"].dispose()


@pytest.fixture
def db(session_factory):
    """Provide test database session."""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def aggregator():
    return FakeAggregator()


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def topic(db):
    """Topic with three sources, in manual mode."""
    topic = topic_service.create_topic(db, name="Riverside", negative_keywords=["sponsored"])
    for name in ("Riverside Gazette", "Riverside Radio", "County Wire"):
        topic_service.add_source(db, topic.id, name, f"https://example.org/{name.split()[-1].lower()}")
    return topic


@pytest.fixture
def topic_id(topic):
    return topic.id


@pytest.fixture
def source_ids(db, topic_id):
    return [s.id for s in topic_service.get_topic_sources(db, topic_id)]
