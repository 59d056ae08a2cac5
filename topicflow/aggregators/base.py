"""
Base ingestion collaborator interface
"""
from abc import ABC, abstractmethod

from topicflow.utils.models import FetchResult, SourceRef


class BaseAggregator(ABC):
    """Base class for content ingestion collaborators.

    Implementations fetch one source per call and report failures as a
    ``FetchResult`` with ``AttemptOutcome.FAILURE`` rather than raising, so
    the health tracker can count them. Exceptions that do escape are treated
    as failures by the orchestrator.
    """

    def __init__(self, config=None):
        self.config = config

    @abstractmethod
    async def fetch(self, source: SourceRef) -> FetchResult:
        """Poll one source and return its new content"""
        pass
