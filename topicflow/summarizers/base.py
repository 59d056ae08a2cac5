"""
Base content-generation collaborator interface
"""
from abc import ABC, abstractmethod

from topicflow.utils.models import GenerationResult, ItemRef, StoryRef


class BaseContentGenerator(ABC):
    """Summarization and illustration collaborator.

    Only invoked when the automation engine (or an editor approval) permits
    the stage. Both calls must report success or failure; a failure holds the
    item for manual review.
    """

    def __init__(self, config=None):
        self.config = config

    @abstractmethod
    async def simplify(self, item: ItemRef) -> GenerationResult:
        """Rewrite a candidate item into story slides"""
        pass

    @abstractmethod
    async def illustrate(self, story: StoryRef) -> GenerationResult:
        """Produce illustrations for a story"""
        pass
