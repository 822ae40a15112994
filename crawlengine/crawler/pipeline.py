"""
Item pipeline contract and manager.
"""

import logging
from typing import Iterable, List, Optional, Sequence

from .exceptions import ItemValidationError, PipelineError
from .models import Item


class Pipeline:
    """Receives every item the crawl produces."""
    priority: int = 100

    @property
    def name(self) -> str:
        return self.__class__.__name__

    async def open(self):
        pass

    async def process_item(self, item: Item):
        raise NotImplementedError

    async def close(self):
        pass


class ValidationPipeline(Pipeline):
    """Rejects items missing any required field (absent or None)."""
    priority = 200

    def __init__(self, required_fields: Sequence[str]):
        self.required_fields = list(required_fields)

    async def process_item(self, item: Item):
        data = item.to_dict()
        for field_name in self.required_fields:
            if data.get(field_name) is None:
                raise ItemValidationError(
                    f'Required field "{field_name}" is missing or null',
                    pipeline_name=self.name
                )


class PipelineManager:
    """Runs pipelines in ascending priority order."""

    def __init__(self, pipelines: Optional[Iterable[Pipeline]] = None):
        self.logger = logging.getLogger(__name__)
        self.pipelines: List[Pipeline] = []
        for pipeline in pipelines or []:
            self.add_pipeline(pipeline)

    def add_pipeline(self, pipeline: Pipeline):
        self.pipelines.append(pipeline)
        self.pipelines.sort(key=lambda p: p.priority)

    async def open(self):
        """Open every pipeline. The first failure aborts."""
        for pipeline in self.pipelines:
            try:
                await pipeline.open()
            except Exception as e:
                raise PipelineError(
                    f"Failed to open pipeline {pipeline.name}", pipeline_name=pipeline.name, cause=e
                ) from e
            self.logger.debug(f"Opened pipeline {pipeline.name}")

    async def process_item(self, item: Item):
        """
        Pass an item through every pipeline.

        Raises:
            PipelineError: wrapping the first pipeline failure
        """
        for pipeline in self.pipelines:
            try:
                await pipeline.process_item(item)
            except PipelineError:
                raise
            except Exception as e:
                raise PipelineError(
                    f"Pipeline {pipeline.name} failed: {e}", pipeline_name=pipeline.name, cause=e
                ) from e

    async def close(self):
        """Close every pipeline, logging failures."""
        for pipeline in self.pipelines:
            try:
                await pipeline.close()
            except Exception as e:
                self.logger.error(f"Error closing pipeline {pipeline.name}: {e}")
