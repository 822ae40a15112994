"""Item pipeline tests."""

import pytest

from crawlengine.crawler.exceptions import ItemValidationError, PipelineError
from crawlengine.crawler.models import GenericItem
from crawlengine.crawler.pipeline import Pipeline, PipelineManager, ValidationPipeline


class RecordingPipeline(Pipeline):
    def __init__(self, name, priority, log, fail_on=None):
        self._name = name
        self.priority = priority
        self.log = log
        self.fail_on = fail_on

    @property
    def name(self):
        return self._name

    async def open(self):
        self.log.append(f"open:{self._name}")

    async def process_item(self, item):
        if self.fail_on == "process":
            raise RuntimeError("storage down")
        self.log.append(f"item:{self._name}")

    async def close(self):
        if self.fail_on == "close":
            raise RuntimeError("close failed")
        self.log.append(f"close:{self._name}")


class BrokenOpenPipeline(Pipeline):
    async def open(self):
        raise RuntimeError("cannot connect")


@pytest.mark.asyncio
async def test_pipelines_run_in_priority_order():
    log = []
    manager = PipelineManager([RecordingPipeline("b", 300, log), RecordingPipeline("a", 100, log)])

    await manager.open()
    await manager.process_item(GenericItem(x=1))
    await manager.close()

    assert log == ["open:a", "open:b", "item:a", "item:b", "close:a", "close:b"]


@pytest.mark.asyncio
async def test_failure_is_wrapped_and_stops_chain():
    log = []
    manager = PipelineManager([RecordingPipeline("bad", 1, log, fail_on="process"), RecordingPipeline("ok", 2, log)])

    with pytest.raises(PipelineError) as exc_info:
        await manager.process_item(GenericItem(x=1))

    assert exc_info.value.pipeline_name == "bad"
    assert isinstance(exc_info.value.cause, RuntimeError)
    assert log == []


@pytest.mark.asyncio
async def test_open_failure_raises_pipeline_error():
    manager = PipelineManager([BrokenOpenPipeline()])

    with pytest.raises(PipelineError) as exc_info:
        await manager.open()

    assert exc_info.value.pipeline_name == "BrokenOpenPipeline"


@pytest.mark.asyncio
async def test_close_failure_is_logged_not_raised():
    log = []
    manager = PipelineManager([RecordingPipeline("bad", 1, log, fail_on="close"), RecordingPipeline("ok", 2, log)])

    await manager.close()

    assert log == ["close:ok"]


@pytest.mark.asyncio
async def test_validation_pipeline():
    pipeline = ValidationPipeline(["title", "url"])

    await pipeline.process_item(GenericItem(title="a", url="https://example.com/"))

    with pytest.raises(ItemValidationError):
        await pipeline.process_item(GenericItem(title="a"))
    with pytest.raises(ItemValidationError):
        await pipeline.process_item(GenericItem(title=None, url="https://example.com/"))


@pytest.mark.asyncio
async def test_validation_error_passes_through_manager_unwrapped():
    manager = PipelineManager([ValidationPipeline(["title"])])

    with pytest.raises(ItemValidationError):
        await manager.process_item(GenericItem(url="https://example.com/"))
