"""Shared fixtures: fresh stores, counter, publisher and synthetic frames."""

import numpy as np
import pytest

from target_pipeline import PipelineMode, TargetPipeline
from telemetry import FrameCounter, ParameterStore, TelemetryPublisher

WIDTH, HEIGHT = 320, 240


@pytest.fixture
def params():
    return ParameterStore()


@pytest.fixture
def table():
    return ParameterStore()


@pytest.fixture
def counter():
    return FrameCounter()


@pytest.fixture
def publisher(params, table):
    return TelemetryPublisher(params, table)


@pytest.fixture
def make_pipeline(params, publisher, counter):
    def _make(mode=PipelineMode.DETECT, width=WIDTH, height=HEIGHT):
        return TargetPipeline(params, publisher, counter, mode, width, height)
    return _make


@pytest.fixture
def black_frame():
    return np.zeros((HEIGHT, WIDTH, 3), dtype=np.uint8)
