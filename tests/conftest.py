from __future__ import annotations

import os

import pytest

from edgeimg.common.settings import ImageProxySettings
from tests.utils.fakes import CountingCache, OriginRecorder


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in list(os.environ):
        if name.startswith("EDGEIMG_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture
def settings() -> ImageProxySettings:
    return ImageProxySettings()


@pytest.fixture
def dimension_settings() -> ImageProxySettings:
    return ImageProxySettings(transform_policy="dimensions")


@pytest.fixture
def origin() -> OriginRecorder:
    return OriginRecorder()


@pytest.fixture
def cache() -> CountingCache:
    return CountingCache()
