"""Shared fixtures: scripted extractors and a controllable clock."""

import pytest

from extractors.types import BaseExtractor, ExtractorResult, SourceBundle, VideoVariant


class ScriptedExtractor(BaseExtractor):
    def __init__(self, name, priority, result=None, providers=("hianime",), handles=True, raises=None, calls=None):
        self.name = name
        self.priority = priority
        self.providers = providers
        self._result = result
        self._handles = handles
        self._raises = raises
        self.calls = calls if calls is not None else []

    def can_handle(self, context):
        return self._handles

    async def extract(self, context):
        self.calls.append(self.name)
        if self._raises is not None:
            raise self._raises
        return self._result


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def ok_result(url="https://cdn.example/x.m3u8"):
    return ExtractorResult.ok(SourceBundle(sources=[VideoVariant(url=url, is_m3u8=True)]))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def calls():
    return []
