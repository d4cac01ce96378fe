# tests/conftest.py
import asyncio
import os
import sys

import pytest

# Ensure repository root is on PYTHONPATH for tests
repo_root = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
if repo_root not in sys.path:
    sys.path.insert(0, repo_root)

# Ensure placeholder secrets and quiet file logging during tests
os.environ.setdefault("OPENAI_API_KEY", "test-key")
os.environ.setdefault("LOG_FILE", "")

import core.model_client as model_client_module  # noqa: E402


@pytest.fixture(autouse=True)
def _offline_tokenizer(monkeypatch):
    """Use the character heuristic so tests never fetch tokenizer files."""
    monkeypatch.setattr(model_client_module, "_get_tokenizer", lambda _name: None)


class FakeClock:
    """Manually advanced clock whose ``sleep`` records and skips waits."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


class ScriptedProvider:
    """Model provider replaying a fixed list of texts and exceptions."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls: list[dict] = []

    async def generate(self, prompt, context, *, model_name=None, temperature=None):
        self.calls.append(
            {
                "prompt": prompt,
                "context": tuple(context),
                "model_name": model_name,
                "temperature": temperature,
            }
        )
        if not self.responses:
            raise AssertionError("ScriptedProvider ran out of responses")
        item = self.responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def scripted_provider():
    return ScriptedProvider
