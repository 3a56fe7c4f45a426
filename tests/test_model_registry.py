import asyncio
import pytest

from realitycheck.detectors.model_registry import ModelRegistry


class FixedRunner:
    def __init__(self, value):
        self.value = value
        self.calls = 0

    async def run(self, pixels, width, height):
        self.calls += 1
        return self.value


class GatedRunner:
    def __init__(self, value):
        self.value = value
        self.gate = asyncio.Event()

    async def run(self, pixels, width, height):
        await self.gate.wait()
        return self.value


class BrokenRunner:
    async def run(self, pixels, width, height):
        raise RuntimeError("CUDA out of memory")


@pytest.mark.asyncio
async def test_no_runner_means_no_score():
    registry = ModelRegistry()
    assert not registry.is_model_available()
    assert await registry.run_model_score(None, 64, 64) is None


@pytest.mark.asyncio
@pytest.mark.parametrize("raw, expected", [(1.5, 1.0), (-0.2, 0.0), (0.42, 0.42)])
async def test_scores_are_clamped(raw, expected):
    registry = ModelRegistry(FixedRunner(raw))
    assert await registry.run_model_score(None, 64, 64) == pytest.approx(expected)


@pytest.mark.asyncio
async def test_failing_runner_yields_none():
    registry = ModelRegistry(BrokenRunner())
    assert registry.is_model_available()
    assert await registry.run_model_score(None, 64, 64) is None


@pytest.mark.asyncio
async def test_nan_and_non_numeric_yield_none():
    assert await ModelRegistry(FixedRunner(float("nan"))).run_model_score(None, 1, 1) is None
    assert await ModelRegistry(FixedRunner("not a number")).run_model_score(None, 1, 1) is None


@pytest.mark.asyncio
async def test_replacement_does_not_affect_in_flight_call():
    old = GatedRunner(0.8)
    new = FixedRunner(0.1)
    registry = ModelRegistry(old)

    pending = asyncio.ensure_future(registry.run_model_score(None, 64, 64))
    await asyncio.sleep(0)
    registry.register_model(new)
    old.gate.set()

    assert await pending == pytest.approx(0.8)
    assert await registry.run_model_score(None, 64, 64) == pytest.approx(0.1)
    assert registry.get() is new


def test_clear_removes_runner():
    registry = ModelRegistry(FixedRunner(0.5))
    registry.clear()
    assert registry.get() is None
    assert not registry.is_model_available()


def test_softmax_and_ai_label_lookup():
    from realitycheck.detectors.transformers_runner import get_ai_label_index, softmax
    import numpy as np

    probs = softmax(np.array([[2.0, 0.0]]))
    assert probs.sum() == pytest.approx(1.0)
    assert probs[0, 0] > probs[0, 1]

    assert get_ai_label_index({0: "human", 1: "artificial"}) == 1
    assert get_ai_label_index({"0": "FAKE", "1": "real"}) == 0
    assert get_ai_label_index({0: "real", 1: "photo"}) == 0
