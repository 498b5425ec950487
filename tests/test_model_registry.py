from __future__ import annotations

import asyncio

import httpx
import pytest

from llm_key_proxy.runtime.model_registry import BackendTarget, ModelRegistry

BACKEND_A = BackendTarget(name="a", base_url="http://a.test", path_prefix="/v1")
BACKEND_B = BackendTarget(
    name="b", base_url="http://b.test", path_prefix="/openai/v1", api_key="b-key"
)


def _models(*model_ids: str) -> httpx.Response:
    return httpx.Response(
        200, json={"object": "list", "data": [{"id": item} for item in model_ids]}
    )


def _registry(handler, backends: list[BackendTarget] | None = None) -> ModelRegistry:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ModelRegistry(
        backends=[BACKEND_A, BACKEND_B] if backends is None else backends,
        client=client,
    )


def test_refresh_maps_models_to_their_backends() -> None:
    seen: list[tuple[str, str | None]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((str(request.url), request.headers.get("authorization")))
        if request.url.host == "a.test":
            return _models("model-a", "shared")
        return _models("model-b")

    registry = _registry(handler)
    count = asyncio.run(registry.refresh())

    assert count == 3
    assert registry.resolve("model-a") == BACKEND_A
    assert registry.resolve("model-b") == BACKEND_B
    assert sorted(seen) == [
        ("http://a.test/v1/models", None),
        ("http://b.test/openai/v1/models", "Bearer b-key"),
    ]
    assert registry.status.last_errors == {}
    assert registry.status.last_model_count == 3


def test_last_backend_wins_on_model_id_collision() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return _models("shared")

    registry = _registry(handler)
    asyncio.run(registry.refresh())

    assert registry.resolve("shared") == BACKEND_B
    assert [entry.target for entry in registry.snapshot()] == [BACKEND_B]


def test_unknown_model_falls_back_to_first_backend() -> None:
    registry = _registry(lambda _request: _models("model-a"))
    asyncio.run(registry.refresh())

    assert registry.resolve("not-served-anywhere") == BACKEND_A
    assert registry.resolve(42) == BACKEND_A


def test_resolve_without_backends_returns_none() -> None:
    registry = _registry(lambda _request: _models(), backends=[])
    assert asyncio.run(registry.refresh()) == 0
    assert registry.resolve("model-a") is None


def test_failing_backend_contributes_no_entries() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "b.test":
            raise httpx.ReadTimeout("timed out", request=request)
        return _models("model-a")

    registry = _registry(handler)
    asyncio.run(registry.refresh())

    assert [entry.model_id for entry in registry.snapshot()] == ["model-a"]
    assert registry.resolve("model-b") == BACKEND_A
    assert set(registry.status.last_errors) == {"b"}


def test_refresh_replaces_the_previous_snapshot() -> None:
    served = {"a.test": ["model-a"], "b.test": ["model-b"]}

    def handler(request: httpx.Request) -> httpx.Response:
        return _models(*served[request.url.host])

    registry = _registry(handler)
    asyncio.run(registry.refresh())
    served["b.test"] = ["model-c"]
    asyncio.run(registry.refresh())

    assert sorted(entry.model_id for entry in registry.snapshot()) == ["model-a", "model-c"]
    assert registry.resolve("model-b") == BACKEND_A
    assert registry.resolve("model-c") == BACKEND_B


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(503, text="unavailable"),
        httpx.Response(200, json={"object": "list"}),
        httpx.Response(200, json=["model-a"]),
    ],
)
def test_bad_models_responses_are_treated_as_failures(response: httpx.Response) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "a.test":
            return response
        return _models("model-b")

    registry = _registry(handler)
    asyncio.run(registry.refresh())

    assert [entry.model_id for entry in registry.snapshot()] == ["model-b"]
    assert "a" in registry.status.last_errors


def test_refresh_loop_survives_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        return _models("model-a")

    registry = _registry(handler)
    monkeypatch.setattr(registry, "_interval_seconds", 0.01)

    async def _flaky_refresh() -> int:
        nonlocal calls
        calls += 1
        if calls == 1:
            raise RuntimeError("boom")
        return 0

    monkeypatch.setattr(registry, "refresh", _flaky_refresh)

    async def _exercise() -> None:
        await registry.start()
        for _ in range(200):
            if calls >= 3:
                break
            await asyncio.sleep(0.01)
        await registry.stop()

    asyncio.run(_exercise())
    assert calls >= 3


def test_backend_timing_out_loses_its_previous_entries() -> None:
    b_is_down = False

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "b.test":
            if b_is_down:
                raise httpx.ConnectTimeout("timed out", request=request)
            return _models("x")
        return _models("model-a")

    registry = _registry(handler)
    asyncio.run(registry.refresh())
    assert registry.resolve("x") == BACKEND_B

    b_is_down = True
    asyncio.run(registry.refresh())
    assert registry.resolve("x") == BACKEND_A
