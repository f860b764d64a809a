import json

import httpx
import pytest

from stepwise.contracts import RunStatus
from stepwise.modules import http_request_handler, register_builtin_modules
from stepwise.modules.builtin import join, merge
from stepwise.registry import ModuleRegistry
from stepwise.scheduler import RunContext, StepScheduler


def _mock(status=200, **response_kwargs):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(status, **response_kwargs)

    return httpx.MockTransport(handler), seen


@pytest.mark.asyncio
async def test_http_request_returns_json_body():
    transport, seen = _mock(json={"id": 7, "ok": True})
    request = http_request_handler(transport)

    result = await request(
        {
            "url": "https://crm.example.com/contacts",
            "method": "post",
            "json": {"email": "a@b.c"},
            "query": {"dry": "1"},
            "headers": {"X-Tenant": "acme"},
        }
    )

    assert result["status"] == 200
    assert result["body"] == {"id": 7, "ok": True}
    sent = seen[0]
    assert sent.method == "POST"
    assert sent.url.params["dry"] == "1"
    assert sent.headers["X-Tenant"] == "acme"
    assert json.loads(sent.content) == {"email": "a@b.c"}


@pytest.mark.asyncio
async def test_http_request_text_body_and_error_status():
    transport, _ = _mock(status=500, text="upstream down")
    request = http_request_handler(transport)

    with pytest.raises(httpx.HTTPStatusError):
        await request({"url": "https://crm.example.com/"})

    result = await request({"url": "https://crm.example.com/", "raise_for_status": False})
    assert result["status"] == 500
    assert result["body"] == "upstream down"


def test_merge_and_join():
    assert merge({"objects": [{"a": 1, "b": 1}, {"b": 2}]}) == {"a": 1, "b": 2}
    with pytest.raises(TypeError):
        merge({"objects": [{"a": 1}, "nope"]})
    assert join({"items": ["a", 1, True]}) == "a 1 True"
    assert join({"items": ["x", "y"], "separator": ","}) == "x,y"


def test_builtins_are_described_in_catalog():
    registry = register_builtin_modules(ModuleRegistry())
    assert registry.lookup("http.client.request").integration == "http"
    catalog = registry.describe()
    assert "- **utils.text.join**" in catalog
    assert "url, method?" in catalog


@pytest.mark.asyncio
async def test_http_failure_fails_the_step(make_workflow, resilience):
    transport, _ = _mock(status=503, text="maintenance")
    registry = register_builtin_modules(ModuleRegistry(), http_transport=transport)
    definition = make_workflow(
        [
            {
                "name": "fetch",
                "module": "http.client.request",
                "params": {"url": "https://crm.example.com/leads/{{input.id}}"},
                "outputAs": "lead",
            }
        ]
    )

    outcome = await StepScheduler(registry, resilience).execute(
        definition, RunContext(run_id="r1", trigger_data={"id": 4})
    )

    assert outcome.status == RunStatus.ERROR
    assert outcome.error_step == "fetch"
    assert outcome.error_type == "ModuleExecutionError"
    assert "503" in outcome.error
