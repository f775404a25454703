import asyncio

import httpx

from form_rules.conditions import EvaluationContext
from form_rules.form import FormEngine
from form_rules.http import HttpClient, ResolvedRequest, resolve_request
from form_rules.models import parse_http_request
from form_rules.registry import FunctionRegistry
from form_rules.scheduling import ManualScheduler

BASE_URL = "https://rules.test"


def mock_client(handler, calls=None) -> HttpClient:
    def _record(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(dict(request.url.params))
        return handler(request)

    return HttpClient(base_url=BASE_URL, transport=httpx.MockTransport(_record))


def test_resolve_request_evaluates_parameter_expressions() -> None:
    spec = parse_http_request({"url": "/rates", "method": "post", "queryParams": {"from": "formValue.currency"}, "body": {"amount": "fieldValue * 2"}})
    context = EvaluationContext(field_path="amount", field_value=5, form_value={"currency": "EUR"})
    request = resolve_request(spec, context)
    assert request.method == "POST"
    assert request.params == {"from": "EUR"}
    assert request.body == {"amount": 10}


def test_http_client_sends_params_and_decodes_json() -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.method, request.url.path, dict(request.url.params)))
        return httpx.Response(200, json={"ok": True})

    client = HttpClient(base_url=BASE_URL, transport=httpx.MockTransport(handler))
    result = asyncio.run(client.send(ResolvedRequest(url="/check", params={"q": "x", "skip": None})))
    assert result == {"ok": True}
    assert seen == [("GET", "/check", {"q": "x"})]


def test_http_condition_uses_pending_value_then_response() -> None:
    scheduler = ManualScheduler()
    calls = []
    client = mock_client(
        lambda request: httpx.Response(200, json={"available": request.url.params["name"] != "taken"}),
        calls,
    )
    engine = FormEngine(
        [
            {"key": "username", "value": "ada"},
            {
                "key": "takenNotice",
                "type": "text",
                "logic": [
                    {
                        "type": "hidden",
                        "condition": {
                            "type": "http",
                            "http": {"url": "/users/available", "queryParams": {"name": "formValue.username"}},
                            "responseExpression": "response.available",
                            "pendingValue": True,
                            "cacheDurationMs": 1000,
                        },
                    }
                ],
            },
        ],
        scheduler=scheduler,
        http_client=client,
    )
    notice = engine.field("takenNotice")
    assert notice.hidden.peek() is True
    assert notice.pending.peek() is True

    scheduler.run_pending()
    assert notice.pending.peek() is False
    assert notice.hidden.peek() is True

    engine.set_value("username", "taken")
    assert notice.pending.peek() is True
    scheduler.run_pending()
    assert notice.hidden.peek() is False

    engine.set_value("username", "ada")
    assert notice.pending.peek() is False
    assert notice.hidden.peek() is True
    assert calls == [{"name": "ada"}, {"name": "taken"}]
    scheduler.close()


def test_http_condition_failure_falls_back_to_pending_value() -> None:
    scheduler = ManualScheduler()
    client = mock_client(lambda request: httpx.Response(503))
    engine = FormEngine(
        [
            {
                "key": "banner",
                "type": "text",
                "logic": [{"type": "hidden", "condition": {"type": "http", "http": "/status", "pendingValue": False}}],
            }
        ],
        scheduler=scheduler,
        http_client=client,
    )
    scheduler.run_pending()
    assert engine.field("banner").hidden.peek() is False
    assert engine.field("banner").pending.peek() is False
    scheduler.close()


def test_async_condition_function() -> None:
    scheduler = ManualScheduler()
    registry = FunctionRegistry()

    async def is_blocked(context) -> bool:
        return context.form_value["country"] == "XX"

    registry.register_async_condition("isBlocked", is_blocked)
    engine = FormEngine(
        [
            {"key": "country", "value": "XX"},
            {"key": "order", "logic": [{"type": "disabled", "condition": {"type": "async", "asyncFunctionName": "isBlocked"}}]},
        ],
        registry=registry,
        scheduler=scheduler,
    )
    order = engine.field("order")
    assert order.disabled.peek() is False
    scheduler.run_pending()
    assert order.disabled.peek() is True
    engine.set_value("country", "DE")
    scheduler.run_pending()
    assert order.disabled.peek() is False
    scheduler.close()


def test_async_conditions_cannot_be_nested() -> None:
    registry = FunctionRegistry()
    registry.register_async_condition("check", lambda context: None)
    engine = FormEngine(
        [
            {
                "key": "a",
                "logic": [
                    {"type": "hidden", "condition": {"type": "or", "conditions": [True, {"type": "async", "asyncFunctionName": "check"}]}}
                ],
            }
        ],
        registry=registry,
        strict=False,
    )
    assert len(engine.configuration_errors) == 1
    assert "nested" in engine.configuration_errors[0].message


def test_async_derivation_writes_pending_value_then_result() -> None:
    scheduler = ManualScheduler()
    registry = FunctionRegistry()
    cities = {"10001": "New York", "94105": "San Francisco", "60601": "Chicago"}
    requested = []

    async def lookup_city(context) -> str:
        requested.append(context.form_value["zip"])
        return cities[context.form_value["zip"]]

    registry.register_async_derivation("lookupCity", lookup_city)
    engine = FormEngine(
        [
            {"key": "zip", "value": "10001"},
            {
                "key": "city",
                "logic": [
                    {
                        "type": "derivation",
                        "asyncFunctionName": "lookupCity",
                        "dependsOn": ["zip"],
                        "pendingValue": "loading",
                    }
                ],
            },
        ],
        registry=registry,
        scheduler=scheduler,
    )
    city = engine.field("city")
    assert city.value.peek() == "loading"
    assert city.pending.peek() is True
    assert engine.valid.peek() is False

    scheduler.run_pending()
    assert city.value.peek() == "New York"
    assert city.pending.peek() is False
    assert engine.valid.peek() is True

    engine.set_value("zip", "94105")
    engine.set_value("zip", "60601")
    scheduler.run_pending()
    assert city.value.peek() == "Chicago"
    assert requested == ["10001", "60601"]
    scheduler.close()


def test_async_derivation_failure_keeps_last_good_value() -> None:
    scheduler = ManualScheduler()
    registry = FunctionRegistry()

    async def lookup(context) -> str:
        if context.form_value["code"] == "bad":
            raise RuntimeError("lookup failed")
        return context.form_value["code"].upper()

    registry.register_async_derivation("lookup", lookup)
    engine = FormEngine(
        [
            {"key": "code", "value": "ok"},
            {"key": "label", "logic": [{"type": "derivation", "asyncFunctionName": "lookup", "dependsOn": ["code"], "pendingValue": "..."}]},
        ],
        registry=registry,
        scheduler=scheduler,
    )
    scheduler.run_pending()
    assert engine.field("label").value.peek() == "OK"
    engine.set_value("code", "bad")
    assert engine.field("label").value.peek() == "..."
    scheduler.run_pending()
    assert engine.field("label").value.peek() == "OK"
    scheduler.close()


def test_http_derivation_uses_response_expression_and_cache() -> None:
    scheduler = ManualScheduler()
    calls = []
    rates = {"EUR": 1.1, "GBP": 1.3}
    client = mock_client(lambda request: httpx.Response(200, json={"rate": rates[request.url.params["currency"]]}), calls)
    engine = FormEngine(
        [
            {"key": "currency", "value": "EUR"},
            {
                "key": "rate",
                "logic": [
                    {
                        "type": "derivation",
                        "http": {"url": "/rates", "queryParams": {"currency": "formValue.currency"}},
                        "responseExpression": "response.rate",
                        "cacheDurationMs": 60000,
                    }
                ],
            },
        ],
        scheduler=scheduler,
        http_client=client,
    )
    scheduler.run_pending()
    assert engine.field("rate").value.peek() == 1.1

    engine.set_value("currency", "GBP")
    scheduler.run_pending()
    assert engine.field("rate").value.peek() == 1.3

    engine.set_value("currency", "EUR")
    assert engine.field("rate").value.peek() == 1.1
    assert calls == [{"currency": "EUR"}, {"currency": "GBP"}]
    scheduler.close()


def test_custom_async_validator() -> None:
    scheduler = ManualScheduler()
    registry = FunctionRegistry()
    checked = []

    async def unique(value, context, params) -> bool:
        checked.append(value)
        return value not in params["taken"]

    registry.register_async_validator("unique", unique)
    engine = FormEngine(
        [
            {
                "key": "username",
                "minLength": 3,
                "validators": [
                    {"type": "customAsync", "functionName": "unique", "kind": "usernameTaken", "params": {"taken": ["admin"]}}
                ],
            }
        ],
        registry=registry,
        scheduler=scheduler,
    )
    username = engine.field("username")
    assert username.pending.peek() is False

    engine.set_value("username", "ad")
    assert username.pending.peek() is False
    assert [error.kind for error in username.errors.peek()] == ["minLength"]

    engine.set_value("username", "admin")
    assert username.pending.peek() is True
    assert engine.valid.peek() is False
    scheduler.run_pending()
    assert [error.kind for error in username.errors.peek()] == ["usernameTaken"]

    engine.set_value("username", "grace")
    scheduler.run_pending()
    assert username.errors.peek() == ()
    assert engine.valid.peek() is True
    assert checked == ["admin", "grace"]
    scheduler.close()


def test_custom_http_validator_and_error_handling() -> None:
    scheduler = ManualScheduler()
    registry = FunctionRegistry()

    def handler(request: httpx.Request) -> httpx.Response:
        code = request.url.params["code"]
        if code == "boom":
            return httpx.Response(500)
        return httpx.Response(200, json={"valid": code.startswith("V")})

    registry.register_http_validator(
        "voucher",
        lambda value, context: {"url": "/vouchers", "params": {"code": value}},
        lambda response, context: None if response["valid"] else {"kind": "voucherInvalid", "code": context.field_value},
    )
    engine = FormEngine(
        [
            {"key": "voucher", "validators": [{"type": "customHttp", "functionName": "voucher", "kind": "voucherUnavailable"}]},
            {
                "key": "strictVoucher",
                "validators": [
                    {"type": "customHttp", "functionName": "voucher", "kind": "voucherUnavailable", "treatErrorAsInvalid": True}
                ],
            },
        ],
        registry=registry,
        scheduler=scheduler,
        http_client=mock_client(handler),
    )
    engine.set_value("voucher", "X1")
    scheduler.run_pending()
    errors = engine.field("voucher").errors.peek()
    assert [(error.kind, error.params) for error in errors] == [("voucherInvalid", {"code": "X1"})]

    engine.set_value("voucher", "boom")
    engine.set_value("strictVoucher", "boom")
    scheduler.run_pending()
    assert engine.field("voucher").errors.peek() == ()
    assert [error.kind for error in engine.field("strictVoucher").errors.peek()] == ["voucherUnavailable"]
    scheduler.close()


def test_stale_async_results_are_discarded_after_field_disposal() -> None:
    scheduler = ManualScheduler()
    registry = FunctionRegistry()

    async def describe(context) -> str:
        return "described"

    registry.register_async_derivation("describe", describe)
    engine = FormEngine(
        [
            {
                "key": "items",
                "type": "array",
                "value": [{"sku": "a"}],
                "fields": [
                    {"key": "sku"},
                    {"key": "label", "logic": [{"type": "derivation", "asyncFunctionName": "describe", "dependsOn": ["items.$index.sku"]}]},
                ],
            }
        ],
        registry=registry,
        scheduler=scheduler,
    )
    assert scheduler.pending_tasks == 1
    engine.remove_array_item("items", 0)
    assert scheduler.pending_tasks == 0
    assert scheduler.run_pending() == 0
    scheduler.close()


def test_response_expressions_are_checked_at_bind_time() -> None:
    scheduler = ManualScheduler()
    client = mock_client(lambda request: httpx.Response(200, json={"ok": True, "rate": 2}))
    engine = FormEngine(
        [
            {"key": "currency", "value": "EUR"},
            {
                "key": "notice",
                "type": "text",
                "logic": [{"type": "hidden", "condition": {"type": "http", "http": "/status", "responseExpression": "payload.ok"}}],
            },
            {
                "key": "rate",
                "logic": [{"type": "derivation", "http": "/rates", "dependsOn": ["currency"], "responseExpression": "payload.rate"}],
            },
        ],
        scheduler=scheduler,
        http_client=client,
        strict=False,
    )
    assert sorted(error.field_key for error in engine.configuration_errors) == ["notice", "rate"]
    assert all("payload" in error.message for error in engine.configuration_errors)
    scheduler.settle()
    assert engine.field("rate").value.peek() is None
    scheduler.close()
