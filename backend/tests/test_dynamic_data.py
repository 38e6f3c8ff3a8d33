import asyncio

import httpx
import pytest

from intake_engine.dynamic_data import (
    DefaultOptionLookup,
    DynamicDataResolver,
    OptionLookup,
    ResolverStatus,
    dig,
    options_from_items,
)
from intake_engine.errors import DynamicFetchError, ErrorKind
from intake_engine.loader import load_form
from intake_engine.schemas import DynamicBinding, DynamicOption

from conftest import FakeCollection


CUSTOM = DynamicBinding(enabled=True, source="custom", endpoint="https://lookup.invalid/providers", path="items")


class StaticLookup(OptionLookup):
    def __init__(self, values):
        self.values = values
        self.calls = 0

    async def fetch(self, binding):
        self.calls += 1
        return [DynamicOption(value=v, label=v.title()) for v in self.values]


class FailingLookup(OptionLookup):
    async def fetch(self, binding):
        raise DynamicFetchError("lookup.invalid returned 503")


class GatedLookup(OptionLookup):
    """Each fetch waits for its own event so tests control completion order."""

    def __init__(self):
        self.gates = []

    async def fetch(self, binding):
        gate = asyncio.Event()
        answer = f"answer-{len(self.gates)}"
        self.gates.append(gate)
        await gate.wait()
        return [DynamicOption(value=answer, label=answer)]


def test_dig():
    data = {"profile": {"email": "a@b.c", "tags": ["x"]}}
    assert dig(data, "profile.email") == "a@b.c"
    assert dig(data, "profile.missing") is None
    assert dig(data, "profile.email.deeper") is None
    assert dig(data, "") == data


def test_options_from_items_accepts_common_shapes():
    items = [
        {"value": "dr-1", "label": "Dr. One"},
        {"id": 2, "name": "Dr. Two"},
        {"_id": "dr-3", "title": "Dr. Three"},
        {"value": "dr-4"},
        "Walk-in",
        None,
    ]
    assert options_from_items(items) == [
        DynamicOption(value="dr-1", label="Dr. One"),
        DynamicOption(value="2", label="Dr. Two"),
        DynamicOption(value="dr-3", label="Dr. Three"),
        DynamicOption(value="dr-4", label="dr-4"),
        DynamicOption(value="Walk-in", label="Walk-in"),
    ]


@pytest.mark.parametrize("items", [{"value": "x"}, "x", [{"label": "no value"}]])
def test_options_from_items_rejects_bad_shapes(items):
    with pytest.raises(DynamicFetchError):
        options_from_items(items)


@pytest.mark.asyncio
async def test_successful_resolution_is_ready():
    resolver = DynamicDataResolver(StaticLookup(["cardiology", "dermatology"]))
    state = await resolver.resolve("c", CUSTOM)

    assert state.status == ResolverStatus.READY
    assert [o.value for o in state.options] == ["cardiology", "dermatology"]
    assert resolver.diagnostics == []


@pytest.mark.asyncio
async def test_failed_resolution_offers_no_options_and_records_diagnostic(dynamic_definition):
    form = load_form(dynamic_definition)
    element = form.definition.get_element("c")
    resolver = DynamicDataResolver(FailingLookup())

    state = await resolver.resolve("c", element.dynamicData)

    assert state.status == ResolverStatus.FAILED
    assert "503" in state.error
    assert resolver.options_for(element) == []
    assert [d.kind for d in resolver.diagnostics] == [ErrorKind.DYNAMIC_FETCH_FAILED]
    assert resolver.diagnostics[0].element_id == "c"


@pytest.mark.asyncio
async def test_unexpected_lookup_error_is_a_failure_not_a_crash():
    class Broken(OptionLookup):
        async def fetch(self, binding):
            raise KeyError("items")

    resolver = DynamicDataResolver(Broken())
    state = await resolver.resolve("c", CUSTOM)
    assert state.status == ResolverStatus.FAILED


@pytest.mark.asyncio
async def test_disabled_binding_is_never_fetched():
    lookup = StaticLookup(["x"])
    resolver = DynamicDataResolver(lookup)

    assert await resolver.resolve("c", DynamicBinding(enabled=False, source="user", path="x")) is None
    assert resolver.start("c", DynamicBinding(enabled=False)) is None
    assert lookup.calls == 0
    assert resolver.state("c") is None


@pytest.mark.asyncio
async def test_stale_result_is_discarded():
    lookup = GatedLookup()
    resolver = DynamicDataResolver(lookup)

    older = asyncio.ensure_future(resolver.resolve("c", CUSTOM))
    await asyncio.sleep(0)
    newer = asyncio.ensure_future(resolver.resolve("c", CUSTOM))
    await asyncio.sleep(0)
    assert resolver.state("c").status == ResolverStatus.LOADING

    # newer answer lands first, the older one afterwards
    lookup.gates[1].set()
    assert (await newer).options[0].value == "answer-1"
    lookup.gates[0].set()
    assert await older is None

    assert resolver.state("c").status == ResolverStatus.READY
    assert resolver.state("c").options[0].value == "answer-1"


@pytest.mark.asyncio
async def test_start_supersedes_previous_task():
    lookup = GatedLookup()
    resolver = DynamicDataResolver(lookup)

    first = resolver.start("c", CUSTOM)
    await asyncio.sleep(0)
    resolver.start("c", CUSTOM)
    await asyncio.sleep(0)
    lookup.gates[1].set()
    await resolver.wait_idle()

    assert first.cancelled()
    assert resolver.state("c").options[0].value == "answer-1"


@pytest.mark.asyncio
async def test_cancel_drops_state_and_late_result():
    lookup = GatedLookup()
    resolver = DynamicDataResolver(lookup)

    pending = asyncio.ensure_future(resolver.resolve("c", CUSTOM))
    await asyncio.sleep(0)
    resolver.cancel(["c"])
    lookup.gates[0].set()

    assert await pending is None
    assert resolver.state("c") is None


@pytest.mark.asyncio
async def test_options_for_static_and_loading(dynamic_definition, conditional_definition):
    resolver = DynamicDataResolver(GatedLookup())
    static = load_form(conditional_definition).definition.get_element("a")
    bound = load_form(dynamic_definition).definition.get_element("c")

    assert [o.value for o in resolver.options_for(static)] == ["Yes", "No"]
    resolver.start_all([static, bound])
    assert resolver.state("c").status == ResolverStatus.LOADING
    assert resolver.options_for(bound) == []
    resolver.cancel_all()
    await asyncio.sleep(0)


def _transport(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_default_lookup_custom_endpoint():
    def handler(request):
        assert request.url.path == "/providers"
        return httpx.Response(200, json={"items": [{"id": "p1", "name": "Dr. Rivera"}]})

    async with _transport(handler) as client:
        lookup = DefaultOptionLookup(http_client=client)
        options = await lookup.fetch(CUSTOM)

    assert options == [DynamicOption(value="p1", label="Dr. Rivera")]


@pytest.mark.asyncio
async def test_default_lookup_relative_endpoint_uses_base_url():
    def handler(request):
        assert str(request.url) == "https://api.example.test/v1/clinics"
        return httpx.Response(200, json=["North", "South"])

    binding = DynamicBinding(enabled=True, source="custom", endpoint="/clinics")
    async with _transport(handler) as client:
        lookup = DefaultOptionLookup(http_client=client, base_url="https://api.example.test/v1/")
        options = await lookup.fetch(binding)

    assert [o.value for o in options] == ["North", "South"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [httpx.Response(503), httpx.Response(200, text="<html>not json</html>"), httpx.Response(200, json={"items": 3})],
)
async def test_default_lookup_custom_failures(response):
    async with _transport(lambda request: response) as client:
        lookup = DefaultOptionLookup(http_client=client)
        with pytest.raises(DynamicFetchError):
            await lookup.fetch(CUSTOM)


@pytest.mark.asyncio
async def test_default_lookup_transport_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    async with _transport(handler) as client:
        lookup = DefaultOptionLookup(http_client=client)
        with pytest.raises(DynamicFetchError):
            await lookup.fetch(CUSTOM)


@pytest.mark.asyncio
async def test_default_lookup_user_profile():
    profile = {"insurance": {"plans": [{"id": "hmo", "name": "HMO Basic"}]}, "email": "pat@example.com"}
    lookup = DefaultOptionLookup(user_profile=profile)

    plans = await lookup.fetch(DynamicBinding(enabled=True, source="user", path="insurance.plans"))
    email = await lookup.fetch(DynamicBinding(enabled=True, source="user", path="email"))
    missing = await lookup.fetch(DynamicBinding(enabled=True, source="user", path="pharmacy"))

    assert plans == [DynamicOption(value="hmo", label="HMO Basic")]
    assert email == [DynamicOption(value="pat@example.com", label="pat@example.com")]
    assert missing == []


@pytest.mark.asyncio
async def test_default_lookup_service_collection():
    clinics = FakeCollection()
    clinics.docs = [{"_id": "c1", "name": "Downtown"}, {"_id": "c2", "name": "Harbor"}]
    lookup = DefaultOptionLookup(database={"clinics": clinics})

    options = await lookup.fetch(DynamicBinding(enabled=True, source="service", path="clinics"))
    assert [o.label for o in options] == ["Downtown", "Harbor"]
