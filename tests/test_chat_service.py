import pytest

from app.agents import CONTEXT_JSON_HEADER, MOCK_ANSWER, SYSTEM_PROMPT
from app.chat_service import ChatService, build_interpretation_header, chunks, prefix_if_needed
from app.llm import AssistantMessage
from app.memory import ConversationState
from app.schemas import ChatRequest
from tests.fakes import FakeGateway, FakeLLM, ok, tool_call

CAMPAIGN = "11111111-2222-4333-8444-555555555555"
TOP_POSTERS = {"/pop/stats": ok({"data": [{"PosterName": "Summer", "Metric": 3}]})}


def make_service(db, gateway=None, llm=None, mock_mode=False):
    return ChatService(gateway or FakeGateway(), llm or FakeLLM(), db, mock_mode=mock_mode)


def test_header_for_device_health():
    header = build_interpretation_header("show cpu for moco-brt-briggs-001 yesterday")
    assert header == "Interpreted request: Yesterday Device health for moco-brt-briggs-001"


def test_header_falls_back_to_memory_scope():
    state = ConversationState(region="brt")
    assert build_interpretation_header("top posters", state) == "Interpreted request: Poster (top posters) [region=brt]"
    assert build_interpretation_header("hello") == ""


def test_header_venue_and_poster_refs():
    header = build_interpretation_header("show devices in venue 7")
    assert header == "Interpreted request: Venue devices venue_id=7"
    header = build_interpretation_header("play count of poster Lorla Studio kiosk wise")
    assert header.startswith("Interpreted request: Poster play count poster=lorla studio kiosk wise")
    assert header.endswith("(kiosk-wise)")


def test_prefix_if_needed():
    assert prefix_if_needed("Interpreted request: POP", "answer") == "Interpreted request: POP\nanswer"
    assert prefix_if_needed("Interpreted request: POP", "Interpreted request: POP\nanswer") == (
        "Interpreted request: POP\nanswer"
    )
    assert prefix_if_needed("", "answer") == "answer"
    assert prefix_if_needed("Interpreted request: POP", "") == "Interpreted request: POP"


def test_chunks():
    assert chunks("Acme is the only advertiser.") == ["Acme is the only adv", "ertiser."]
    assert chunks("") == []


@pytest.mark.asyncio
async def test_handler_answer_is_prefixed_and_persisted(db):
    service = make_service(db, FakeGateway(TOP_POSTERS))
    response = await service.chat("key-a", ChatRequest(message="top posters in brt region", conversation_id="c1"))
    assert response.answer == (
        "Interpreted request: Poster (top posters) [region=brt]\n"
        "Top posters in region 'brt' by clicks:\n1. Summer - 3 clicks"
    )
    messages = await db.list_messages("key-a", "c1")
    assert [(m.role, m.content) for m in messages] == [
        ("user", "top posters in brt region"),
        ("assistant", response.answer),
    ]


@pytest.mark.asyncio
async def test_stream_emits_header_once_before_handler_answer(db):
    service = make_service(db, FakeGateway(TOP_POSTERS))
    tokens = []
    response = await service.chat_stream("key-a", ChatRequest(message="top posters in brt region"), tokens.append)
    assert tokens == [response.answer]
    assert response.answer.startswith("Interpreted request: Poster (top posters) [region=brt]\nTop posters")


@pytest.mark.asyncio
async def test_memory_carries_scope_to_follow_up(db):
    service = make_service(db, FakeGateway(TOP_POSTERS))
    await service.chat("key-a", ChatRequest(message="top posters in brt region", conversation_id="c1"))
    response = await service.chat("key-a", ChatRequest(message="top 3 posters by plays", conversation_id="c1"))
    assert "Top posters in region 'brt' by plays" in response.answer
    assert service.gateway.paths_called("/pop/stats")[-1].endswith("limit=3&region=brt")


@pytest.mark.asyncio
async def test_mock_mode_with_prefetch(db):
    gateway = FakeGateway({"/ads/advertisers": ok({"data": [{"id": 1, "name": "Acme"}]})})
    service = make_service(db, gateway, mock_mode=True)
    response = await service.chat("key-a", ChatRequest(message="which advertiser spent the most"))
    assert response.answer == MOCK_ANSWER + " I fetched impressions data."
    assert [s.tool for s in response.steps] == ["adsAdvertisers"]

    response = await service.chat("key-a", ChatRequest(message="hello there"))
    assert response.answer == MOCK_ANSWER


@pytest.mark.asyncio
async def test_model_path_builds_messages_and_streams_chunks(db):
    await db.append_message("key-a", "c1", "user", "earlier question")
    await db.append_message("key-a", "c1", "assistant", "earlier answer")
    gateway = FakeGateway({"/ads/advertisers": ok({"data": [{"id": 1, "name": "Acme"}]})})
    llm = FakeLLM(
        turns=[AssistantMessage(tool_calls=[tool_call("c1", {"method": "GET", "path": "/ads/advertisers"})])],
        final_answer="Acme is the only advertiser.",
    )
    service = make_service(db, gateway, llm)
    tokens = []
    response = await service.chat_stream(
        "key-a", ChatRequest(message="which advertiser spent the most", conversation_id="c1"), tokens.append
    )
    assert response.answer == "Acme is the only advertiser."
    assert tokens == ["Acme is the only adv", "ertiser."]

    first = llm.calls[0]
    assert first["tool_choice"] == "required"
    messages = first["messages"]
    assert messages[0] == {"role": "system", "content": SYSTEM_PROMPT}
    assert [m["role"] for m in messages[1:]] == ["user", "assistant", "user"]
    assert messages[1]["content"] == "earlier question"
    assert messages[-1]["content"].startswith("which advertiser spent the most" + CONTEXT_JSON_HEADER)
    assert "Acme" in messages[-1]["content"]

    stored = await db.list_messages("key-a", "c1")
    assert stored[-1].content == "Acme is the only advertiser."


@pytest.mark.asyncio
async def test_prefetch_impressions_returns_structured_data(db):
    record = {"campaign_id": CAMPAIGN, "impressions": 42, "posters": [{"poster_id": "p1", "impressions": 42}]}
    gateway = FakeGateway({f"/ads/campaigns/{CAMPAIGN}/impressions": ok({"data": record})})
    data, steps, tool_data = await make_service(db, gateway).prefetch(f"impression totals {CAMPAIGN}")
    assert data.campaign_impressions.impressions == 42
    assert steps[0].campaign_id == CAMPAIGN
    assert "ads_campaign_impressions" in tool_data


@pytest.mark.asyncio
async def test_close_closes_clients(db):
    gateway, llm = FakeGateway(), FakeLLM()
    await make_service(db, gateway, llm).close()
    assert gateway.closed and llm.closed
