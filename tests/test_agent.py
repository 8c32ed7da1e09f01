"""Agent run loop, driven through the worker entry with a scripted provider."""

import asyncio
import json
import uuid
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest

from analyst.core.config import get_settings
from analyst.core.errors import WorkerAuthError
from analyst.models.base import dump_json, utcnow
from analyst.models.message import Message, MessageKind, MessageStatus
from analyst.services import agent
from analyst.services import conversation_store as store
from analyst.services.dispatcher import build_job_payload, submit_turn
from analyst.services.events import get_event_bus
from analyst.services.sandbox import SandboxResult
from analyst.workers.chat_turn import on_worker_invocation

from stubs import SAMPLE_CSV, ScriptedLLM, StreamChunk, completion_response, text_reply, tool_reply


@pytest.fixture(autouse=True)
def dataset_content():
    with patch(
        "analyst.services.dataset_store.get_dataset_content",
        AsyncMock(return_value=SAMPLE_CSV),
    ) as mock_fetch:
        yield mock_fetch


def _llm(*replies) -> ScriptedLLM:
    return ScriptedLLM(*replies)


async def _start_turn(session, user, dataset_ids, text="What is the total revenue?", chat=None):
    if chat is None:
        chat = await store.create_session(session, user.id)
    turn = await submit_turn(session, chat, user.id, text, dataset_ids)
    return chat, turn.ai_message


async def _run_turn(chat, ai_message, llm: ScriptedLLM):
    """Run the turn in the worker and collect every event it published."""
    bus = get_event_bus()
    async with bus.subscribe(str(chat.id)) as subscription:
        with patch("analyst.services.provider.acompletion", llm):
            result = await on_worker_invocation(build_job_payload(chat.id, ai_message.id))
        events = []
        while (event := await subscription.next_event(0.01)) is not None:
            events.append(event)
    return result, events


def _types(events) -> list[str]:
    return [str(e.type) for e in events]


# ── Happy paths ───────────────────────────────────────────────

@pytest.mark.asyncio
async def test_direct_answer(session, user, dataset, worker_db):
    chat, ai = await _start_turn(session, user, [str(dataset.id)])
    llm = _llm(text_reply("Total revenue was EUR 3,000."))

    result, events = await _run_turn(chat, ai, llm)

    assert result == {"status": "completed", "message_id": str(ai.id)}
    assert _types(events) == ["token"] * 5 + ["agent:final_answer", "end"]
    assert "".join(e.payload["content"] for e in events[:5]) == "Total revenue was EUR 3,000."
    assert events[-2].payload["text"] == "Total revenue was EUR 3,000."
    assert events[-1].payload["message"]["status"] == "completed"

    stored = await store.get_message(session, ai.id)
    assert stored.status == MessageStatus.COMPLETED
    assert stored.kind == MessageKind.AI_ANSWER
    assert stored.payload_dict["text"] == "Total revenue was EUR 3,000."
    assert stored.payload_dict["truncated"] is False
    assert stored.provider == "openai"
    assert stored.model == get_settings().default_llm_model
    assert stored.duration_ms is not None

    # The provider saw the system prompt, the tool catalog and the user prompt
    call = llm.calls[0]
    assert call["stream"] is True
    assert call["messages"][0]["role"] == "system"
    assert "Q1 Financials" in call["messages"][0]["content"]
    assert call["messages"][-1] == {"role": "user", "content": "What is the total revenue?"}
    assert len(call["tools"]) == 5


@pytest.mark.asyncio
async def test_status_progression(session, user, dataset, worker_db):
    chat, ai = await _start_turn(session, user, [str(dataset.id)])
    llm = _llm(
        tool_reply("fetch_dataset_sample", {"dataset_id": str(dataset.id), "rows": 2}),
        text_reply("Done."),
    )

    with patch.object(agent, "transition_message", wraps=agent.transition_message) as spy:
        await _run_turn(chat, ai, llm)

    statuses = [c.args[3] for c in spy.await_args_list]
    assert statuses == [
        MessageStatus.FETCHING_CONTEXT,
        MessageStatus.GENERATING,
        MessageStatus.EXECUTING_TOOL,
        MessageStatus.GENERATING,
        MessageStatus.COMPLETED,
    ]


@pytest.mark.asyncio
async def test_tool_call_then_answer(session, user, dataset, worker_db):
    chat, ai = await _start_turn(session, user, [str(dataset.id)])
    llm = _llm(
        tool_reply(
            "fetch_dataset_sample",
            {"dataset_id": str(dataset.id), "rows": 2},
            explanation="Let me look at the data first.",
        ),
        text_reply("Revenue is 3000."),
    )

    result, events = await _run_turn(chat, ai, llm)

    assert result["status"] == "completed"
    types = _types(events)
    assert types[:3] == ["agent:explanation", "agent:using_tool", "agent:tool_result"]
    assert events[0].payload == {"explanation": "Let me look at the data first."}
    assert events[1].payload == {
        "toolName": "fetch_dataset_sample",
        "args": {"dataset_id": str(dataset.id), "rows": 2},
    }
    assert events[2].payload["toolName"] == "fetch_dataset_sample"
    assert "Mar" in events[2].payload["resultSummary"]

    # Second provider call carries the call and its result
    transcript = llm.calls[1]["messages"]
    assert transcript[-2]["tool_calls"][0]["function"]["name"] == "fetch_dataset_sample"
    assert transcript[-1]["role"] == "tool"
    assert transcript[-1]["tool_call_id"] == "call_1"
    assert json.loads(transcript[-1]["content"])["total_rows"] == 3

    stored = await store.get_message(session, ai.id)
    invocations = stored.tool_invocation_list
    assert len(invocations) == 1
    assert invocations[0]["step"] == 0
    assert invocations[0]["tool"] == "fetch_dataset_sample"
    assert invocations[0]["result"]["total_rows"] == 3
    assert "latency_ms" in invocations[0]


@pytest.mark.asyncio
async def test_analysis_code_is_hidden_from_clients(session, user, dataset, worker_db):
    chat, ai = await _start_turn(session, user, [str(dataset.id)])
    llm = _llm(
        tool_reply(
            "execute_analysis_code",
            {"dataset_id": str(dataset.id), "code": "sendResult(inputData.length)"},
        ),
        text_reply("There are 3 months."),
    )
    run = AsyncMock(return_value=SandboxResult(result={"months": 3}))

    with patch("analyst.services.sandbox.run_code", run):
        result, events = await _run_turn(chat, ai, llm)

    assert result["status"] == "completed"
    using = next(e for e in events if e.type == "agent:using_tool")
    assert using.payload["args"] == {"dataset_id": str(dataset.id)}
    final = next(e for e in events if e.type == "agent:final_answer")
    assert final.payload["analysisResult"] == {"months": 3}

    stored = await store.get_message(session, ai.id)
    assert "code" not in stored.tool_invocation_list[0]["arguments"]
    assert stored.payload_dict["analysis_result"] == {"months": 3}


@pytest.mark.asyncio
async def test_clarification_ends_the_turn(session, user, dataset, worker_db):
    chat, ai = await _start_turn(session, user, [str(dataset.id)], text="Show me the numbers")
    llm = _llm(tool_reply("ask_user_clarification", {"question": "Which quarter do you mean?"}))

    result, events = await _run_turn(chat, ai, llm)

    assert result["status"] == "completed"
    final = next(e for e in events if e.type == "agent:final_answer")
    assert final.payload["clarification"] is True
    assert final.payload["text"] == "Which quarter do you mean?"
    assert len(llm.calls) == 1


@pytest.mark.asyncio
async def test_follow_up_sees_previous_analysis(session, user, dataset, worker_db):
    chat, first = await _start_turn(session, user, [str(dataset.id)], text="Gross margin?")
    await _run_turn(chat, first, _llm(
        tool_reply("perform_calculation", {
            "dataset_id": str(dataset.id),
            "ratios": ["gross_profit_margin"],
            "revenue_column": "revenue",
            "cogs_column": "cogs",
        }),
        text_reply("Gross margin is 60%."),
    ))

    _, second = await _start_turn(session, user, [], text="Chart that", chat=chat)
    llm = _llm(text_reply("Sure."))
    result, _ = await _run_turn(chat, second, llm)

    assert result["status"] == "completed"
    messages = llm.calls[0]["messages"]
    assert "Previous analysis result" in messages[0]["content"]
    assert "gross_profit_margin" in messages[0]["content"]
    assert {"role": "user", "content": "Gross margin?"} in messages
    assert {"role": "assistant", "content": "Gross margin is 60%."} in messages


# ── Recovery and bounds ───────────────────────────────────────

@pytest.mark.asyncio
async def test_unknown_tool_is_fed_back_and_recovered(session, user, dataset, worker_db):
    chat, ai = await _start_turn(session, user, [str(dataset.id)])
    llm = _llm(
        tool_reply("query_database", {"sql": "SELECT 1"}),
        text_reply("Revenue is 3000."),
    )

    result, events = await _run_turn(chat, ai, llm)

    assert result["status"] == "completed"
    tool_result = next(e for e in events if e.type == "agent:tool_result")
    assert tool_result.payload["errorCode"] == "UNKNOWN_TOOL"
    fed_back = json.loads(llm.calls[1]["messages"][-1]["content"])
    assert fed_back["errorCode"] == "UNKNOWN_TOOL"

    stored = await store.get_message(session, ai.id)
    assert stored.tool_invocation_list[0]["error_code"] == "UNKNOWN_TOOL"


@pytest.mark.asyncio
async def test_repeated_tool_errors_fail_the_turn(session, user, dataset, worker_db):
    chat, ai = await _start_turn(session, user, [str(dataset.id)])
    llm = _llm(*[tool_reply("fetch_dataset_sample", {"rows": 5}, call_id=f"call_{i}") for i in range(3)])

    result, events = await _run_turn(chat, ai, llm)

    assert result["status"] == "error"
    assert _types(events)[-2:] == ["agent:error", "end"]
    assert events[-2].payload == {"error": agent.TOOL_ERROR_LIMIT, "errorCode": "TOOL_ERROR_LIMIT"}

    stored = await store.get_message(session, ai.id)
    assert stored.status == MessageStatus.ERROR
    assert stored.kind == MessageKind.AI_ERROR
    assert stored.error_message == agent.TOOL_ERROR_LIMIT
    assert len(stored.tool_invocation_list) == 3


@pytest.mark.asyncio
async def test_tool_call_limit_truncates_the_answer(session, user, dataset, worker_db, monkeypatch):
    monkeypatch.setattr(get_settings(), "agent_max_tool_calls", 2)
    chat, ai = await _start_turn(session, user, [str(dataset.id)])
    sample = {"dataset_id": str(dataset.id), "rows": 1}
    llm = _llm(
        tool_reply("fetch_dataset_sample", sample, preamble="Checking the data.", call_id="a"),
        tool_reply("fetch_dataset_sample", sample, preamble="Checking again.", call_id="b"),
    )

    result, events = await _run_turn(chat, ai, llm)

    assert result["status"] == "completed"
    final = next(e for e in events if e.type == "agent:final_answer")
    assert final.payload["truncated"] is True
    assert final.payload["text"] == f"Checking again.\n\n{agent.STEP_LIMIT_NOTICE}"
    assert len(llm.calls) == 2


@pytest.mark.asyncio
async def test_tool_timeout_is_recorded(session, user, dataset, worker_db, monkeypatch):
    monkeypatch.setattr(get_settings(), "tool_timeout_seconds", 0.01)
    chat, ai = await _start_turn(session, user, [str(dataset.id)])
    llm = _llm(
        tool_reply("execute_analysis_code", {"dataset_id": str(dataset.id), "code": "slow()"}),
        text_reply("The analysis took too long."),
    )

    async def _slow(code, rows):
        await asyncio.sleep(1)

    with patch("analyst.services.sandbox.run_code", _slow):
        result, events = await _run_turn(chat, ai, llm)

    assert result["status"] == "completed"
    tool_result = next(e for e in events if e.type == "agent:tool_result")
    assert tool_result.payload["errorCode"] == "TOOL_TIMEOUT"


@pytest.mark.asyncio
async def test_report_generation_failure_is_fed_back(session, user, dataset, worker_db):
    chat, ai = await _start_turn(session, user, [str(dataset.id)])
    llm = _llm(
        tool_reply("perform_calculation", {
            "dataset_id": str(dataset.id),
            "ratios": ["gross_profit_margin"],
            "revenue_column": "revenue",
            "cogs_column": "cogs",
        }, call_id="calc"),
        tool_reply("generate_report_code", {"analysis_summary": "Gross margin by quarter"}, call_id="report"),
        text_reply("Gross margin is 60%; the chart could not be built."),
    )

    with patch(
        "analyst.services.tools.report_code.acompletion",
        AsyncMock(side_effect=RuntimeError("rate limited")),
    ):
        result, events = await _run_turn(chat, ai, llm)

    assert result["status"] == "completed"
    assert len(llm.calls) == 3
    report_result = [e for e in events if e.type == "agent:tool_result"][1]
    assert report_result.payload["errorCode"] == "REPORT_GENERATION_FAILED"
    fed_back = json.loads(llm.calls[2]["messages"][-1]["content"])
    assert fed_back["errorCode"] == "REPORT_GENERATION_FAILED"

    stored = await store.get_message(session, ai.id)
    assert stored.status == MessageStatus.COMPLETED
    assert stored.payload_dict["report_code"] is None
    assert stored.payload_dict["analysis_result"]["ratios"]


@pytest.mark.asyncio
async def test_unexpected_tool_exception_is_fed_back(session, user, dataset, worker_db):
    chat, ai = await _start_turn(session, user, [str(dataset.id)])
    llm = _llm(
        tool_reply("fetch_dataset_sample", {"dataset_id": str(dataset.id)}),
        text_reply("The sample could not be read."),
    )

    with patch(
        "analyst.services.tools.dataset_sample.FetchDatasetSampleTool.run",
        AsyncMock(side_effect=KeyError("rows")),
    ):
        result, events = await _run_turn(chat, ai, llm)

    assert result["status"] == "completed"
    tool_result = next(e for e in events if e.type == "agent:tool_result")
    assert tool_result.payload["errorCode"] == "TOOL_EXECUTION_FAILED"
    assert json.loads(llm.calls[1]["messages"][-1]["content"])["errorCode"] == "TOOL_EXECUTION_FAILED"

    stored = await store.get_message(session, ai.id)
    assert stored.tool_invocation_list[0]["error_code"] == "TOOL_EXECUTION_FAILED"


@pytest.mark.asyncio
async def test_slow_stream_is_cut_at_the_turn_limit(session, user, dataset, worker_db, monkeypatch):
    monkeypatch.setattr(get_settings(), "agent_max_turn_seconds", 1.0)
    chat, ai = await _start_turn(session, user, [str(dataset.id)])

    async def _slow_stream():
        yield StreamChunk(content="Revenue")
        yield StreamChunk(content=" grew")
        await asyncio.sleep(30)
        yield StreamChunk(content=" steadily.")

    async def _slow_llm(**kwargs):
        return _slow_stream()

    result, events = await _run_turn(chat, ai, _slow_llm)

    assert result["status"] == "completed"
    assert _types(events) == ["token", "token", "agent:final_answer", "end"]
    final = events[-2].payload
    assert final["truncated"] is True
    assert final["text"] == f"Revenue grew\n\n{agent.TIME_LIMIT_NOTICE}"

    stored = await store.get_message(session, ai.id)
    assert stored.status == MessageStatus.COMPLETED
    assert stored.payload_dict["truncated"] is True


@pytest.mark.asyncio
async def test_provider_failure_is_retried_once(session, user, dataset, worker_db):
    chat, ai = await _start_turn(session, user, [str(dataset.id)])
    llm = _llm(RuntimeError("connection reset"), text_reply("Recovered."))

    result, events = await _run_turn(chat, ai, llm)

    assert result["status"] == "completed"
    assert len(llm.calls) == 2
    assert events[-2].payload["text"] == "Recovered."


@pytest.mark.asyncio
async def test_provider_outage_fails_with_generic_message(session, user, dataset, worker_db):
    chat, ai = await _start_turn(session, user, [str(dataset.id)])
    llm = _llm(RuntimeError("401 invalid api key sk-live-123"), RuntimeError("401 invalid api key sk-live-123"))

    result, events = await _run_turn(chat, ai, llm)

    assert result["status"] == "error"
    error = next(e for e in events if e.type == "agent:error")
    assert error.payload == {"error": agent.PROVIDER_UNAVAILABLE, "errorCode": "PROVIDER_UNAVAILABLE"}

    stored = await store.get_message(session, ai.id)
    assert stored.error_message == agent.PROVIDER_UNAVAILABLE
    assert "sk-live" not in json.dumps([e.to_wire() for e in events])


@pytest.mark.asyncio
async def test_stream_failure_after_tokens_fails_the_turn(session, user, dataset, worker_db):
    chat, ai = await _start_turn(session, user, [str(dataset.id)])
    llm = _llm([StreamChunk(content="Revenue"), RuntimeError("stream dropped")])

    result, events = await _run_turn(chat, ai, llm)

    assert result["status"] == "error"
    assert _types(events) == ["token", "agent:error", "end"]


@pytest.mark.asyncio
async def test_late_tool_call_after_text(session, user, dataset, worker_db):
    chat, ai = await _start_turn(session, user, [str(dataset.id)])
    late = [StreamChunk(content="I will check the sample.")] + tool_reply(
        "fetch_dataset_sample", {"dataset_id": str(dataset.id)}
    )
    # Text first, then tool-call deltas in the same response
    llm = _llm(late, text_reply("Three rows."))

    result, events = await _run_turn(chat, ai, llm)

    assert result["status"] == "completed"
    types = _types(events)
    assert types[:4] == ["token", "agent:explanation", "agent:using_tool", "agent:tool_result"]
    # The streamed text is re-labelled rather than shown twice
    assert events[1].payload == {"explanation": "I will check the sample.", "replacesTokens": True}


@pytest.mark.asyncio
async def test_context_unavailable_fails_without_calling_the_provider(session, user, worker_db):
    chat, ai = await _start_turn(session, user, [str(uuid.uuid4())])
    llm = _llm()

    result, events = await _run_turn(chat, ai, llm)

    assert result["status"] == "error"
    assert llm.calls == []
    error = next(e for e in events if e.type == "agent:error")
    assert error.payload["errorCode"] == "CONTEXT_UNAVAILABLE"
    assert error.payload["error"].startswith("Failed to load required dataset content")

    stored = await store.get_message(session, ai.id)
    assert stored.kind == MessageKind.AI_ERROR
    assert stored.error_message.startswith("Failed to load required dataset content")


# ── History condensation ──────────────────────────────────────

async def _seed_history(session, chat, user, pairs: int) -> None:
    base = utcnow() - timedelta(minutes=10)
    for i in range(pairs):
        session.add(Message(
            session_id=chat.id,
            user_id=user.id,
            kind=MessageKind.USER.value,
            status=MessageStatus.COMPLETED.value,
            text=f"question {i}",
            created_at=base + timedelta(seconds=2 * i),
        ))
        session.add(Message(
            session_id=chat.id,
            user_id=user.id,
            kind=MessageKind.AI_ANSWER.value,
            status=MessageStatus.COMPLETED.value,
            payload=dump_json({"text": f"answer {i}"}),
            created_at=base + timedelta(seconds=2 * i + 1),
        ))
    await session.commit()


@pytest.mark.asyncio
async def test_long_history_is_summarized(session, user, dataset, worker_db):
    chat = await store.create_session(session, user.id)
    await _seed_history(session, chat, user, pairs=4)
    chat, ai = await _start_turn(session, user, [str(dataset.id)], text="And now?", chat=chat)
    llm = _llm(completion_response("They asked about revenue."), text_reply("Done."))

    with patch("analyst.services.provider.count_tokens", return_value=10_000):
        result, _ = await _run_turn(chat, ai, llm)

    assert result["status"] == "completed"
    summary_call, answer_call = llm.calls
    assert "stream" not in summary_call
    assert "question 0" in summary_call["messages"][1]["content"]

    messages = answer_call["messages"]
    assert messages[1] == {
        "role": "system",
        "content": "Summary of the earlier conversation:\nThey asked about revenue.",
    }
    assert messages[2] == {"role": "user", "content": "question 1"}
    assert len(messages) == 1 + 1 + 6 + 1


@pytest.mark.asyncio
async def test_failed_summary_keeps_recent_history(session, user, dataset, worker_db):
    chat = await store.create_session(session, user.id)
    await _seed_history(session, chat, user, pairs=4)
    chat, ai = await _start_turn(session, user, [str(dataset.id)], text="And now?", chat=chat)
    llm = _llm(RuntimeError("summary model down"), text_reply("Done."))

    with patch("analyst.services.provider.count_tokens", return_value=10_000):
        result, _ = await _run_turn(chat, ai, llm)

    assert result["status"] == "completed"
    messages = llm.calls[1]["messages"]
    assert messages[1] == {"role": "user", "content": "question 1"}
    assert len(messages) == 1 + 6 + 1


# ── Ownership ─────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_duplicate_delivery_is_skipped(session, user, dataset, worker_db):
    chat, ai = await _start_turn(session, user, [str(dataset.id)])
    await _run_turn(chat, ai, _llm(text_reply("Once.")))

    result, events = await _run_turn(chat, ai, _llm())

    assert result == {"status": "skipped", "message_id": str(ai.id)}
    assert events == []


@pytest.mark.asyncio
async def test_invalid_signature_is_rejected(session, user, dataset, worker_db):
    chat, ai = await _start_turn(session, user, [str(dataset.id)])
    payload = build_job_payload(chat.id, ai.id)
    payload["signature"] = "0" * 64

    with pytest.raises(WorkerAuthError):
        await on_worker_invocation(payload)

    stored = await store.get_message(session, ai.id)
    assert stored.status == MessageStatus.PENDING


@pytest.mark.asyncio
async def test_deleting_the_chat_abandons_the_turn(session, user, dataset, worker_db, dataset_content):
    chat, ai = await _start_turn(session, user, [str(dataset.id)])
    chat_id, user_id = chat.id, user.id

    async def _delete_then_fetch(storage_path):
        async with worker_db() as other:
            await store.delete_session(other, chat_id, user_id)
        return SAMPLE_CSV

    dataset_content.side_effect = _delete_then_fetch
    llm = _llm(tool_reply("fetch_dataset_sample", {"dataset_id": str(dataset.id)}))

    result, events = await _run_turn(chat, ai, llm)

    assert result["status"] == "abandoned"
    assert "end" not in _types(events)
    assert "agent:final_answer" not in _types(events)
    assert await store.session_is_live(session, chat_id) is False


@pytest.mark.asyncio
async def test_cancelled_run_fails_the_turn(session, user, dataset, worker_db):
    chat, ai = await _start_turn(session, user, [str(dataset.id)])
    provider_called = asyncio.Event()

    async def _hanging_llm(**kwargs):
        provider_called.set()
        await asyncio.Event().wait()

    with patch("analyst.services.provider.acompletion", _hanging_llm):
        task = asyncio.create_task(on_worker_invocation(build_job_payload(chat.id, ai.id)))
        await asyncio.wait_for(provider_called.wait(), 5)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    stored = await store.get_message(session, ai.id)
    assert stored.status == MessageStatus.ERROR
    assert stored.kind == MessageKind.AI_ERROR
    assert stored.error_message == agent.TURN_INTERRUPTED

    # The session is free for the next prompt
    retry = await submit_turn(session, chat, user.id, "Try again", [])
    assert retry.created is True
