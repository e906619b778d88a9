from __future__ import annotations

from collections.abc import Iterator, Mapping
from pathlib import Path
from typing import Any

from stager.events import EventChannel, EventKind
from stager.models.agent_client import AgentClient, AgentRequest, AgentTimeoutError
from stager.session import DEFAULT_RESPONSE_TEXT, AgentSession


class ScriptedClient(AgentClient):
    """Replay a fixed list of agent messages, optionally raising afterwards."""

    def __init__(self, messages: list[Mapping[str, Any]], error: Exception | None = None) -> None:
        self.messages = messages
        self.error = error
        self.cancelled: list[str | None] = []
        self.requests: list[AgentRequest] = []

    def stream(self, request: AgentRequest) -> Iterator[Mapping[str, Any]]:
        self.requests.append(request)
        yield from self.messages
        if self.error is not None:
            raise self.error

    def cancel(self, session_id: str | None = None) -> None:
        self.cancelled.append(session_id)


def _assistant(message_id: str, *blocks: dict[str, Any]) -> dict[str, Any]:
    return {"type": "assistant", "message": {"id": message_id, "content": list(blocks)}}


def _request(tmp_path: Path, **kwargs: Any) -> AgentRequest:
    kwargs.setdefault("session_id", "session-1")
    return AgentRequest(prompt="Add a button", staging_path=tmp_path, **kwargs)


def test_session_translates_messages_in_arrival_order(tmp_path: Path) -> None:
    staging = tmp_path.as_posix()
    client = ScriptedClient(
        [
            {"type": "system", "subtype": "init"},
            _assistant(
                "m1",
                {"type": "text", "text": "Looking at the project"},
                {"type": "tool_use", "id": "t1", "name": "Read", "input": {"file_path": f"{staging}/src/app.ts"}},
            ),
            {
                "type": "user",
                "message": {"content": [{"type": "tool_result", "tool_use_id": "t1", "content": "export {}"}]},
            },
            _assistant("m2", {"type": "tool_use", "id": "t2", "name": "Bash", "input": {"command": "npm run build"}}),
            {
                "type": "user",
                "message": {
                    "content": [
                        {"type": "tool_result", "tool_use_id": "t2", "is_error": True, "content": [{"type": "text", "text": "exit 1"}]}
                    ]
                },
            },
            {"type": "result", "subtype": "success", "result": "Added the button."},
        ]
    )
    channel = EventChannel("s1")
    session = AgentSession(client, channel)

    result = session.run(_request(tmp_path))

    assert result.success
    assert result.response_text == "Added the button."
    assert result.turns == 2
    events = session.events()
    assert [(event.kind, event.text) for event in events] == [
        (EventKind.START, "Agent: Processing request..."),
        (EventKind.MESSAGE, "Agent: Looking at the project"),
        (EventKind.TOOL_ACTION, "Read: app.ts"),
        (EventKind.TOOL_RESULT, "export {}"),
        (EventKind.TOOL_ACTION, "Bash: npm run build"),
        (EventKind.ERROR, "exit 1"),
        (EventKind.COMPLETE, "Agent: Task completed"),
    ]
    assert events[2].icon == "↑"
    assert events[2].correlation_id == events[3].correlation_id == "t1"
    assert [event.sequence for event in events] == sorted(event.sequence for event in events)


def test_missing_result_uses_placeholder_text(tmp_path: Path) -> None:
    client = ScriptedClient([_assistant("m1", {"type": "text", "text": "done"})])

    result = AgentSession(client, EventChannel("s2")).run(_request(tmp_path))

    assert result.success
    assert result.response_text == DEFAULT_RESPONSE_TEXT


def test_non_success_result_uses_placeholder_text(tmp_path: Path) -> None:
    client = ScriptedClient([{"type": "result", "subtype": "error_during_execution", "result": "partial"}])

    result = AgentSession(client, EventChannel("s3")).run(_request(tmp_path))

    assert result.response_text == DEFAULT_RESPONSE_TEXT


def test_client_timeout_produces_error_event_and_failed_result(tmp_path: Path) -> None:
    client = ScriptedClient(
        [_assistant("m1", {"type": "text", "text": "working"})],
        error=AgentTimeoutError("Agent timed out after 1 seconds."),
    )
    channel = EventChannel("s4")

    result = AgentSession(client, channel).run(_request(tmp_path))

    assert not result.success
    assert result.error == "Agent timed out after 1 seconds."
    last = channel.history[-1]
    assert last.kind is EventKind.ERROR
    assert last.text == "Agent Error: Agent timed out after 1 seconds."


def test_turn_budget_is_enforced(tmp_path: Path) -> None:
    client = ScriptedClient([_assistant(f"m{index}", {"type": "text", "text": str(index)}) for index in range(5)])

    result = AgentSession(client, EventChannel("s5")).run(_request(tmp_path, max_turns=2))

    assert not result.success
    assert "maximum of 2 turns" in (result.error or "")
    assert client.cancelled == ["session-1"]


def test_streamed_chunks_of_one_turn_count_once(tmp_path: Path) -> None:
    client = ScriptedClient(
        [
            _assistant("m1", {"type": "text", "text": "part one"}),
            _assistant("m1", {"type": "tool_use", "id": "t1", "name": "LS", "input": {"path": "."}}),
            {"type": "result", "subtype": "success", "result": "ok"},
        ]
    )

    result = AgentSession(client, EventChannel("s6")).run(_request(tmp_path, max_turns=1))

    assert result.success
    assert result.turns == 1


def test_error_max_turns_result_fails_the_session(tmp_path: Path) -> None:
    client = ScriptedClient([{"type": "result", "subtype": "error_max_turns"}])

    result = AgentSession(client, EventChannel("s7")).run(_request(tmp_path, max_turns=3))

    assert not result.success
    assert result.error == "Agent reached the maximum of 3 turns."


def test_abort_cancels_client_and_fails(tmp_path: Path) -> None:
    channel = EventChannel("s8")
    holder: dict[str, AgentSession] = {}

    def abort_on_first_message(event: Any) -> None:
        if event.kind is EventKind.MESSAGE:
            holder["session"].abort()

    channel.subscribe(abort_on_first_message)
    client = ScriptedClient(
        [
            _assistant("m1", {"type": "text", "text": "first"}),
            _assistant("m2", {"type": "text", "text": "second"}),
        ]
    )
    session = AgentSession(client, channel)
    holder["session"] = session

    result = session.run(_request(tmp_path))

    assert not result.success
    assert result.error == "Agent run was cancelled."
    assert client.cancelled == ["session-1"]
    assert "Agent: second" not in [event.text for event in channel.history]


def test_abort_before_run_never_starts_the_agent(tmp_path: Path) -> None:
    client = ScriptedClient([_assistant("m1", {"type": "text", "text": "first"})])
    session = AgentSession(client, EventChannel("s9"))

    session.abort()
    result = session.run(_request(tmp_path))

    assert not result.success
    assert result.error == "Agent run was cancelled."
    assert client.requests == []
    assert client.cancelled == []
