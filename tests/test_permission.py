import asyncio
from unittest.mock import AsyncMock

import pytest

from quill.engine.errors import PermissionDeniedError, PermissionRejectedError
from quill.engine.models import PermissionAction, PermissionRule
from quill.engine.permission import PermissionNegotiator, evaluate, wildcard_match


async def _ask(negotiator, session="ses_1", type="bash", pattern=("ls",), **kwargs):
    return asyncio.create_task(negotiator.ask(
        session_id=session,
        type=type,
        pattern=list(pattern),
        message_id="msg_1",
        **kwargs,
    ))


async def _pending(negotiator, count, session_id=None):
    for _ in range(100):
        requests = negotiator.list_pending(session_id)
        if len(requests) >= count:
            return requests
        await asyncio.sleep(0)
    raise AssertionError(f"expected {count} pending request(s)")


@pytest.mark.asyncio
async def test_ask_publishes_request_and_once_resolves_it() -> None:
    callback = AsyncMock()
    negotiator = PermissionNegotiator(callback)

    task = await _ask(negotiator, call_id="cmd-1", metadata={"command": "ls"})
    [request] = await _pending(negotiator, 1)

    event = callback.await_args_list[0].args[0]
    assert event["event"] == "permission_asked"
    assert event["request_id"] == request.id
    assert event["patterns"] == ["ls"]
    assert event["call_id"] == "cmd-1"

    assert negotiator.respond("ses_1", request.id, "once") is True
    await task
    assert negotiator.list_pending() == []
    assert not negotiator.is_approved("ses_1", "bash")


@pytest.mark.asyncio
async def test_reject_raises_typed_error_and_leaves_others_pending() -> None:
    negotiator = PermissionNegotiator()
    first = await _ask(negotiator, call_id="cmd-1", metadata={"command": "rm -rf /"})
    second = await _ask(negotiator, pattern=["pwd"], call_id="cmd-2")
    requests = await _pending(negotiator, 2)

    negotiator.respond("ses_1", requests[0].id, "reject")

    with pytest.raises(PermissionRejectedError) as excinfo:
        await first
    assert excinfo.value.call_id == "cmd-1"
    assert excinfo.value.permission_id == requests[0].id
    assert excinfo.value.metadata == {"command": "rm -rf /"}
    assert not second.done()
    assert [r.id for r in negotiator.list_pending()] == [requests[1].id]

    negotiator.respond("ses_1", requests[1].id, "once")
    await second


@pytest.mark.asyncio
async def test_always_cascades_to_same_session_and_type() -> None:
    callback = AsyncMock()
    negotiator = PermissionNegotiator(callback)
    bash_a = await _ask(negotiator, pattern=["ls"])
    bash_b = await _ask(negotiator, pattern=["cat x"])
    edit = await _ask(negotiator, type="edit", pattern=["a.py"])
    other_session = await _ask(negotiator, session="ses_2", pattern=["ls"])
    requests = await _pending(negotiator, 4)

    first_bash = next(r for r in requests if r.session_id == "ses_1" and r.type == "bash")
    negotiator.respond("ses_1", first_bash.id, "always")

    await asyncio.gather(bash_a, bash_b)
    assert not edit.done()
    assert not other_session.done()
    assert negotiator.is_approved("ses_1", "bash")

    asked_before = sum(
        1 for call in callback.await_args_list if call.args[0]["event"] == "permission_asked"
    )
    await negotiator.ask(session_id="ses_1", type="bash", pattern=["make"], message_id="msg_2")
    asked_after = sum(
        1 for call in callback.await_args_list if call.args[0]["event"] == "permission_asked"
    )
    assert asked_after == asked_before

    negotiator.shutdown()
    for task in (edit, other_session):
        with pytest.raises(PermissionRejectedError):
            await task


@pytest.mark.asyncio
async def test_shutdown_rejects_everything_pending() -> None:
    negotiator = PermissionNegotiator()
    tasks = [await _ask(negotiator, session=f"ses_{i}") for i in range(3)]
    await _pending(negotiator, 3)

    assert negotiator.shutdown() == 3

    results = await asyncio.gather(*tasks, return_exceptions=True)
    assert all(isinstance(r, PermissionRejectedError) for r in results)
    assert negotiator.list_pending() == []


@pytest.mark.asyncio
async def test_respond_to_unknown_request_returns_false() -> None:
    negotiator = PermissionNegotiator()
    assert negotiator.respond("ses_1", "per_missing", "once") is False


@pytest.mark.asyncio
async def test_cancelled_ask_is_forgotten() -> None:
    negotiator = PermissionNegotiator()
    task = await _ask(negotiator)
    await _pending(negotiator, 1)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert negotiator.list_pending() == []


@pytest.mark.asyncio
async def test_allow_rules_skip_the_prompt() -> None:
    callback = AsyncMock()
    negotiator = PermissionNegotiator(callback)
    rules = [PermissionRule("bash", "git *", PermissionAction.ALLOW)]

    await negotiator.ask(
        session_id="ses_1", type="bash", pattern=["git status"],
        message_id="msg_1", ruleset=rules,
    )
    callback.assert_not_awaited()


@pytest.mark.asyncio
async def test_deny_rule_raises_without_prompt() -> None:
    callback = AsyncMock()
    negotiator = PermissionNegotiator(callback)
    rules = [
        PermissionRule("bash", "*", PermissionAction.ALLOW),
        PermissionRule("bash", "rm *", PermissionAction.DENY),
    ]

    with pytest.raises(PermissionDeniedError) as excinfo:
        await negotiator.ask(
            session_id="ses_1", type="bash", pattern=["ls", "rm -rf build"],
            message_id="msg_1", call_id="cmd-9", ruleset=rules,
        )
    assert isinstance(excinfo.value, PermissionRejectedError)
    assert excinfo.value.pattern == "rm -rf build"
    assert excinfo.value.call_id == "cmd-9"
    callback.assert_not_awaited()


@pytest.mark.asyncio
async def test_mixed_allow_and_ask_still_prompts() -> None:
    negotiator = PermissionNegotiator()
    rules = [PermissionRule("edit", "src/*", PermissionAction.ALLOW)]
    task = await _ask(negotiator, type="edit", pattern=["src/a.py", "setup.cfg"], ruleset=rules)
    [request] = await _pending(negotiator, 1)
    assert request.pattern == ["src/a.py", "setup.cfg"]
    negotiator.respond("ses_1", request.id, "once")
    await task


def test_wildcards_are_literal_apart_from_star_and_question_mark() -> None:
    assert wildcard_match("git status", "git *")
    assert wildcard_match("a.py", "?.py")
    assert not wildcard_match("ab.py", "?.py")
    assert wildcard_match("ls [a]", "ls [a]")
    assert not wildcard_match("ls a", "ls [a]")
    assert wildcard_match("multi\nline", "multi*")


def test_last_matching_rule_wins() -> None:
    rules = [
        PermissionRule("*", "*", PermissionAction.ASK),
        PermissionRule("bash", "git *", PermissionAction.ALLOW),
        PermissionRule("bash", "git push*", PermissionAction.DENY),
    ]
    assert evaluate("bash", "git status", rules) is PermissionAction.ALLOW
    assert evaluate("bash", "git push origin", rules) is PermissionAction.DENY
    assert evaluate("edit", "a.py", rules) is PermissionAction.ASK
    assert evaluate("edit", "a.py", []) is PermissionAction.ASK
