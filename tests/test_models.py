import pytest

from quill.engine.models import (
    PatchPart,
    SnapshotPart,
    StepFinishPart,
    TokenUsage,
    ToolPart,
    ToolStateCompleted,
    ToolStateError,
    ToolStatePending,
    ToolStatus,
    ascending_id,
    part_from_dict,
    part_to_dict,
    tool_state_from_dict,
)


def _base(**kwargs):
    return {"id": "prt_1", "session_id": "ses_1", "message_id": "msg_1", **kwargs}


def test_snapshot_part_survives_storage_form() -> None:
    part = SnapshotPart(**_base(snapshot="4b825dc6"))

    data = part_to_dict(part)

    assert data["type"] == "snapshot"
    assert part_from_dict(data) == part


def test_patch_part_survives_storage_form() -> None:
    part = PatchPart(**_base(hash="4b825dc6", files=["src/a.py", "src/b.py"]))

    data = part_to_dict(part)

    assert data["type"] == "patch"
    restored = part_from_dict(data)
    assert restored == part
    assert restored.files == ["src/a.py", "src/b.py"]


def test_pending_tool_state_survives_storage_form() -> None:
    part = ToolPart(**_base(call_id="cmd-1", tool="bash",
                            state=ToolStatePending(input={"command": "ls"}, raw='{"command":"ls"}')))

    restored = part_from_dict(part_to_dict(part))

    assert isinstance(restored.state, ToolStatePending)
    assert restored.state.raw == '{"command":"ls"}'
    assert restored.status is ToolStatus.PENDING
    assert restored == part


def test_finished_tool_states_restore_their_variant() -> None:
    completed = ToolStateCompleted(input={}, output="ok", title="ls", start=1, end=2)
    failed = ToolStateError(input={}, error="Command failed", start=1, end=2)

    assert tool_state_from_dict(part_to_dict(ToolPart(**_base(state=completed)))["state"]) == completed
    assert tool_state_from_dict(part_to_dict(ToolPart(**_base(state=failed)))["state"]) == failed


def test_step_finish_tokens_restore_as_token_usage() -> None:
    part = StepFinishPart(**_base(reason="end_turn", cost=0.5, tokens=TokenUsage(input=3, output=4)))

    restored = part_from_dict(part_to_dict(part))

    assert isinstance(restored.tokens, TokenUsage)
    assert restored.tokens.total == 7
    assert restored == part


def test_unknown_types_are_rejected() -> None:
    with pytest.raises(ValueError, match="Unknown part type"):
        part_from_dict(_base(type="hologram"))
    with pytest.raises(ValueError, match="Unknown tool state"):
        tool_state_from_dict({"status": "teleported"})


def test_ascending_ids_sort_in_creation_order() -> None:
    ids = [ascending_id("prt") for _ in range(50)]

    assert ids == sorted(ids)
    assert len(set(ids)) == 50
    assert all(i.startswith("prt_") for i in ids)
