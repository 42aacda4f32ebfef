"""Tests for the draft approval state machine."""

from __future__ import annotations

import threading

import pytest

from utils.approval import ApprovalStateMachine
from utils.audit_log import read_audit
from utils.errors import InvalidTransition, PipelineError
from utils.release_notes_models import ApprovalStatus, ReleaseNoteDraft


class RecordingHook:
    def __init__(self, fail: Exception = None):
        self.calls = []
        self.fail = fail

    def __call__(self, repository, draft):
        self.calls.append((repository.name, draft.id, draft.status))
        if self.fail is not None:
            raise self.fail


@pytest.fixture
def draft(store, repo) -> ReleaseNoteDraft:
    d = ReleaseNoteDraft(repository_id=repo.id, internal_text="internal v1", external_text="external v1")
    store.save_draft(d)
    return d


@pytest.fixture
def audit_root(tmp_path):
    return str(tmp_path / "audit")


def test_edit_keeps_history(store, draft, audit_root):
    machine = ApprovalStateMachine(store, audit_root=audit_root)
    machine.edit(draft.id, external_text="external v2", editor="dana")
    updated = machine.edit(draft.id, internal_text="internal v3")
    assert updated.status == ApprovalStatus.EDITED
    assert updated.internal_text == "internal v3"
    assert updated.external_text == "external v2"
    assert [v.external_text for v in updated.edit_history] == ["external v1", "external v2"]
    assert updated.edit_history[0].status == ApprovalStatus.DRAFT
    assert updated.edit_history[0].editor == "dana"
    assert store.get_draft(draft.id) == updated


def test_edit_requires_some_text(store, draft, audit_root):
    with pytest.raises(ValueError):
        ApprovalStateMachine(store, audit_root=audit_root).edit(draft.id)


def test_approve_fires_hook_once(store, repo, draft, audit_root):
    hook = RecordingHook()
    machine = ApprovalStateMachine(store, hook, audit_root=audit_root)
    approved = machine.approve(draft.id, actor="lee")
    assert approved.status == ApprovalStatus.APPROVED
    assert approved.published_at is not None
    assert hook.calls == [("octo/widgets", draft.id, ApprovalStatus.APPROVED)]
    with pytest.raises(InvalidTransition):
        machine.approve(draft.id)
    assert len(hook.calls) == 1


def test_terminal_states_reject_transitions(store, draft, audit_root):
    machine = ApprovalStateMachine(store, RecordingHook(), audit_root=audit_root)
    machine.reject(draft.id, actor="lee", reason="too vague")
    for action in (machine.approve, machine.reject):
        with pytest.raises(InvalidTransition) as exc:
            action(draft.id)
        assert exc.value.current == "rejected"
    with pytest.raises(InvalidTransition):
        machine.edit(draft.id, internal_text="late edit")
    assert store.get_draft(draft.id).status == ApprovalStatus.REJECTED


def test_inactive_draft_is_frozen(store, repo, draft, audit_root):
    store.delete_repository(repo.id)
    machine = ApprovalStateMachine(store, audit_root=audit_root)
    with pytest.raises(InvalidTransition) as exc:
        machine.approve(draft.id)
    assert "inactive" in exc.value.current


def test_missing_draft(store, audit_root):
    with pytest.raises(PipelineError) as exc:
        ApprovalStateMachine(store, audit_root=audit_root).approve("nope")
    assert exc.value.code == "NOT_FOUND"


def test_hook_failure_keeps_approval(store, repo, draft, audit_root):
    hook = RecordingHook(fail=RuntimeError("release API down"))
    approved = ApprovalStateMachine(store, hook, audit_root=audit_root).approve(draft.id)
    assert approved.status == ApprovalStatus.APPROVED
    assert approved.published_at is None
    assert "release API down" in approved.publish_error
    assert store.get_draft(draft.id).publish_error == approved.publish_error
    actions = [(e["action"], e["result"]) for e in read_audit(repo.id, root=audit_root)]
    assert actions == [("approve", "OK"), ("publish", "FAILED")]


def test_audit_records_every_attempt(store, repo, draft, audit_root):
    machine = ApprovalStateMachine(store, audit_root=audit_root)
    machine.edit(draft.id, internal_text="x", editor="dana")
    machine.reject(draft.id, actor="lee")
    with pytest.raises(InvalidTransition):
        machine.approve(draft.id, actor="sam")
    entries = read_audit(repo.id, root=audit_root)
    assert [(e["action"], e["result"], e["actor"]) for e in entries] == [
        ("edit", "OK", "dana"),
        ("reject", "OK", "lee"),
        ("approve", "INVALID", "sam"),
    ]
    assert all(e["draft"] == draft.id for e in entries)


def test_concurrent_approve_and_reject_have_one_winner(store, draft, audit_root):
    hook = RecordingHook()
    machine = ApprovalStateMachine(store, hook, audit_root=audit_root)
    barrier = threading.Barrier(8)
    outcomes = []
    outcomes_lock = threading.Lock()

    def worker(i):
        barrier.wait()
        try:
            if i % 2:
                machine.approve(draft.id)
            else:
                machine.reject(draft.id)
            result = "ok"
        except InvalidTransition:
            result = "invalid"
        with outcomes_lock:
            outcomes.append(result)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count("ok") == 1
    final = store.get_draft(draft.id)
    assert final.status in (ApprovalStatus.APPROVED, ApprovalStatus.REJECTED)
    assert len(hook.calls) == (1 if final.status == ApprovalStatus.APPROVED else 0)


def test_terminal_drafts_release_their_locks(store, repo, audit_root):
    machine = ApprovalStateMachine(store, RecordingHook(), audit_root=audit_root)
    drafts = []
    for i in range(3):
        d = ReleaseNoteDraft(repository_id=repo.id, internal_text=f"internal {i}", external_text=f"external {i}")
        store.save_draft(d)
        drafts.append(d)

    machine.edit(drafts[0].id, external_text="edited")
    machine.approve(drafts[0].id)
    machine.reject(drafts[1].id)
    ApprovalStateMachine(store, audit_root=audit_root).approve(drafts[2].id)
    with pytest.raises(InvalidTransition):
        machine.approve(drafts[2].id)

    assert machine._locks == {}
