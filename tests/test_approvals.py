"""Approval gating: quorum, rejection, expiry, reminders"""
from datetime import timedelta

import pytest
from pymongo.errors import PyMongoError

from docflow.domain.enums import (
    ApprovalDecision, ApprovalStatus, ApproverType, HistoryKind, IntentKind, TransitionOutcome
)
from docflow.domain.errors import (
    ApprovalAlreadyResolvedError, ApprovalNotFoundError, ApproverNotEligibleError,
    TransitionAlreadyPendingError
)
from docflow.domain.models import CallerContext, WorkflowApproval

from .conftest import letter_draft


def pending_approval(engine, instance_id):
    status = engine.get_instance_status(instance_id)
    assert len(status.pending_approvals) == 1
    return status.pending_approvals[0]


class TestQuorum:
    def test_manager_approval_commits_gated_transition(self, engine, letter, author, manager, dispatcher):
        assert engine.request_transition(letter.instance_id, "submit", author).outcome == TransitionOutcome.COMMITTED

        result = engine.request_transition(letter.instance_id, "approve", author)
        assert result.outcome == TransitionOutcome.PENDING_APPROVAL
        assert result.current_state_id == "review"
        assert len(result.approvals) == 1
        row = result.approvals[0]
        assert (row.approver_type, row.approver_id, row.status) == (ApproverType.ROLE, "Manager", ApprovalStatus.PENDING)

        status = engine.get_instance_status(letter.instance_id)
        assert status.pending_transition_id == "approve"
        assert [a.approval_id for a in status.pending_approvals] == [row.approval_id]

        requested = dispatcher.of_kind(IntentKind.APPROVAL_REQUESTED)
        assert len(requested) == 1
        assert requested[0].recipients == ["mia"]
        assert requested[0].payload["requested_by"] == "alice"

        outcome = engine.resolve_approval(row.approval_id, ApprovalDecision.APPROVED, "Looks good", actor=manager)

        assert outcome.transition_outcome == TransitionOutcome.COMMITTED
        assert outcome.current_state_id == "approved"
        assert outcome.approval.status == ApprovalStatus.APPROVED
        assert outcome.approval.decided_by == "mia"

        history = engine.get_history(letter.instance_id)
        assert [(h.from_state_id, h.to_state_id) for h in history] == [("draft", "review"), ("review", "approved")]
        assert history[1].actor_id == "mia"

        instance = engine.instance_repo.get_instance(letter.instance_id)
        assert instance.pending_transition_id is None
        assert instance.state_data["approved"] is True
        assert instance.is_archived

        approved = dispatcher.of_kind(IntentKind.NOTIFY)
        assert [(n.template_key, n.recipients) for n in approved] == [("letter_approved", ["alice@example.com"])]

    def test_all_mode_needs_every_member(self, engine, definitions, author):
        draft = letter_draft()
        draft["transitions"][1]["approvals"] = [
            {"approver_type": "ROLE", "approver_id": "Legal", "mode": "ALL"},
            {"approver_type": "USER", "approver_id": "lena"},
        ]
        definitions.publish(draft)
        instance = engine.create_instance("Letter", "L1")
        engine.request_transition(instance.instance_id, "submit", author)

        result = engine.request_transition(instance.instance_id, "approve", author)

        rows = {a.approver_id: a for a in result.approvals}
        assert sorted(rows) == ["lars", "lena"]
        assert all(a.approver_type == ApproverType.USER for a in rows.values())

        first = engine.resolve_approval(
            rows["lars"].approval_id, ApprovalDecision.APPROVED, actor=CallerContext(user_id="lars")
        )
        assert first.transition_outcome == TransitionOutcome.PENDING_APPROVAL
        assert first.current_state_id == "review"

        second = engine.resolve_approval(
            rows["lena"].approval_id, ApprovalDecision.APPROVED, actor=CallerContext(user_id="lena")
        )
        assert second.transition_outcome == TransitionOutcome.COMMITTED
        assert second.current_state_id == "approved"

    def test_all_mode_with_no_members_is_denied(self, engine, definitions, author):
        draft = letter_draft()
        draft["transitions"][1]["approvals"] = [{"approver_type": "ROLE", "approver_id": "Vacant", "mode": "ALL"}]
        definitions.publish(draft)
        instance = engine.create_instance("Letter", "L1")
        engine.request_transition(instance.instance_id, "submit", author)

        result = engine.request_transition(instance.instance_id, "approve", author)

        assert result.outcome == TransitionOutcome.DENIED
        assert "Vacant" in result.reason
        assert engine.get_instance_status(instance.instance_id).pending_transition_id is None

    def test_group_member_may_resolve_any_mode_row(self, engine, definitions, author):
        draft = letter_draft()
        draft["transitions"][1]["approvals"] = [{"approver_type": "GROUP", "approver_id": "Board"}]
        definitions.publish(draft)
        instance = engine.create_instance("Letter", "L1")
        engine.request_transition(instance.instance_id, "submit", author)
        row = engine.request_transition(instance.instance_id, "approve", author).approvals[0]

        result = engine.resolve_approval(row.approval_id, ApprovalDecision.APPROVED, actor=CallerContext(user_id="bea"))

        assert result.transition_outcome == TransitionOutcome.COMMITTED

    def test_re_requesting_while_pending_is_rejected(self, engine, letter_in_review, author):
        engine.request_transition(letter_in_review.instance_id, "approve", author)
        with pytest.raises(TransitionAlreadyPendingError):
            engine.request_transition(letter_in_review.instance_id, "approve", author)

        assert len(engine.list_instance_approvals(letter_in_review.instance_id)) == 1

    def test_coordinator_request_is_idempotent(self, engine, letter_in_review, author):
        row = engine.request_transition(letter_in_review.instance_id, "approve", author).approvals[0]
        transition = engine.registry.get(letter_in_review.definition_id).transitions["approve"]

        rows, intents = engine.approvals.request_approvals(
            letter_in_review.instance_id, "approve", transition.approvals
        )

        assert [r.approval_id for r in rows] == [row.approval_id]
        assert intents == []


class TestResolveErrors:
    def test_unknown_approval(self, engine, manager):
        with pytest.raises(ApprovalNotFoundError):
            engine.resolve_approval("WFA-missing", ApprovalDecision.APPROVED, actor=manager)

    def test_ineligible_actor(self, engine, letter_in_review, author, outsider):
        row = engine.request_transition(letter_in_review.instance_id, "approve", author).approvals[0]

        with pytest.raises(ApproverNotEligibleError):
            engine.resolve_approval(row.approval_id, ApprovalDecision.APPROVED, actor=outsider)

        assert pending_approval(engine, letter_in_review.instance_id).status == ApprovalStatus.PENDING

    def test_resolving_twice_is_an_error_not_a_second_record(self, engine, letter_in_review, author, manager):
        row = engine.request_transition(letter_in_review.instance_id, "approve", author).approvals[0]
        engine.resolve_approval(row.approval_id, ApprovalDecision.APPROVED, actor=manager)

        with pytest.raises(ApprovalAlreadyResolvedError):
            engine.resolve_approval(row.approval_id, ApprovalDecision.APPROVED, actor=manager)

        assert len(engine.get_history(letter_in_review.instance_id)) == 2


class TestRejection:
    def test_rejection_abandons_and_allows_a_fresh_request(self, engine, letter_in_review, author, manager, dispatcher):
        row = engine.request_transition(letter_in_review.instance_id, "approve", author).approvals[0]

        result = engine.resolve_approval(row.approval_id, ApprovalDecision.REJECTED, "Wrong letterhead", actor=manager)

        assert result.transition_outcome == TransitionOutcome.REJECTED
        assert result.current_state_id == "review"
        assert result.approval.status == ApprovalStatus.REJECTED

        status = engine.get_instance_status(letter_in_review.instance_id)
        assert status.pending_transition_id is None
        assert status.pending_approvals == []

        history = engine.get_history(letter_in_review.instance_id)
        assert history[-1].kind == HistoryKind.TRANSITION_ABANDONED
        assert history[-1].metadata["reason"] == TransitionOutcome.REJECTED.value
        assert history[-1].comments == "Wrong letterhead"
        assert len(dispatcher.of_kind(IntentKind.TRANSITION_ABANDONED)) == 1

        again = engine.request_transition(letter_in_review.instance_id, "approve", author)
        assert again.outcome == TransitionOutcome.PENDING_APPROVAL
        assert again.approvals[0].approval_id != row.approval_id

    def test_rejection_cancels_siblings(self, engine, definitions, author):
        draft = letter_draft()
        draft["transitions"][1]["approvals"] = [{"approver_type": "ROLE", "approver_id": "Legal", "mode": "ALL"}]
        definitions.publish(draft)
        instance = engine.create_instance("Letter", "L1")
        engine.request_transition(instance.instance_id, "submit", author)
        rows = {a.approver_id: a for a in engine.request_transition(instance.instance_id, "approve", author).approvals}

        engine.resolve_approval(rows["lars"].approval_id, ApprovalDecision.REJECTED, actor=CallerContext(user_id="lars"))

        statuses = {a.approver_id: a.status for a in engine.list_instance_approvals(instance.instance_id)}
        assert statuses == {"lars": ApprovalStatus.REJECTED, "lena": ApprovalStatus.CANCELLED}
        with pytest.raises(ApprovalAlreadyResolvedError):
            engine.resolve_approval(rows["lena"].approval_id, ApprovalDecision.APPROVED, actor=CallerContext(user_id="lena"))


class TestExpiry:
    def test_overdue_approval_expires_and_escalates_once(self, engine, letter_in_review, author, clock, dispatcher):
        row = engine.request_transition(letter_in_review.instance_id, "approve", author).approvals[0]
        assert row.due_date == clock.now().replace(hour=10)

        clock.advance(minutes=61)
        summary = engine.check_expirations()

        assert summary["expired"] == 1
        expired = engine.approvals.repo.get_approval(row.approval_id)
        assert expired.status == ApprovalStatus.EXPIRED

        status = engine.get_instance_status(letter_in_review.instance_id)
        assert status.current_state.state_id == "review"
        assert status.pending_transition_id is None

        history = engine.get_history(letter_in_review.instance_id)
        assert history[-1].kind == HistoryKind.TRANSITION_ABANDONED
        assert history[-1].metadata["reason"] == TransitionOutcome.EXPIRED.value
        assert history[-1].actor_id == "system"

        escalations = dispatcher.of_kind(IntentKind.APPROVAL_ESCALATION)
        assert len(escalations) == 1
        assert escalations[0].recipients == ["ops@example.com"]

        clock.advance(minutes=30)
        engine.check_expirations()
        assert len(dispatcher.of_kind(IntentKind.APPROVAL_ESCALATION)) == 1

    def test_reminder_is_sent_once_per_offset(self, engine, letter_in_review, author, clock, dispatcher):
        row = engine.request_transition(letter_in_review.instance_id, "approve", author).approvals[0]

        clock.advance(minutes=10)
        assert engine.check_expirations()["reminded"] == 0

        clock.advance(minutes=25)
        assert engine.check_expirations()["reminded"] == 1
        assert engine.check_expirations()["reminded"] == 0

        reminders = dispatcher.of_kind(IntentKind.APPROVAL_REMINDER)
        assert len(reminders) == 1
        assert reminders[0].approval_id == row.approval_id
        assert reminders[0].recipients == ["mia"]
        assert engine.approvals.repo.get_approval(row.approval_id).reminders_sent == [30]

    def test_soft_deadline_escalates_but_stays_pending(self, engine, definitions, author, manager, clock, dispatcher):
        draft = letter_draft()
        draft["transitions"][1]["approvals"] = [{
            "approver_type": "ROLE",
            "approver_id": "Manager",
            "due_minutes": 15,
            "reminders": {"hard_deadline": False},
        }]
        definitions.publish(draft)
        instance = engine.create_instance("Letter", "L1")
        engine.request_transition(instance.instance_id, "submit", author)
        row = engine.request_transition(instance.instance_id, "approve", author).approvals[0]

        clock.advance(minutes=20)
        first = engine.check_expirations()
        second = engine.check_expirations()

        assert (first["escalated"], first["expired"], second["escalated"]) == (1, 0, 0)
        assert engine.approvals.repo.get_approval(row.approval_id).status == ApprovalStatus.PENDING
        assert dispatcher.of_kind(IntentKind.APPROVAL_ESCALATION)[0].recipients == ["mia"]

        result = engine.resolve_approval(row.approval_id, ApprovalDecision.APPROVED, actor=manager)
        assert result.transition_outcome == TransitionOutcome.COMMITTED

    def test_approvals_without_due_date_are_ignored(self, engine, definitions, author, clock):
        draft = letter_draft()
        draft["transitions"][1]["approvals"] = [{"approver_type": "ROLE", "approver_id": "Manager", "due_minutes": 0}]
        definitions.publish(draft)
        instance = engine.create_instance("Letter", "L1")
        engine.request_transition(instance.instance_id, "submit", author)
        row = engine.request_transition(instance.instance_id, "approve", author).approvals[0]

        clock.advance(minutes=100000)

        assert row.due_date is None
        assert engine.check_expirations() == {"reminded": 0, "escalated": 0, "expired": 0}


class TestApprovalQueries:
    def test_pending_for_approver(self, engine, letter_in_review, author, manager):
        row = engine.request_transition(letter_in_review.instance_id, "approve", author).approvals[0]

        pending = engine.get_pending_approvals(ApproverType.ROLE, "Manager")
        assert [a.approval_id for a in pending] == [row.approval_id]

        engine.resolve_approval(row.approval_id, ApprovalDecision.APPROVED, actor=manager)
        assert engine.get_pending_approvals(ApproverType.ROLE, "Manager") == []


    def test_inbox_is_ordered_by_due_date_before_limiting(self, engine, clock):
        now = clock.now()

        def row(approval_id, created_minutes, due_minutes):
            return WorkflowApproval(
                approval_id=approval_id,
                instance_id=f"WFI-{approval_id}",
                transition_id="approve",
                approver_type=ApproverType.ROLE,
                approver_id="Manager",
                due_date=now + timedelta(minutes=due_minutes) if due_minutes is not None else None,
                created_at=now + timedelta(minutes=created_minutes)
            )

        engine.approvals.repo.create_approvals([
            row("late", 0, 300), row("undated", 1, None), row("soon", 2, 30), row("sooner", 3, 10)
        ])

        inbox = engine.get_pending_approvals(ApproverType.ROLE, "Manager")
        first_two = engine.approvals.repo.list_pending_for_approver(ApproverType.ROLE, "Manager", limit=2)

        assert [a.approval_id for a in inbox] == ["sooner", "soon", "late", "undated"]
        assert [a.approval_id for a in first_two] == ["sooner", "soon"]


class TestFailedSettlement:
    """A decision whose transition cannot be settled stays open and can be retried"""

    @staticmethod
    def break_history(engine, monkeypatch):
        def broken_append(record):
            raise PyMongoError("history store unavailable")

        monkeypatch.setattr(engine.history.repo, "append", broken_append)

    def test_failed_rejection_reopens_the_approval(self, engine, letter_in_review, author, manager, monkeypatch):
        instance_id = letter_in_review.instance_id
        row = engine.request_transition(instance_id, "approve", author).approvals[0]
        self.break_history(engine, monkeypatch)

        with pytest.raises(PyMongoError):
            engine.resolve_approval(row.approval_id, ApprovalDecision.REJECTED, "No", actor=manager)
        monkeypatch.undo()

        status = engine.get_instance_status(instance_id)
        assert status.pending_transition_id == "approve"
        assert [a.approval_id for a in status.pending_approvals] == [row.approval_id]
        assert status.pending_approvals[0].decided_by is None

        retried = engine.resolve_approval(row.approval_id, ApprovalDecision.REJECTED, "No", actor=manager)
        assert retried.transition_outcome == TransitionOutcome.REJECTED
        assert engine.get_instance_status(instance_id).pending_transition_id is None

    def test_failed_rejection_reopens_cancelled_siblings(self, engine, definitions, author, monkeypatch):
        draft = letter_draft()
        draft["transitions"][1]["approvals"] = [{"approver_type": "ROLE", "approver_id": "Legal", "mode": "ALL"}]
        definitions.publish(draft)
        instance = engine.create_instance("Letter", "L1")
        engine.request_transition(instance.instance_id, "submit", author)
        rows = {a.approver_id: a for a in engine.request_transition(instance.instance_id, "approve", author).approvals}
        self.break_history(engine, monkeypatch)

        with pytest.raises(PyMongoError):
            engine.resolve_approval(
                rows["lars"].approval_id, ApprovalDecision.REJECTED, actor=CallerContext(user_id="lars")
            )
        monkeypatch.undo()

        statuses = {a.approver_id: a.status for a in engine.list_instance_approvals(instance.instance_id)}
        assert statuses == {"lars": ApprovalStatus.PENDING, "lena": ApprovalStatus.PENDING}

    def test_failed_quorum_commit_reopens_the_approval(self, engine, letter_in_review, author, manager, monkeypatch):
        instance_id = letter_in_review.instance_id
        row = engine.request_transition(instance_id, "approve", author).approvals[0]
        self.break_history(engine, monkeypatch)

        with pytest.raises(PyMongoError):
            engine.resolve_approval(row.approval_id, ApprovalDecision.APPROVED, actor=manager)
        monkeypatch.undo()

        status = engine.get_instance_status(instance_id)
        assert status.current_state.state_id == "review"
        assert status.pending_transition_id == "approve"
        assert [a.status for a in status.pending_approvals] == [ApprovalStatus.PENDING]
        assert len(engine.get_history(instance_id)) == 1

        retried = engine.resolve_approval(row.approval_id, ApprovalDecision.APPROVED, actor=manager)
        assert retried.transition_outcome == TransitionOutcome.COMMITTED
        assert retried.current_state_id == "approved"

    def test_failed_expiry_is_retried_by_the_next_sweep(
        self, engine, letter_in_review, author, clock, dispatcher, monkeypatch
    ):
        row = engine.request_transition(letter_in_review.instance_id, "approve", author).approvals[0]
        clock.advance(minutes=61)
        self.break_history(engine, monkeypatch)

        with pytest.raises(PyMongoError):
            engine.check_expirations()
        monkeypatch.undo()

        assert engine.approvals.repo.get_approval(row.approval_id).status == ApprovalStatus.PENDING
        assert dispatcher.of_kind(IntentKind.APPROVAL_ESCALATION) == []

        assert engine.check_expirations()["expired"] == 1
        assert engine.get_instance_status(letter_in_review.instance_id).pending_transition_id is None
        assert len(dispatcher.of_kind(IntentKind.APPROVAL_ESCALATION)) == 1


class TestAutomationRequestsApproval:
    def test_entering_review_opens_the_gate(self, engine, definitions, author, dispatcher):
        draft = letter_draft()
        draft["states"][1]["automation_rules"] = [{"kind": "request_approval", "transition_id": "approve"}]
        definitions.publish(draft)
        instance = engine.create_instance("Letter", "L1")

        result = engine.request_transition(instance.instance_id, "submit", author)

        assert result.outcome == TransitionOutcome.COMMITTED
        status = engine.get_instance_status(instance.instance_id)
        assert status.current_state.state_id == "review"
        assert status.pending_transition_id == "approve"
        assert len(status.pending_approvals) == 1
        assert len(dispatcher.of_kind(IntentKind.APPROVAL_REQUESTED)) == 1
