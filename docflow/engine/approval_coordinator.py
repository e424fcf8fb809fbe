"""Approval Coordinator - Approval rows, quorum, reminders and expiry"""
from itertools import groupby
from typing import Any, Dict, List, Optional, Protocol, Set, Tuple

from pymongo.errors import PyMongoError

from ..config.settings import settings
from ..domain.models import (
    ApproverSpec, CallerContext, ReminderSettings, SideEffectIntent, WorkflowApproval
)
from ..domain.enums import (
    ApprovalDecision, ApprovalMode, ApprovalStatus, ApproverType, IntentKind, TransitionOutcome
)
from ..domain.errors import (
    ApprovalAlreadyResolvedError, ApprovalNotFoundError, ApproverNotEligibleError,
    ApproverResolutionError, DomainError
)
from ..repositories.approval_repo import ApprovalRepository
from ..utils.idgen import generate_approval_id
from ..utils.time import add_minutes, format_iso, is_overdue, minutes_until
from ..utils.logger import get_logger
from .collaborators import Clock, PermissionResolver, SystemClock
from .instance_locks import InstanceLockRegistry

logger = get_logger(__name__)

SYSTEM_ACTOR_ID = "system"


class ApprovalListener(Protocol):
    """Callbacks the coordinator fires when a gated transition is decided"""

    def on_approval_quorum_reached(
        self,
        instance_id: str,
        transition_id: str,
        actor_id: str,
        comments: Optional[str] = None
    ) -> None:
        ...

    def on_approval_rejected_or_expired(
        self,
        instance_id: str,
        transition_id: str,
        outcome: TransitionOutcome,
        actor_id: str,
        comments: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        ...


class ApprovalCoordinator:
    """
    Owns approval rows for gated transitions

    Every mutation runs under the instance lock shared with the engine, so the
    engine's callbacks re-enter the same (reentrant) lock. Notification intents
    go on the lock's deferred queue and are dispatched once it is released.
    """

    def __init__(
        self,
        repo: Optional[ApprovalRepository] = None,
        permission_resolver: Optional[PermissionResolver] = None,
        locks: Optional[InstanceLockRegistry] = None,
        clock: Optional[Clock] = None
    ):
        self.repo = repo or ApprovalRepository()
        self.permission_resolver = permission_resolver
        self.locks = locks or InstanceLockRegistry()
        self.clock = clock or SystemClock()
        self._listener: Optional[ApprovalListener] = None

    def bind(self, listener: ApprovalListener) -> None:
        """Register the engine as the quorum/abandon listener"""
        self._listener = listener

    # =========================================================================
    # Requesting
    # =========================================================================

    def request_approvals(
        self,
        instance_id: str,
        transition_id: str,
        approver_specs: List[ApproverSpec]
    ) -> Tuple[List[WorkflowApproval], List[SideEffectIntent]]:
        """
        Create approval rows for a gated transition

        Re-requesting while rows are still pending returns the existing rows
        and creates nothing.

        Returns:
            (approval rows, APPROVAL_REQUESTED intents)
        """
        with self.locks.hold(instance_id):
            existing = self.repo.list_for_transition(instance_id, transition_id, [ApprovalStatus.PENDING])
            if existing:
                logger.info(
                    "Approvals already pending; not creating duplicates",
                    extra={"instance_id": instance_id, "transition_id": transition_id}
                )
                return existing, []

            now = self.clock.now()
            approvals: List[WorkflowApproval] = []
            recipients_by_id: Dict[str, List[str]] = {}
            seen: Set[Tuple[ApproverType, str]] = set()

            for spec in approver_specs:
                members = self._resolve_members(spec.approver_type, spec.approver_id)

                if spec.approver_type != ApproverType.USER and spec.mode == ApprovalMode.ALL:
                    if not members:
                        raise ApproverResolutionError(
                            f"{spec.approver_type.value} {spec.approver_id} has no members to approve",
                            details={"transition_id": transition_id, "approver_id": spec.approver_id}
                        )
                    targets = [(ApproverType.USER, member, [member]) for member in sorted(members)]
                else:
                    targets = [(spec.approver_type, spec.approver_id, sorted(members))]

                due_minutes = spec.due_minutes if spec.due_minutes is not None else settings.default_approval_due_minutes
                reminders = spec.reminders or ReminderSettings(
                    reminder_minutes_before_due=settings.approval_reminder_minutes_list
                )

                for approver_type, approver_id, recipients in targets:
                    if (approver_type, approver_id) in seen:
                        continue
                    seen.add((approver_type, approver_id))

                    approval = WorkflowApproval(
                        approval_id=generate_approval_id(),
                        instance_id=instance_id,
                        transition_id=transition_id,
                        approver_type=approver_type,
                        approver_id=approver_id,
                        status=ApprovalStatus.PENDING,
                        due_date=add_minutes(now, due_minutes) if due_minutes > 0 else None,
                        reminder_settings=reminders,
                        created_at=now,
                        updated_at=now
                    )
                    approvals.append(approval)
                    recipients_by_id[approval.approval_id] = recipients

            self.repo.create_approvals(approvals)

        intents = [
            SideEffectIntent(
                kind=IntentKind.APPROVAL_REQUESTED,
                template_key="approval_requested",
                recipients=recipients_by_id[a.approval_id],
                payload={
                    "approver_type": a.approver_type.value,
                    "approver_id": a.approver_id,
                    "due_date": format_iso(a.due_date) if a.due_date else None
                },
                instance_id=instance_id,
                transition_id=transition_id,
                approval_id=a.approval_id
            )
            for a in approvals
        ]
        return approvals, intents

    # =========================================================================
    # Resolving
    # =========================================================================

    def resolve(
        self,
        approval_id: str,
        decision: ApprovalDecision,
        comments: Optional[str] = None,
        actor: Optional[CallerContext] = None
    ) -> Tuple[WorkflowApproval, TransitionOutcome]:
        """
        Record one approver's decision

        A rejection cancels the pending siblings and abandons the transition.
        An approval that leaves no sibling pending commits the transition.

        Returns:
            (updated approval, outcome for the gated transition)
        """
        approval = self.repo.get_approval(approval_id)
        if not approval:
            raise ApprovalNotFoundError(f"Approval {approval_id} not found")

        with self.locks.hold(approval.instance_id):
            approval = self.repo.get_approval(approval_id)
            if approval.status.is_terminal:
                raise ApprovalAlreadyResolvedError(
                    f"Approval {approval_id} is already {approval.status.value}",
                    details={"approval_id": approval_id, "status": approval.status.value}
                )

            if actor is not None and not self.is_eligible(actor, approval):
                raise ApproverNotEligibleError(
                    f"{actor.user_id} cannot resolve approval {approval_id}",
                    details={"approval_id": approval_id, "approver_id": approval.approver_id}
                )

            actor_id = actor.user_id if actor else SYSTEM_ACTOR_ID
            now = self.clock.now()
            status = ApprovalStatus.APPROVED if decision == ApprovalDecision.APPROVED else ApprovalStatus.REJECTED

            updated = self.repo.resolve(approval_id, status, now, decided_by=actor_id, comments=comments)
            if updated is None:
                raise ApprovalAlreadyResolvedError(f"Approval {approval_id} is no longer pending")

            logger.info(
                f"Approval {status.value.lower()}",
                extra={
                    "approval_id": approval_id,
                    "instance_id": approval.instance_id,
                    "transition_id": approval.transition_id,
                    "actor_id": actor_id
                }
            )

            if status == ApprovalStatus.REJECTED:
                cancelled: List[str] = []
                try:
                    cancelled = self.repo.cancel_pending(approval.instance_id, approval.transition_id, now)
                    self._require_listener().on_approval_rejected_or_expired(
                        approval.instance_id,
                        approval.transition_id,
                        TransitionOutcome.REJECTED,
                        actor_id,
                        comments=comments,
                        metadata={"approval_id": approval_id}
                    )
                except (PyMongoError, DomainError):
                    self._reopen(approval, [approval_id] + cancelled, now)
                    raise
                return updated, TransitionOutcome.REJECTED

            remaining = self.repo.list_for_transition(
                approval.instance_id, approval.transition_id, [ApprovalStatus.PENDING]
            )
            if remaining:
                return updated, TransitionOutcome.PENDING_APPROVAL

            try:
                self._require_listener().on_approval_quorum_reached(
                    approval.instance_id, approval.transition_id, actor_id, comments=comments
                )
            except (PyMongoError, DomainError):
                self._reopen(approval, [approval_id], now)
                raise
            return updated, TransitionOutcome.COMMITTED

    def is_eligible(self, actor: CallerContext, approval: WorkflowApproval) -> bool:
        """Whether the actor is (one of) the approver(s) a row is addressed to"""
        if approval.approver_type == ApproverType.USER:
            return actor.user_id == approval.approver_id
        if approval.approver_type == ApproverType.ROLE and approval.approver_id in actor.roles:
            return True
        if approval.approver_type == ApproverType.GROUP and approval.approver_id in actor.groups:
            return True
        return actor.user_id in self._resolve_members(approval.approver_type, approval.approver_id)

    # =========================================================================
    # Reminders & Expiry
    # =========================================================================

    def check_expirations(self) -> Dict[str, int]:
        """
        Sweep pending approvals with a due date

        - Past due with a hard deadline: mark EXPIRED, cancel siblings, abandon
          the transition, escalate once
        - Past due with a soft deadline: stay PENDING, escalate once
        - Not yet due: send each configured reminder once

        Returns:
            Counts of what the sweep did
        """
        now = self.clock.now()
        summary = {"reminded": 0, "escalated": 0, "expired": 0}

        candidates = sorted(self.repo.list_pending_with_due_date(), key=lambda a: a.instance_id)
        for instance_id, group in groupby(candidates, key=lambda a: a.instance_id):
            with self.locks.hold(instance_id) as deferred:
                for candidate in group:
                    approval = self.repo.get_approval(candidate.approval_id)
                    if not approval or approval.status != ApprovalStatus.PENDING:
                        continue

                    if is_overdue(approval.due_date, now):
                        if approval.reminder_settings.hard_deadline:
                            if self._expire(approval, now, deferred):
                                summary["expired"] += 1
                                summary["escalated"] += 1
                        elif approval.escalated_at is None and self.repo.mark_escalated(approval.approval_id, now):
                            deferred.append(self._escalation_intent(approval))
                            summary["escalated"] += 1
                        continue

                    if self._remind(approval, now, deferred):
                        summary["reminded"] += 1

        if any(summary.values()):
            logger.info(f"Approval sweep: {summary}")
        return summary

    def _expire(self, approval: WorkflowApproval, now, deferred: List[SideEffectIntent]) -> bool:
        expired = self.repo.resolve(approval.approval_id, ApprovalStatus.EXPIRED, now, decided_by=SYSTEM_ACTOR_ID)
        if expired is None:
            return False

        logger.warning(
            "Approval expired",
            extra={
                "approval_id": approval.approval_id,
                "instance_id": approval.instance_id,
                "transition_id": approval.transition_id
            }
        )
        cancelled: List[str] = []
        try:
            cancelled = self.repo.cancel_pending(approval.instance_id, approval.transition_id, now)
            self._require_listener().on_approval_rejected_or_expired(
                approval.instance_id,
                approval.transition_id,
                TransitionOutcome.EXPIRED,
                SYSTEM_ACTOR_ID,
                metadata={"approval_id": approval.approval_id}
            )
        except (PyMongoError, DomainError):
            self._reopen(approval, [approval.approval_id] + cancelled, now)
            raise
        deferred.append(self._escalation_intent(approval))
        return True

    def _remind(self, approval: WorkflowApproval, now, deferred: List[SideEffectIntent]) -> bool:
        """Send at most one reminder per sweep; mark every crossed offset as sent"""
        remaining = minutes_until(approval.due_date, now)
        crossed = [
            m for m in approval.reminder_settings.reminder_minutes_before_due
            if m not in approval.reminders_sent and remaining <= m
        ]
        if not crossed:
            return False

        for minutes in crossed:
            self.repo.mark_reminder_sent(approval.approval_id, minutes, now)

        deferred.append(SideEffectIntent(
            kind=IntentKind.APPROVAL_REMINDER,
            template_key="approval_reminder",
            recipients=self._recipients(approval),
            payload={
                "minutes_remaining": remaining,
                "due_date": format_iso(approval.due_date)
            },
            instance_id=approval.instance_id,
            transition_id=approval.transition_id,
            approval_id=approval.approval_id
        ))
        return True

    def _escalation_intent(self, approval: WorkflowApproval) -> SideEffectIntent:
        recipients = list(approval.reminder_settings.escalation_recipients) or self._recipients(approval)
        return SideEffectIntent(
            kind=IntentKind.APPROVAL_ESCALATION,
            template_key="approval_escalation",
            recipients=recipients,
            payload={
                "approver_type": approval.approver_type.value,
                "approver_id": approval.approver_id,
                "due_date": format_iso(approval.due_date) if approval.due_date else None,
                "hard_deadline": approval.reminder_settings.hard_deadline
            },
            instance_id=approval.instance_id,
            transition_id=approval.transition_id,
            approval_id=approval.approval_id
        )

    # =========================================================================
    # Queries
    # =========================================================================

    def get_pending_approvals(self, approver_type: ApproverType, approver_id: str) -> List[WorkflowApproval]:
        """Pending approvals addressed to an approver"""
        return self.repo.list_pending_for_approver(approver_type, approver_id)

    def list_for_instance(
        self,
        instance_id: str,
        statuses: Optional[List[ApprovalStatus]] = None
    ) -> List[WorkflowApproval]:
        """Approvals of an instance, newest first"""
        return self.repo.list_for_instance(instance_id, statuses)

    def pending_for_transition(self, instance_id: str, transition_id: str) -> List[WorkflowApproval]:
        return self.repo.list_for_transition(instance_id, transition_id, [ApprovalStatus.PENDING])

    # =========================================================================
    # Helpers
    # =========================================================================

    def _resolve_members(self, approver_type: ApproverType, approver_id: str) -> Set[str]:
        if self.permission_resolver is None:
            return {approver_id} if approver_type == ApproverType.USER else set()
        return set(self.permission_resolver.resolve_approvers(approver_type, approver_id))

    def _recipients(self, approval: WorkflowApproval) -> List[str]:
        return sorted(self._resolve_members(approval.approver_type, approval.approver_id))

    def _reopen(self, approval: WorkflowApproval, approval_ids: List[str], now) -> None:
        """Undo a decision whose transition could not be settled, so it can be retried"""
        logger.error(
            "Settling the gated transition failed; reopening approvals",
            extra={
                "instance_id": approval.instance_id,
                "transition_id": approval.transition_id,
                "approval_id": approval.approval_id
            }
        )
        self.repo.reopen(approval_ids, now)
    
    def _require_listener(self) -> ApprovalListener:
        if self._listener is None:
            raise RuntimeError("ApprovalCoordinator has no listener bound")
        return self._listener
