"""
Core processor: runs the decision pipeline for one inbound message.
  1. Fetch + classify in the principal's timezone (not scheduling -> ignored, nothing written)
  2. Load or create the thread's conversation
  3. Policy gate: automation disabled -> pending_approval
  4. Breaker gate: breaker open -> pending_approval (checked before scoring)
  5. Score, persist the assessment, feed the breaker
  6. Act on the recommendation: auto-respond / request approval / decline
  7. Audit the outcome, then advance the conversation
"""

import asyncio
import functools
import logging
import sqlite3
import time
from dataclasses import replace
from datetime import datetime
from typing import Callable, Optional

import database as db
import drafter
from audit_ledger import AuditLedger
from autonomy_engine import DEFAULT_SCORING, ScoringPolicy, assess
from circuit_breaker import CircuitBreaker
from config import load_config
from conversation_state import ConversationStateManager
from errors import AuditWriteFailure, CollaboratorFailure, ConversationNotFound, InvalidTransition
from models import (
    AuditAction,
    AvailabilityResult,
    Classification,
    ConfidenceAssessment,
    ConversationState,
    ConversationStatus,
    InboundMessage,
    NewAuditEntry,
    OrchestratorResult,
    Policy,
    Recommendation,
    RequestKind,
    ResultAction,
    TimeInterval,
)

logger = logging.getLogger(__name__)

S = ConversationStatus

ERR_COLLABORATOR = "collaborator_failure"
ERR_AUDIT_WRITE = "audit_write_failed"
ERR_UNAUDITED_SEND = "unaudited_send"
ERR_INVALID_TRANSITION = "invalid_transition"
ERR_TIMEOUT = "timeout"


class DecisionOrchestrator:
    """
    Composes the scorer, conversation store, circuit breaker and audit ledger
    with five external collaborators:

      message_source.get_message(principal_id, message_id) -> InboundMessage
      classifier.classify(raw_text, subject, tz_name) -> Classification
      preferences.get(principal_id) -> Policy
      availability.check_availability(principal_id, proposed_times) -> AvailabilityResult
      sender.send(principal_id, to, subject, body, thread_id) -> sent message id

    alert(principal_id, message) is called when a reply went out but could
    not be audited.
    """

    def __init__(
        self,
        message_source,
        classifier,
        preferences,
        availability,
        sender,
        conversations: Optional[ConversationStateManager] = None,
        breaker: Optional[CircuitBreaker] = None,
        ledger: Optional[AuditLedger] = None,
        scoring: Optional[ScoringPolicy] = None,
        alert: Optional[Callable[[str, str], None]] = None,
        clock: Callable[[], datetime] = db.utcnow,
    ):
        self.message_source = message_source
        self.classifier = classifier
        self.preferences = preferences
        self.availability = availability
        self.sender = sender
        self.clock = clock
        self.conversations = conversations or ConversationStateManager(clock=clock)
        self.breaker = breaker or CircuitBreaker(clock=clock)
        self.ledger = ledger or AuditLedger(clock=clock)
        self.scoring = scoring or DEFAULT_SCORING
        self.alert = alert

    def process_message(
        self,
        message_id: str,
        principal_id: str,
        deadline: Optional[float] = None,
    ) -> OrchestratorResult:
        """
        Run the pipeline for one message. Never raises: every failure comes
        back as an error result. deadline is a time.monotonic() value after
        which no reply may be sent.
        """
        # Step 1: Fetch + classify in the principal's timezone
        try:
            message = self._call("message source", self.message_source.get_message, principal_id, message_id)
            policy = self._call("preferences", self.preferences.get, principal_id)
            classification = self._call(
                "classifier", self.classifier.classify, message.body, message.subject, policy.user_timezone
            )
        except CollaboratorFailure as e:
            logger.error(f"[{principal_id}] {message_id}: {e}")
            return _error(str(e), ERR_COLLABORATOR)

        classification = _with_message_fields(classification, message)
        if not classification.is_scheduling_request:
            logger.info(f"[{principal_id}] {message_id}: not a scheduling request, ignored")
            return OrchestratorResult(
                action=ResultAction.IGNORED,
                reason="Not a scheduling request",
                confidence=classification.confidence,
            )

        logger.info(
            f"[{principal_id}] Processing: [{message.subject}] from {message.sender} "
            f"({classification.request_kind.value}, {len(classification.proposed_times)} proposed time(s))"
        )

        try:
            return self._decide(message, classification, policy, deadline)
        except InvalidTransition as e:
            logger.error(f"[{principal_id}] {message_id}: {e}")
            _log_error_event(principal_id, f"'{message.subject}': {e}")
            return _error(str(e), ERR_INVALID_TRANSITION)
        except AuditWriteFailure as e:
            _log_error_event(principal_id, f"'{message.subject}': audit write failed")
            return _error(str(e), ERR_AUDIT_WRITE)
        except CollaboratorFailure as e:
            logger.error(f"[{principal_id}] {message_id}: {e}")
            _log_error_event(principal_id, f"'{message.subject}': {e}")
            return _error(str(e), ERR_COLLABORATOR)
        except (sqlite3.Error, ConversationNotFound) as e:
            # The engine's own stores count as a failed collaborator
            logger.error(f"[{principal_id}] {message_id}: store failure: {e}")
            _log_error_event(principal_id, f"'{message.subject}': store failure: {e}")
            return _error(f"store failed: {e}", ERR_COLLABORATOR)

    def _decide(
        self,
        message: InboundMessage,
        classification: Classification,
        policy: Policy,
        deadline: Optional[float],
    ) -> OrchestratorResult:
        principal_id = policy.principal_id

        # Step 2: Conversation
        conversation = self.conversations.get_or_create(message.thread_id, principal_id)

        # Step 3: Policy gate
        if not policy.automation_enabled:
            return self._escalate_without_scoring(
                principal_id, classification, conversation, "Automation disabled"
            )

        # Step 4: Breaker gate, ahead of scoring
        if self.breaker.is_open(principal_id):
            return self._escalate_without_scoring(
                principal_id, classification, conversation, "Circuit breaker open"
            )

        # Step 5: Score
        history = self.ledger.sender_history(principal_id, classification.sender, policy.allow_list)
        assessment = assess(classification, history, conversation, policy, self.scoring, now=self.clock())
        request_id = self.ledger.record_decision_request(principal_id, classification)
        self.ledger.record_assessment(request_id, assessment)

        # A deny-list decline says nothing about classifier reliability
        if assessment.factors.get("deny_listed"):
            logger.debug(f"[{principal_id}] Deny-listed sender, breaker not fed")
        elif assessment.overall_confidence < policy.confidence_threshold:
            self.breaker.record_low_confidence(
                principal_id, policy.max_consecutive_low_confidence, policy.cooldown_minutes
            )
        else:
            self.breaker.record_high_confidence(principal_id)

        # Step 6: Act
        if assessment.recommendation == Recommendation.AUTO_RESPOND:
            result = self._auto_respond(
                message, classification, conversation, policy, assessment, request_id, deadline
            )
        elif assessment.recommendation == Recommendation.REQUEST_APPROVAL:
            result = self._request_approval(classification, conversation, policy, assessment, request_id)
        else:
            result = self._decline(classification, conversation, policy, assessment, request_id)

        self.ledger.set_request_status(request_id, result.action.value)
        return result

    # ── Outcomes ───────────────────────────────────────────────────────────

    def _auto_respond(
        self,
        message: InboundMessage,
        classification: Classification,
        conversation: ConversationState,
        policy: Policy,
        assessment: ConfidenceAssessment,
        request_id: int,
        deadline: Optional[float] = None,
    ) -> OrchestratorResult:
        principal_id = policy.principal_id
        to = drafter.extract_email(message.sender)
        subject = drafter.reply_subject(message.subject)

        # Nothing has been sent yet: a failure here aborts before the send
        try:
            availability = self._call(
                "availability", self.availability.check_availability,
                principal_id, list(classification.proposed_times),
            )
            slot = self._confirmed_slot(classification, conversation, availability)
            reply = self._draft(classification, conversation, policy, availability, message.sender, slot)
            if deadline is not None and time.monotonic() > deadline:
                raise CollaboratorFailure("sender", "processing deadline passed before the reply was sent")
            sent_id = self._call("sender", self.sender.send, principal_id, to, subject, reply.text, message.thread_id)
        except CollaboratorFailure as e:
            logger.error(f"[{principal_id}] Auto-respond aborted before send: {e}")
            audit_id = self._audit_failure(classification, conversation, assessment, request_id, str(e))
            self._notify(principal_id, "error", f"'{message.subject}': {e}", audit_id)
            result = _error(str(e), ERR_COLLABORATOR)
            result.confidence = assessment.overall_confidence
            result.audit_id = audit_id
            return result

        rationale = _rationale("Auto-sent", assessment, policy) + f" Reply: {reply.summary}."
        calendar_facts = _calendar_facts(availability)
        try:
            audit_id = self.ledger.log(NewAuditEntry(
                principal_id=principal_id,
                action=AuditAction.SENT_EMAIL,
                confidence_score=assessment.overall_confidence,
                decision_rationale=rationale,
                request_id=request_id,
                conversation_id=conversation.id,
                sender=classification.sender,
                sent_message_id=sent_id,
                calendar_facts=calendar_facts,
                conversation_context=conversation.context,
            ))
        except AuditWriteFailure as e:
            detail = (
                f"Reply {sent_id} sent to {to} on thread {message.thread_id} "
                f"but the audit entry could not be written: {e}"
            )
            logger.critical(f"[{principal_id}] UNAUDITED SEND: {detail}")
            if self.alert is not None:
                self.alert(principal_id, detail)
            try:
                self._advance(conversation, classification, reply, slot, request_id, sent_id)
            except (InvalidTransition, ConversationNotFound, sqlite3.Error) as te:
                logger.error(f"[{principal_id}] Conversation {conversation.thread_id} not advanced: {te}")
            return OrchestratorResult(
                action=ResultAction.ERROR,
                reason="Reply sent but not audited",
                confidence=assessment.overall_confidence,
                error=detail,
                error_code=ERR_UNAUDITED_SEND,
                email_sent=True,
            )

        # The reply is out: from here every failure is reported with email_sent=True
        try:
            self._notify(principal_id, "sent", f"Auto-sent to {to}: '{subject}'", audit_id)
            self._advance(conversation, classification, reply, slot, request_id, sent_id)
        except (InvalidTransition, ConversationNotFound, sqlite3.Error) as e:
            logger.error(f"[{principal_id}] Conversation {conversation.thread_id} not advanced: {e}")
            code = ERR_INVALID_TRANSITION if isinstance(e, InvalidTransition) else ERR_COLLABORATOR
            return OrchestratorResult(
                action=ResultAction.ERROR,
                reason="Reply sent but conversation state could not be advanced",
                confidence=assessment.overall_confidence,
                audit_id=audit_id,
                error=str(e),
                error_code=code,
                email_sent=True,
            )

        return OrchestratorResult(
            action=ResultAction.AUTO_RESPONDED,
            reason=rationale,
            confidence=assessment.overall_confidence,
            audit_id=audit_id,
            email_sent=True,
        )

    def _request_approval(
        self,
        classification: Classification,
        conversation: ConversationState,
        policy: Policy,
        assessment: ConfidenceAssessment,
        request_id: int,
    ) -> OrchestratorResult:
        needs_times = not classification.proposed_times and classification.request_kind != RequestKind.CONFIRMATION
        action = AuditAction.REQUESTED_CLARIFICATION if needs_times else AuditAction.ESCALATED
        rationale = _rationale("Escalated", assessment, policy)
        if needs_times:
            rationale += " No meeting times could be extracted."

        audit_id = self.ledger.log(NewAuditEntry(
            principal_id=policy.principal_id,
            action=action,
            confidence_score=assessment.overall_confidence,
            decision_rationale=rationale,
            request_id=request_id,
            conversation_id=conversation.id,
            sender=classification.sender,
            conversation_context=conversation.context,
        ))
        self._notify(
            policy.principal_id, "queued",
            f"Approval requested: '{classification.subject}' ({assessment.overall_confidence:.0%} confidence)",
            audit_id,
        )
        return OrchestratorResult(
            action=ResultAction.PENDING_APPROVAL,
            reason=f"Confidence {assessment.overall_confidence:.2f} below threshold {policy.confidence_threshold:.2f}",
            confidence=assessment.overall_confidence,
            audit_id=audit_id,
        )

    def _decline(
        self,
        classification: Classification,
        conversation: ConversationState,
        policy: Policy,
        assessment: ConfidenceAssessment,
        request_id: int,
    ) -> OrchestratorResult:
        if assessment.factors.get("deny_listed"):
            reason = "Sender is on the deny list"
        else:
            reason = f"Confidence {assessment.overall_confidence:.2f} too low to act"

        audit_id = self.ledger.log(NewAuditEntry(
            principal_id=policy.principal_id,
            action=AuditAction.DECLINED_REQUEST,
            confidence_score=assessment.overall_confidence,
            decision_rationale=f"Declined: {reason}. " + _rationale("Scored", assessment, policy),
            request_id=request_id,
            conversation_id=conversation.id,
            sender=classification.sender,
            conversation_context=conversation.context,
        ))
        self._notify(policy.principal_id, "declined", f"Declined: '{classification.subject}' ({reason})", audit_id)
        return OrchestratorResult(
            action=ResultAction.DECLINED,
            reason=reason,
            confidence=assessment.overall_confidence,
            audit_id=audit_id,
        )

    def _escalate_without_scoring(
        self,
        principal_id: str,
        classification: Classification,
        conversation: ConversationState,
        reason: str,
    ) -> OrchestratorResult:
        audit_id = self.ledger.log(NewAuditEntry(
            principal_id=principal_id,
            action=AuditAction.ESCALATED,
            confidence_score=classification.confidence,
            decision_rationale=f"{reason}; no autonomous action taken.",
            conversation_id=conversation.id,
            sender=classification.sender,
            conversation_context=conversation.context,
        ))
        logger.info(f"[{principal_id}] {classification.message_id}: {reason}, approval required")
        self._notify(principal_id, "queued", f"Approval requested: '{classification.subject}' ({reason})", audit_id)
        return OrchestratorResult(
            action=ResultAction.PENDING_APPROVAL,
            reason=reason,
            confidence=classification.confidence,
            audit_id=audit_id,
        )

    def _audit_failure(
        self,
        classification: Classification,
        conversation: ConversationState,
        assessment: ConfidenceAssessment,
        request_id: int,
        detail: str,
    ) -> Optional[int]:
        try:
            return self.ledger.log(NewAuditEntry(
                principal_id=conversation.principal_id,
                action=AuditAction.ESCALATED,
                confidence_score=assessment.overall_confidence,
                decision_rationale=f"Auto-respond aborted before sending: {detail}",
                request_id=request_id,
                conversation_id=conversation.id,
                sender=classification.sender,
                conversation_context=conversation.context,
            ))
        except AuditWriteFailure as e:
            logger.error(f"[{conversation.principal_id}] Could not audit collaborator failure: {e}")
            return None

    def _notify(self, principal_id: str, event_type: str, message: str, audit_id: Optional[int]) -> None:
        """Write the activity-feed event, then stamp the audit entry as notified."""
        db.log_event(principal_id, event_type, message)
        if audit_id is not None:
            self.ledger.mark_notified(audit_id)

    # ── Drafting + conversation ────────────────────────────────────────────

    def _confirmed_slot(
        self,
        classification: Classification,
        conversation: ConversationState,
        availability: AvailabilityResult,
    ) -> Optional[TimeInterval]:
        """
        The one slot a confirmation agrees to, or None when it is ambiguous.
        A confirmation naming times settles on a free one only if exactly one
        is free; one naming none settles only if exactly one slot was offered.
        """
        if classification.request_kind != RequestKind.CONFIRMATION or conversation.state != S.AVAILABILITY_SENT:
            return None
        if classification.proposed_times:
            return availability.available[0] if len(availability.available) == 1 else None
        offered = conversation.context.get("offered_times") or []
        return TimeInterval.from_dict(offered[0]) if len(offered) == 1 else None

    def _draft(
        self,
        classification: Classification,
        conversation: ConversationState,
        policy: Policy,
        availability: AvailabilityResult,
        sender: str,
        slot: Optional[TimeInterval],
    ) -> drafter.Reply:
        name = drafter.recipient_name(sender)
        tone = policy.response_tone

        if slot is not None:
            return drafter.confirmation_reply(slot, tone, name, policy.user_timezone)

        if classification.request_kind == RequestKind.CONFIRMATION and conversation.state == S.AVAILABILITY_SENT:
            return drafter.clarification_reply("Which of the times I shared works best for you?", tone, name)

        if not classification.proposed_times:
            return drafter.clarification_reply("Could you suggest a few times that work for you?", tone, name)

        return drafter.availability_reply(availability, tone, name, policy.user_timezone)

    def _advance(
        self,
        conversation: ConversationState,
        classification: Classification,
        reply: drafter.Reply,
        slot: Optional[TimeInterval],
        request_id: int,
        sent_id: str,
    ) -> None:
        """
        Move the thread to the state that follows the reply just sent. Every
        write is conditional on the snapshot the decision was made from, so a
        thread another message moved in the meantime raises ConcurrentUpdateError.
        """
        thread_id = conversation.thread_id
        expected = {"expected_state": conversation.state, "expected_turn": conversation.turn_count}
        context = {
            "last_message_id": classification.message_id,
            "last_sent_message_id": sent_id,
        }
        if reply.offered:
            context["offered_times"] = [t.to_dict() for t in reply.offered]
        if slot is not None:
            context["confirmed_time"] = slot.to_dict()

        if conversation.state == S.INITIAL:
            self.conversations.transition(thread_id, S.AVAILABILITY_SENT, context, request_id, **expected)
        elif conversation.state == S.AVAILABILITY_SENT:
            if slot is not None:
                self.conversations.transition(thread_id, S.CONFIRMED, context, request_id, **expected)
            elif classification.request_kind == RequestKind.CONFIRMATION:
                # Asked which offered time they meant; still waiting on a pick
                self.conversations.update_context(thread_id, context, **expected)
            else:
                # New proposal mid-negotiation: restart, then share availability again
                self.conversations.transition(thread_id, S.INITIAL, None, request_id, **expected)
                self.conversations.transition(
                    thread_id, S.AVAILABILITY_SENT, context, request_id,
                    expected_state=S.INITIAL, expected_turn=conversation.turn_count + 1,
                )
        elif conversation.state == S.CONFIRMED:
            self.conversations.transition(thread_id, S.SCHEDULED, context, request_id, **expected)
        else:
            self.conversations.update_context(thread_id, context, **expected)

    def _call(self, name: str, fn, *args):
        """Invoke a collaborator; any failure surfaces as CollaboratorFailure."""
        try:
            return fn(*args)
        except CollaboratorFailure:
            raise
        except Exception as e:
            raise CollaboratorFailure(name, str(e)) from e


async def process_message_async(
    orchestrator: DecisionOrchestrator,
    message_id: str,
    principal_id: str,
    timeout_seconds: Optional[float] = None,
) -> OrchestratorResult:
    """
    Run process_message in a worker thread; a timeout becomes an error result,
    never a silent drop. The thread cannot be cancelled, so it is handed the
    same deadline and will not send once it has passed. Whatever it does
    afterwards is logged when it finishes.
    """
    if timeout_seconds is None:
        timeout_seconds = load_config()["message_timeout_seconds"]
    deadline = time.monotonic() + timeout_seconds
    loop = asyncio.get_running_loop()
    future = loop.run_in_executor(None, orchestrator.process_message, message_id, principal_id, deadline)
    try:
        return await asyncio.wait_for(asyncio.shield(future), timeout=timeout_seconds)
    except asyncio.TimeoutError:
        logger.error(f"[{principal_id}] {message_id}: timed out after {timeout_seconds}s")
        future.add_done_callback(functools.partial(_record_late_outcome, principal_id, message_id))
        return _error(f"Processing exceeded {timeout_seconds}s", ERR_TIMEOUT)


# ── Helpers ────────────────────────────────────────────────────────────────────

def _error(detail: str, code: str) -> OrchestratorResult:
    return OrchestratorResult(action=ResultAction.ERROR, reason=detail, error=detail, error_code=code)


def _with_message_fields(classification: Classification, message: InboundMessage) -> Classification:
    """Fill envelope fields the classifier cannot see from the message itself."""
    return replace(
        classification,
        sender=classification.sender or drafter.extract_email(message.sender).lower(),
        thread_id=classification.thread_id or message.thread_id,
        message_id=classification.message_id or message.message_id,
        subject=classification.subject or message.subject,
        raw_text=classification.raw_text or message.body,
    )


def _rationale(prefix: str, assessment: ConfidenceAssessment, policy: Policy) -> str:
    f = assessment.factors
    reasons = [f"confidence {assessment.overall_confidence:.0%} vs threshold {policy.confidence_threshold:.0%}"]
    reasons.append("clear scheduling intent" if f.get("intent_clear") else "uncertain intent")
    if f.get("proposed_count"):
        reasons.append(
            f"{f['proposed_count']} time(s) extracted cleanly" if f.get("times_extracted_cleanly")
            else "proposed times were ambiguous"
        )
    else:
        reasons.append("no times proposed")
    if f.get("allow_listed"):
        reasons.append("sender on allow list")
    elif f.get("deny_listed"):
        reasons.append("sender on deny list")
    elif f.get("known_sender"):
        reasons.append("known sender")
    reasons.append(f"thread state {f.get('thread_context')} (turn {f.get('turn_count')})")
    return f"{prefix} because: " + "; ".join(reasons) + "."


def _calendar_facts(availability: AvailabilityResult) -> tuple[dict, ...]:
    facts = [{"kind": "available", **t.to_dict()} for t in availability.available]
    facts += [{"kind": "conflict", **c} for c in availability.conflicts]
    facts += [{"kind": "alternative", **t.to_dict()} for t in availability.suggested_alternatives]
    return tuple(facts)


def _log_error_event(principal_id: str, message: str, event_type: str = "error") -> None:
    try:
        db.log_event(principal_id, event_type, message)
    except sqlite3.Error as e:
        logger.error(f"[{principal_id}] Could not write {event_type} event: {e}")


def _record_late_outcome(principal_id: str, message_id: str, future) -> None:
    """Done-callback for a worker that outlived its timeout."""
    if future.cancelled():
        return
    error = future.exception()
    if error is not None:
        logger.error(f"[{principal_id}] {message_id}: failed after timing out: {error}")
        return
    result = future.result()
    logger.warning(
        f"[{principal_id}] {message_id}: finished after timing out: "
        f"{result.action.value} (email_sent={result.email_sent})"
    )
    _log_error_event(
        principal_id,
        f"{message_id} finished after timing out: {result.action.value}, email_sent={result.email_sent}",
        event_type="late_result",
    )
