"""
Autonomy Engine: multi-factor confidence scoring for scheduling emails.

Four factors feed a weighted score:
  intent (40%)        how sure the classifier is this is a scheduling request
  time parsing (30%)  how cleanly proposed times were extracted
  sender trust (20%)  allow/deny lists, then history with the sender
  clarity (10%)       where the thread's negotiation currently stands

The score maps onto three bands rather than a binary cutoff:
  >= threshold                  auto_respond
  >= threshold - approval_band  request_approval
  below that                    decline

Hard rule: a deny-listed sender is always declined, whatever the score.

assess() is pure. Everything it depends on comes in through its arguments,
including the clock used for the sender-recency check.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from models import (
    Classification,
    ConfidenceAssessment,
    ConversationState,
    ConversationStatus,
    Policy,
    Recommendation,
    RequestKind,
    SenderHistory,
    Urgency,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScoringPolicy:
    intent_weight: float = 0.40
    time_parsing_weight: float = 0.30
    sender_trust_weight: float = 0.20
    conversation_weight: float = 0.10

    confirmation_boost: float = 0.10
    urgent_discount: float = 0.90
    urgent_discount_below: float = 0.90

    no_times_score: float = 0.3
    confirmation_no_times_score: float = 0.7
    base_times_score: float = 0.5
    all_valid_times_score: float = 0.9
    some_valid_times_score: float = 0.6
    reasonable_count_boost: float = 0.1
    max_reasonable_slots: int = 5
    max_slot_hours: float = 24

    unknown_sender_trust: float = 0.5
    known_sender_base: float = 0.6
    success_rate_weight: float = 0.3
    frequent_sender_after: int = 10
    frequent_sender_boost: float = 0.1
    recent_sender_days: int = 30
    recent_sender_boost: float = 0.1

    fresh_thread_clarity: float = 0.8
    default_clarity: float = 0.7
    availability_sent_clarity: float = 0.9
    confirmed_clarity: float = 0.95
    long_thread_turns: int = 5
    long_thread_clarity: float = 0.5

    approval_band: float = 0.15


DEFAULT_SCORING = ScoringPolicy()


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def assess(
    classification: Classification,
    sender_history: Optional[SenderHistory],
    conversation: Optional[ConversationState],
    policy: Policy,
    scoring: ScoringPolicy = DEFAULT_SCORING,
    now: Optional[datetime] = None,
) -> ConfidenceAssessment:
    """Score a classified email and recommend an action."""
    if now is None:
        now = datetime.now(timezone.utc)

    intent = intent_confidence(classification, scoring)
    times = time_parsing_confidence(classification, scoring)
    trust = sender_trust(classification.sender, sender_history, policy, scoring, now)
    clarity = conversation_clarity(conversation, scoring)

    overall = _clamp(
        intent * scoring.intent_weight
        + times * scoring.time_parsing_weight
        + trust * scoring.sender_trust_weight
        + clarity * scoring.conversation_weight
    )

    deny_listed = policy.is_deny_listed(classification.sender)
    if deny_listed:
        recommendation = Recommendation.DECLINE
    else:
        recommendation = recommend(overall, policy.confidence_threshold, scoring)

    factors = {
        "intent_clear": intent >= 0.8,
        "times_extracted_cleanly": times >= 0.7,
        "known_sender": trust >= 0.5,
        "allow_listed": policy.is_allow_listed(classification.sender),
        "deny_listed": deny_listed,
        "thread_context": conversation.state.value if conversation else ConversationStatus.INITIAL.value,
        "turn_count": conversation.turn_count if conversation else 0,
        "urgency": classification.urgency.value,
        "request_kind": classification.request_kind.value,
        "proposed_count": len(classification.proposed_times),
    }

    logger.info(
        f"Assessed {classification.message_id or '?'} from {classification.sender}: "
        f"overall={overall:.2f} ({recommendation.value}) "
        f"intent={intent:.2f} times={times:.2f} trust={trust:.2f} clarity={clarity:.2f}"
    )

    return ConfidenceAssessment(
        intent_confidence=intent,
        time_parsing_confidence=times,
        sender_trust_score=trust,
        conversation_clarity=clarity,
        overall_confidence=overall,
        recommendation=recommendation,
        factors=factors,
        created_at=now,
    )


def intent_confidence(classification: Classification, scoring: ScoringPolicy = DEFAULT_SCORING) -> float:
    confidence = classification.confidence

    if classification.request_kind == RequestKind.CONFIRMATION:
        confidence = min(1.0, confidence + scoring.confirmation_boost)

    # Urgent mail is misclassified more often
    if classification.urgency == Urgency.HIGH and classification.confidence < scoring.urgent_discount_below:
        confidence = confidence * scoring.urgent_discount

    return _clamp(confidence)


def time_parsing_confidence(classification: Classification, scoring: ScoringPolicy = DEFAULT_SCORING) -> float:
    proposed = classification.proposed_times

    if not proposed:
        # A confirmation need not restate the time
        if classification.request_kind == RequestKind.CONFIRMATION:
            return scoring.confirmation_no_times_score
        return scoring.no_times_score

    max_seconds = scoring.max_slot_hours * 3600
    valid = [t for t in proposed if 0 < t.duration_seconds < max_seconds]

    confidence = scoring.base_times_score
    if len(valid) == len(proposed):
        confidence = scoring.all_valid_times_score
    elif valid:
        confidence = scoring.some_valid_times_score

    if 1 <= len(proposed) <= scoring.max_reasonable_slots:
        confidence += scoring.reasonable_count_boost

    return _clamp(confidence)


def sender_trust(
    sender: str,
    history: Optional[SenderHistory],
    policy: Policy,
    scoring: ScoringPolicy = DEFAULT_SCORING,
    now: Optional[datetime] = None,
) -> float:
    if policy.is_allow_listed(sender):
        return 1.0
    if policy.is_deny_listed(sender):
        return 0.0

    if history is None or history.total_messages == 0:
        return scoring.unknown_sender_trust

    trust = scoring.known_sender_base

    if history.scheduling_requests > 0:
        success_rate = history.successful_schedules / history.scheduling_requests
        trust += min(1.0, success_rate) * scoring.success_rate_weight

    if history.total_messages > scoring.frequent_sender_after:
        trust += scoring.frequent_sender_boost

    if history.last_interaction is not None:
        if now is None:
            now = datetime.now(timezone.utc)
        days_since = (now - history.last_interaction).total_seconds() / 86400
        if days_since < scoring.recent_sender_days:
            trust += scoring.recent_sender_boost

    return _clamp(trust)


def conversation_clarity(conversation: Optional[ConversationState], scoring: ScoringPolicy = DEFAULT_SCORING) -> float:
    if conversation is None or conversation.state == ConversationStatus.INITIAL:
        clarity = scoring.fresh_thread_clarity
    elif conversation.state == ConversationStatus.AVAILABILITY_SENT:
        clarity = scoring.availability_sent_clarity
    elif conversation.state == ConversationStatus.CONFIRMED:
        clarity = scoring.confirmed_clarity
    else:
        clarity = scoring.default_clarity

    # Long negotiations override whatever the state suggested
    if conversation is not None and conversation.turn_count > scoring.long_thread_turns:
        clarity = scoring.long_thread_clarity

    return _clamp(clarity)


def recommend(overall: float, threshold: float, scoring: ScoringPolicy = DEFAULT_SCORING) -> Recommendation:
    if overall >= threshold:
        return Recommendation.AUTO_RESPOND
    if overall >= threshold - scoring.approval_band:
        return Recommendation.REQUEST_APPROVAL
    return Recommendation.DECLINE
