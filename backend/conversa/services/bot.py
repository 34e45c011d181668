"""Bot classifier and automated flow.

Classification decides, per inbound message, whether the message is
rejected, answered by the bot or routed to a human agent. Rules are
evaluated in a fixed order and a blocked contact is always rejected
first, even in the middle of a bot flow.
"""

import logging
import re
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from conversa.core.config import settings
from conversa.models.auto_response_rule import AutoResponseRule
from conversa.models.bot_session import BotSession
from conversa.models.category import CategoryKeyword
from conversa.models.contact import Contact
from conversa.models.conversation import Conversation

logger = logging.getLogger(__name__)

# Matches {variable_name} or {variable_name|default_value}
_VAR_PATTERN = re.compile(r"\{([a-zA-Z_][a-zA-Z0-9_]*)(?:\|([^}]*))?\}")


class Route(str, Enum):
    REJECT = "reject"
    BOT = "bot"
    HUMAN = "human"


@dataclass
class Classification:
    """Result of classifying one inbound message."""

    route: Route
    reason: str
    rule: AutoResponseRule | None = None
    session: BotSession | None = None
    category_id: uuid.UUID | None = None

    @property
    def handoff(self) -> bool:
        """True when an open bot session must be handed to a human."""
        return self.route == Route.HUMAN and self.session is not None


@dataclass
class BotReply:
    text: str | None
    handoff: bool = False
    reason: str | None = None
    collected: dict = field(default_factory=dict)


def render_reply(template: str, variables: dict[str, str]) -> str:
    """Fill ``{var}`` / ``{var|default}`` slots; unknown variables render empty."""

    def _replace(match: re.Match) -> str:
        value = variables.get(match.group(1))
        if value:
            return value
        return match.group(2) or ""

    return _VAR_PATTERN.sub(_replace, template).strip()


# ---------------------------------------------------------------------------
# Rule matching
# ---------------------------------------------------------------------------


def match_auto_response(
    db: Session,
    message_body: str,
    channel_id: uuid.UUID | None = None,
) -> AutoResponseRule | None:
    """Find the highest-priority keyword rule matching a message.

    Evaluates active rules (global or scoped to ``channel_id``) in priority
    order (ascending). Returns the first matching rule, or None.
    """
    query = (
        select(AutoResponseRule)
        .where(
            AutoResponseRule.is_active.is_(True),
            AutoResponseRule.trigger_type == "keyword",
        )
        .order_by(AutoResponseRule.priority.asc(), AutoResponseRule.created_at.asc())
    )
    if channel_id is not None:
        query = query.where(
            or_(AutoResponseRule.channel_id.is_(None), AutoResponseRule.channel_id == channel_id)
        )
    else:
        query = query.where(AutoResponseRule.channel_id.is_(None))

    normalized_body = (message_body or "").strip().lower()
    if not normalized_body:
        return None

    for rule in db.execute(query).scalars().all():
        keyword = (rule.keyword or "").strip().lower()
        if not keyword:
            continue
        if rule.match_type == "exact":
            if normalized_body == keyword:
                return rule
        elif keyword in normalized_body:
            return rule
    return None


def get_welcome_rule(db: Session, channel_id: uuid.UUID | None = None) -> AutoResponseRule | None:
    query = (
        select(AutoResponseRule)
        .where(
            AutoResponseRule.is_active.is_(True),
            AutoResponseRule.trigger_type == "welcome",
        )
        .order_by(AutoResponseRule.priority.asc())
        .limit(1)
    )
    if channel_id is not None:
        query = query.where(
            or_(AutoResponseRule.channel_id.is_(None), AutoResponseRule.channel_id == channel_id)
        )
    return db.execute(query).scalar_one_or_none()


def contains_handoff_keyword(message_body: str, keywords: list[str] | None = None) -> bool:
    """Check if an inbound message asks for a human (case-insensitive)."""
    wanted = {k.lower() for k in (keywords if keywords is not None else settings.HANDOFF_KEYWORDS)}
    normalized = (message_body or "").strip().lower()
    # Strip common punctuation from each word before matching
    words = {w.strip(".,!?;:'\"") for w in normalized.split()}
    return bool(words & wanted)


def classify_category(db: Session, message_body: str) -> uuid.UUID | None:
    """Pick the category whose matching keywords have the highest summed weight.

    Matching keywords have their ``match_count`` incremented in the
    caller's transaction.
    """
    if not message_body:
        return None

    keywords = db.execute(
        select(CategoryKeyword).where(CategoryKeyword.is_active.is_(True))
    ).scalars().all()

    scores: dict[uuid.UUID, int] = defaultdict(int)
    for kw in keywords:
        haystack = message_body if kw.is_case_sensitive else message_body.lower()
        needle = kw.keyword if kw.is_case_sensitive else kw.keyword.lower()
        if kw.is_exact_match:
            # Exact keywords match only a message consisting of the keyword itself
            matched = haystack.strip() == needle
        else:
            matched = needle in haystack
        if matched:
            scores[kw.category_id] += kw.weight
            kw.match_count += 1

    if not scores:
        return None
    return max(scores.items(), key=lambda item: item[1])[0]


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


def get_open_session(db: Session, contact_id: uuid.UUID) -> BotSession | None:
    """Return the contact's non-completed session still inside the timeout window."""
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=settings.BOT_SESSION_TIMEOUT_MINUTES)
    return db.execute(
        select(BotSession)
        .where(
            BotSession.contact_id == contact_id,
            BotSession.is_completed.is_(False),
            BotSession.last_interaction_at >= cutoff,
        )
        .order_by(BotSession.started_at.desc())
        .limit(1)
    ).scalar_one_or_none()


def complete_sessions(
    db: Session,
    *,
    reason: str,
    contact_id: uuid.UUID | None = None,
    conversation_id: uuid.UUID | None = None,
    requires_human: bool = False,
) -> int:
    """Complete every open session of a contact or conversation (no commit)."""
    if contact_id is None and conversation_id is None:
        raise ValueError("contact_id or conversation_id is required")

    query = update(BotSession).where(BotSession.is_completed.is_(False))
    if contact_id is not None:
        query = query.where(BotSession.contact_id == contact_id)
    if conversation_id is not None:
        query = query.where(BotSession.conversation_id == conversation_id)

    result = db.execute(
        query.values(
            is_completed=True,
            requires_human=requires_human,
            handoff_reason=reason,
            completed_at=datetime.now(timezone.utc),
        ).execution_options(synchronize_session="fetch")
    )
    if result.rowcount:
        logger.info(
            "Completed %d bot session(s) (contact=%s conversation=%s reason=%s)",
            result.rowcount,
            contact_id,
            conversation_id,
            reason,
        )
    return result.rowcount


def expire_idle_sessions(db: Session) -> int:
    """Complete sessions idle past BOT_SESSION_TIMEOUT_MINUTES. Commits."""
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=settings.BOT_SESSION_TIMEOUT_MINUTES)
    result = db.execute(
        update(BotSession)
        .where(BotSession.is_completed.is_(False), BotSession.last_interaction_at < cutoff)
        .values(
            is_completed=True,
            handoff_reason="timeout",
            completed_at=datetime.now(timezone.utc),
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount


# ---------------------------------------------------------------------------
# Classifier
# ---------------------------------------------------------------------------


class BotClassifier:
    """Routes inbound messages: REJECT, BOT or HUMAN.

    Order of evaluation:
    1. blocked contact -> REJECT
    2. open bot session -> BOT, or HUMAN when the text asks for a person
    3. keyword rule match, no active conversation or one the bot
       already handles -> BOT
    4. otherwise -> HUMAN
    """

    def __init__(self, handoff_keywords: list[str] | None = None) -> None:
        self._handoff_keywords = handoff_keywords

    def classify(
        self,
        db: Session,
        message_body: str,
        contact: Contact,
        *,
        channel_id: uuid.UUID | None = None,
        active_conversation: Conversation | None = None,
    ) -> Classification:
        if contact.is_blocked:
            return Classification(route=Route.REJECT, reason="contact_blocked")

        category_id = classify_category(db, message_body)

        session = get_open_session(db, contact.id)
        if session is not None:
            if contains_handoff_keyword(message_body, self._handoff_keywords):
                return Classification(
                    route=Route.HUMAN,
                    reason="handoff_keyword",
                    session=session,
                    category_id=category_id,
                )
            return Classification(
                route=Route.BOT,
                reason="bot_session",
                session=session,
                category_id=category_id,
            )

        # A customer already with an agent or waiting in the queue stays there
        if active_conversation is None or active_conversation.is_bot_handled:
            rule = match_auto_response(db, message_body, channel_id)
            if rule is not None:
                return Classification(
                    route=Route.BOT,
                    reason="keyword_rule",
                    rule=rule,
                    category_id=category_id,
                )

        return Classification(route=Route.HUMAN, reason="default", category_id=category_id)


# ---------------------------------------------------------------------------
# Flow
# ---------------------------------------------------------------------------


class BotFlow:
    """Keyword-driven conversation flow over a BotSession.

    A matching rule replies and advances ``current_step``; a miss sends the
    fallback and counts an attempt. After ``max_attempts`` misses the
    session is handed to a human. No method commits.
    """

    def __init__(
        self,
        max_attempts: int | None = None,
        fallback_message: str | None = None,
        handoff_message: str | None = None,
    ) -> None:
        self.max_attempts = max_attempts or settings.BOT_MAX_ATTEMPTS
        self.fallback_message = fallback_message or settings.BOT_FALLBACK_MESSAGE
        self.handoff_message = handoff_message or settings.BOT_HANDOFF_MESSAGE

    @staticmethod
    def _variables(contact: Contact) -> dict[str, str]:
        return {"name": contact.name or "", "phone": contact.phone}

    def start(
        self,
        db: Session,
        contact: Contact,
        conversation: Conversation,
        rule: AutoResponseRule,
        message_body: str,
    ) -> tuple[BotSession, BotReply]:
        now = datetime.now(timezone.utc)
        session = BotSession(
            contact_id=contact.id,
            conversation_id=conversation.id,
            current_step=(rule.keyword or "start").strip().lower(),
            collected_data={"messages": [message_body]},
            attempts=0,
            started_at=now,
            last_interaction_at=now,
        )
        db.add(session)
        logger.info(
            "Bot session started for contact %s on conversation %s (rule=%s)",
            contact.id,
            conversation.id,
            rule.keyword,
        )
        return session, BotReply(text=render_reply(rule.response_template, self._variables(contact)))

    def respond(
        self,
        db: Session,
        session: BotSession,
        contact: Contact,
        message_body: str,
        channel_id: uuid.UUID | None = None,
    ) -> BotReply:
        session.last_interaction_at = datetime.now(timezone.utc)
        collected = dict(session.collected_data or {})
        collected["messages"] = [*collected.get("messages", []), message_body]
        session.collected_data = collected

        rule = match_auto_response(db, message_body, channel_id)
        if rule is not None:
            session.current_step = (rule.keyword or session.current_step).strip().lower()
            session.attempts = 0
            return BotReply(text=render_reply(rule.response_template, self._variables(contact)))

        session.attempts += 1
        if session.attempts >= self.max_attempts:
            self.handoff(session, "max_attempts")
            return BotReply(text=self.handoff_message, handoff=True, reason="max_attempts")
        return BotReply(text=self.fallback_message)

    def handoff(self, session: BotSession, reason: str) -> None:
        session.is_completed = True
        session.requires_human = True
        session.handoff_reason = reason
        session.completed_at = datetime.now(timezone.utc)
        logger.info("Bot session %s handed off to a human (%s)", session.id, reason)
