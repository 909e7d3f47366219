# nurture/intent.py
"""
Intent Classifier
-----------------
Rule-based intent detection for inbound SMS replies.

Priority order (first match wins):
  1. STOP / compliance vocabulary
  2. "don't call me" pattern (negation shortly before a call/phone token) → NOT_NOW
  3. affirmative followed later by a delay phrase ("yes but not until spring") → NOT_NOW
  4. hot buckets: appointment > call request > valuation > general affirmative → POSITIVE
  5. negative vocabulary → NEGATIVE
  6. everything else → UNKNOWN

The keyword lists below are plain data; swap them by passing another mapping
to ``classify``.
"""

from __future__ import annotations
import re
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Tuple

from nurture.schema import Intent

# -----------------------------
# Lexicons
# -----------------------------
KEYWORDS: Dict[str, FrozenSet[str]] = {
    "STOP": frozenset({
        "stop", "stopall", "unsubscribe", "cancel", "end", "quit", "remove", "optout", "opt out",
        "do not text", "don't text", "dont text", "stop texting", "stop messaging", "remove me",
        "take me off", "take me off your list", "no more texts", "no messages", "lose my number",
    }),
    "CONTACT_NEGATION": frozenset({
        "don't", "dont", "not", "no", "can't", "cant", "cannot", "never", "won't", "wont",
        "didn't", "didnt",
    }),
    "DELAY": frozenset({
        "later", "not now", "not yet", "not ready", "not until", "wait", "future", "next year",
        "next month", "few months", "spring", "summer", "fall", "winter", "after the holidays",
        "down the road", "someday", "maybe later",
    }),
    "APPOINTMENT": frozenset({
        "meet", "come over", "visit", "appointment", "schedule", "available", "see the house",
        "view", "tomorrow", "tonight", "monday", "tuesday", "wednesday", "thursday", "friday",
        "saturday", "sunday", "weekend", "morning", "afternoon", "evening", "this week",
        "when can", "what time",
    }),
    "CALL": frozenset({
        "call me", "call please", "call pls", "give me a call", "give me a ring", "phone",
        "speak", "talk", "let's talk", "lets talk", "chat", "reach out",
    }),
    "VALUATION": frozenset({
        "how much", "worth", "value", "price", "estimate", "equity", "comp", "comps",
        "market analysis", "cma", "numbers", "offer",
    }),
    "AFFIRMATIVE": frozenset({
        "yes", "yeah", "yep", "yup", "sure", "absolutely", "definitely", "please", "interested",
        "go ahead", "ok", "okay", "sounds good",
    }),
    "NEGATIVE": frozenset({
        "no", "nope", "nah", "no thanks", "no thank you", "not interested", "not selling",
        "not for sale", "leave me alone", "don't want", "dont want", "wrong number", "stop calling",
    }),
}

# Tokens that opt out wherever they appear in a message.
HARD_STOP_TOKENS = frozenset({"stop", "stopall", "unsubscribe", "optout", "quit", "remove"})
# Opt-out only when aimed at the messages ("end these texts") or said with courtesy words alone ("please cancel").
SOFT_STOP_TOKENS = frozenset({"cancel", "end"})
MESSAGE_OBJECT_TOKENS = frozenset({
    "me", "text", "texts", "texting", "message", "messages", "messaging", "sms", "this", "these", "it", "all",
})
COURTESY_TOKENS = frozenset({"please", "pls", "plz", "thanks", "thank", "you", "thx", "now", "ok", "okay"})
# Contact channel tokens scanned by the "don't call me" window.
CONTACT_CHANNEL_TOKENS = frozenset({"call", "calls", "calling", "phone", "ring"})
TEXT_PREFERENCE = frozenset({
    "prefer text", "prefer texting", "text only", "only text", "texting only", "rather text",
    "text is better", "text me instead",
})
# Negations that cancel a hot-bucket phrase right after them ("not interested").
STRONG_NEGATION = frozenset({
    "not", "don't", "dont", "never", "can't", "cant", "cannot", "won't", "wont", "didn't", "didnt",
})

NEGATION_WINDOW = 3
POSITIVE_BUCKETS: Tuple[str, ...] = ("APPOINTMENT", "CALL", "VALUATION", "AFFIRMATIVE")

_PUNCT = re.compile(r"[^\w']+")
_SPACES = re.compile(r"\s+")


@dataclass(frozen=True)
class ClassifiedIntent:
    intent: Intent
    text: str
    matched: Optional[str] = None  # rule or bucket that fired


# -----------------------------
# Utils
# -----------------------------
def normalize(text: Optional[str]) -> str:
    """Trim, lowercase and collapse whitespace."""
    if not text:
        return ""
    folded = str(text).replace("’", "'").replace("‘", "'")
    return _SPACES.sub(" ", folded.strip().lower())


def tokenize(text: str) -> List[str]:
    tokens = (_PUNCT.sub("", tok).strip("'") for tok in text.split(" "))
    return [t for t in tokens if t]


def _phrase_tokens(phrase: str) -> List[str]:
    return tokenize(normalize(phrase))


def _phrase_positions(tokens: Sequence[str], phrase: str) -> List[int]:
    needle = _phrase_tokens(phrase)
    if not needle:
        return []
    width = len(needle)
    return [i for i in range(len(tokens) - width + 1) if list(tokens[i:i + width]) == needle]


def _positions(tokens: Sequence[str], phrases: Iterable[str]) -> List[int]:
    found: List[int] = []
    for phrase in phrases:
        found.extend(_phrase_positions(tokens, phrase))
    return sorted(found)


def _preceded_by(tokens: Sequence[str], index: int, negations: FrozenSet[str], window: int) -> bool:
    start = max(0, index - window)
    return any(tok in negations for tok in tokens[start:index])


# -----------------------------
# Rules
# -----------------------------
def _is_stop(tokens: Sequence[str], stop: FrozenSet[str]) -> bool:
    joined = " ".join(tokens)
    if joined in {" ".join(_phrase_tokens(p)) for p in stop}:
        return True
    if any(tok in HARD_STOP_TOKENS for tok in tokens):
        return True
    if _has_soft_stop(tokens):
        return True
    return any(len(_phrase_tokens(p)) > 1 and _phrase_positions(tokens, p) for p in stop)


def _has_soft_stop(tokens: Sequence[str]) -> bool:
    for i, tok in enumerate(tokens):
        if tok not in SOFT_STOP_TOKENS:
            continue
        rest = [t for j, t in enumerate(tokens) if j != i]
        if all(t in COURTESY_TOKENS for t in rest):
            return True
        if any(t in MESSAGE_OBJECT_TOKENS for t in tokens[i + 1:i + 1 + NEGATION_WINDOW]):
            return True
    return False


def _has_dont_call_pattern(tokens: Sequence[str], negations: FrozenSet[str]) -> bool:
    """Sliding-window scan: a negation within NEGATION_WINDOW tokens before a call/phone token."""
    for i, tok in enumerate(tokens):
        if tok in CONTACT_CHANNEL_TOKENS and _preceded_by(tokens, i, negations, NEGATION_WINDOW):
            return True
    return bool(_positions(tokens, TEXT_PREFERENCE))


def _has_not_ready_pattern(tokens: Sequence[str], affirmative: FrozenSet[str], delay: FrozenSet[str]) -> bool:
    """Affirmative phrase followed (strictly later) by a delay phrase."""
    affirmative_at = _positions(tokens, affirmative)
    if not affirmative_at:
        return False
    first = affirmative_at[0]
    return any(pos > first for pos in _positions(tokens, delay))


def _bucket_hit(tokens: Sequence[str], phrases: FrozenSet[str]) -> bool:
    return any(
        not _preceded_by(tokens, pos, STRONG_NEGATION, NEGATION_WINDOW)
        for pos in _positions(tokens, phrases)
    )


# -----------------------------
# Main classifier
# -----------------------------
def classify(body: Optional[str], keywords: Mapping[str, FrozenSet[str]] = KEYWORDS) -> ClassifiedIntent:
    """Return the classified intent for an inbound SMS body. Never raises."""
    raw = body or ""
    tokens = tokenize(normalize(raw))
    if not tokens:
        return ClassifiedIntent(Intent.UNKNOWN, raw, None)

    if _is_stop(tokens, keywords["STOP"]):
        return ClassifiedIntent(Intent.STOP, raw, "STOP")

    if _has_dont_call_pattern(tokens, keywords["CONTACT_NEGATION"]):
        return ClassifiedIntent(Intent.NOT_NOW, raw, "CONTACT_NEGATION")

    if _has_not_ready_pattern(tokens, keywords["AFFIRMATIVE"], keywords["DELAY"]):
        return ClassifiedIntent(Intent.NOT_NOW, raw, "DELAY")

    for bucket in POSITIVE_BUCKETS:
        if _bucket_hit(tokens, keywords[bucket]):
            return ClassifiedIntent(Intent.POSITIVE, raw, bucket)

    if _positions(tokens, keywords["NEGATIVE"]):
        return ClassifiedIntent(Intent.NEGATIVE, raw, "NEGATIVE")

    return ClassifiedIntent(Intent.UNKNOWN, raw, None)


def classify_intent(body: Optional[str]) -> Intent:
    return classify(body).intent


__all__ = ["KEYWORDS", "ClassifiedIntent", "classify", "classify_intent", "normalize", "tokenize"]
