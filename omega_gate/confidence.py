"""
Confidence scoring for gate calls.

The score starts from the tool's effect class and is reduced by penalties for
thin intent, oversized inputs and write/execute calls without inputs. A caller
may state its own ``inputs["confidence"]``; it can only lower the score.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import List

from action_service.policy import PolicyOutcome

from .allowlist import EffectKind, ToolEntry
from .validation import GateRequest

BASE_SCORES = {
    EffectKind.READ: 0.95,
    EffectKind.SIMULATE: 0.95,
    EffectKind.PROPOSE: 0.75,
    EffectKind.WRITE: 0.88,
    EffectKind.EXECUTE: 0.70,
}

MIN_INTENT_CHARS = 12
MAX_INPUT_BYTES = 16 * 1024

SHORT_INTENT_PENALTY = 0.15
LARGE_INPUT_PENALTY = 0.40
EMPTY_INPUT_PENALTY = 0.20


class Verdict(str, Enum):
    ALLOW = "allow"
    REQUIRE_HUMAN = "require_human"
    DENY = "deny"

    @property
    def outcome(self) -> PolicyOutcome:
        return {
            Verdict.ALLOW: PolicyOutcome.PROCEED,
            Verdict.REQUIRE_HUMAN: PolicyOutcome.DEFER,
            Verdict.DENY: PolicyOutcome.REFUSE,
        }[self]


@dataclass(frozen=True)
class ConfidenceResult:
    score: float
    verdict: Verdict
    reason: str
    factors: List[str] = field(default_factory=list)


def _input_size(inputs) -> int:
    try:
        return len(json.dumps(inputs, default=str).encode("utf-8"))
    except (TypeError, ValueError):
        return MAX_INPUT_BYTES + 1


def validate_thresholds(allow_threshold: float, deny_threshold: float):
    if not 0.0 <= deny_threshold <= allow_threshold <= 1.0:
        raise ValueError(
            "thresholds must satisfy 0 <= deny <= allow <= 1 (deny=%s, allow=%s)" % (deny_threshold, allow_threshold)
        )


def evaluate_confidence(
    request: GateRequest,
    entry: ToolEntry,
    *,
    allow_threshold: float = 0.85,
    deny_threshold: float = 0.5,
) -> ConfidenceResult:
    validate_thresholds(allow_threshold, deny_threshold)

    score = BASE_SCORES[entry.effect]
    factors = ["base %s=%.2f" % (entry.effect.value, score)]

    if len(request.intent.strip()) < MIN_INTENT_CHARS:
        score -= SHORT_INTENT_PENALTY
        factors.append("intent shorter than %d chars" % MIN_INTENT_CHARS)

    if _input_size(request.inputs) > MAX_INPUT_BYTES:
        score -= LARGE_INPUT_PENALTY
        factors.append("inputs larger than %d bytes" % MAX_INPUT_BYTES)

    if entry.effect in (EffectKind.WRITE, EffectKind.EXECUTE) and not request.inputs:
        score -= EMPTY_INPUT_PENALTY
        factors.append("no inputs for a %s tool" % entry.effect.value)

    stated = request.inputs.get("confidence")
    if isinstance(stated, (int, float)) and not isinstance(stated, bool) and stated < score:
        score = float(stated)
        factors.append("caller stated confidence %.2f" % score)

    score = round(min(1.0, max(0.0, score)), 4)
    if score >= allow_threshold:
        verdict = Verdict.ALLOW
        reason = "score %.2f meets allow threshold %.2f" % (score, allow_threshold)
    elif score >= deny_threshold:
        verdict = Verdict.REQUIRE_HUMAN
        reason = "score %.2f below allow threshold %.2f" % (score, allow_threshold)
    else:
        verdict = Verdict.DENY
        reason = "score %.2f below deny threshold %.2f" % (score, deny_threshold)
    if len(factors) > 1:
        reason += " (%s)" % "; ".join(factors[1:])
    return ConfidenceResult(score=score, verdict=verdict, reason=reason, factors=factors)
