"""Shared policy vocabulary.

Delegation decisions and gate verdicts stay local to their subsystems; both
map onto ``PolicyOutcome`` so callers can treat them uniformly.
"""

from enum import Enum


class PolicyOutcome(str, Enum):
    PROCEED = "proceed"   # act now
    DEFER = "defer"       # a human has to (re)authorize first
    REFUSE = "refuse"     # not authorized
