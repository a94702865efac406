"""
Conflict Resolver: settles disagreements between roles.

When two or more roles recommend different choices on the same topic, the
resolver applies the workflow's strategies in order until one of them is
decisive:

- security_first: security-flagged proposals (or proposals from security
  roles) win
- domain_expert: the designated expert for the topic wins
- consensus: a strict majority of equivalent choices wins
"""

import logging
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from personaflow.workflow.models import ConflictPolicySpec

logger = logging.getLogger(__name__)


# =============================================================================
# Models
# =============================================================================

class Proposal(BaseModel):
    """One role's recommendation on a topic."""
    role: str
    topic: str
    choice: str
    rationale: str = ""
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    security: bool = False


class Conflict(BaseModel):
    """Differing proposals on the same topic."""
    topic: str
    proposals: List[Proposal] = Field(..., min_length=1)


class Resolution(BaseModel):
    """Outcome of resolving a conflict."""
    topic: str
    resolved: bool
    winner: Optional[Proposal] = None
    strategy: Optional[str] = None
    explanation: str = ""

    def alternatives(self, conflict: Conflict) -> List[str]:
        """Choices that lost, in proposal order, without duplicates."""
        if self.winner is None:
            return []
        chosen = normalize_choice(self.winner.choice)
        result: List[str] = []
        for proposal in conflict.proposals:
            if normalize_choice(proposal.choice) != chosen and proposal.choice not in result:
                result.append(proposal.choice)
        return result


def normalize_choice(choice: str) -> str:
    """Case- and whitespace-insensitive form of a choice."""
    return " ".join(choice.split()).casefold()


def has_conflict(proposals: List[Proposal]) -> bool:
    """True when the proposals do not all agree."""
    return len({normalize_choice(p.choice) for p in proposals}) > 1


# =============================================================================
# Resolver
# =============================================================================

class ConflictResolver:
    """
    Applies a ConflictPolicySpec to conflicts.

    Args:
        policy: Strategies, expert mapping and fallback behaviour.
        registry: Optional PersonaRegistry; its expert_for(topic) names the
            expert for the domain_expert strategy when the policy has no
            explicit mapping.
    """

    def __init__(
        self,
        policy: Optional[ConflictPolicySpec] = None,
        registry=None,
    ):
        self.policy = policy or ConflictPolicySpec()
        self.registry = registry
        self._strategies: Dict[str, Callable[[Conflict], Optional[Resolution]]] = {
            "security_first": self._security_first,
            "domain_expert": self._domain_expert,
            "consensus": self._consensus,
        }

    def resolve(self, conflict: Conflict) -> Resolution:
        """Resolve a conflict with the first decisive strategy."""
        for name in self.policy.strategies:
            resolution = self._strategies[name](conflict)
            if resolution is not None:
                logger.info(
                    f"Conflict on '{conflict.topic}' resolved by {name}: "
                    f"{resolution.winner.role} -> {resolution.winner.choice}"
                )
                return resolution

        if self.policy.on_unresolved == "highest_confidence":
            winner = max(conflict.proposals, key=lambda p: p.confidence)
            logger.info(
                f"Conflict on '{conflict.topic}' settled by highest confidence: {winner.role}"
            )
            return Resolution(
                topic=conflict.topic,
                resolved=True,
                winner=winner,
                strategy="highest_confidence",
                explanation=f"No strategy was decisive; {winner.role} had the highest confidence",
            )

        logger.warning(f"Conflict on '{conflict.topic}' could not be resolved, escalating")
        return Resolution(
            topic=conflict.topic,
            resolved=False,
            explanation="No strategy was decisive: "
            + ", ".join(f"{p.role}={p.choice}" for p in conflict.proposals),
        )

    # =========================================================================
    # Strategies
    # =========================================================================

    def _security_first(self, conflict: Conflict) -> Optional[Resolution]:
        security_roles = set(self.policy.security_roles)
        flagged = [p for p in conflict.proposals if p.security or p.role in security_roles]
        if not flagged:
            return None
        if len({normalize_choice(p.choice) for p in flagged}) == 1:
            winner = flagged[0]
        else:
            top = max(p.confidence for p in flagged)
            leaders = [p for p in flagged if p.confidence == top]
            if len({normalize_choice(p.choice) for p in leaders}) > 1:
                return None
            winner = leaders[0]
        return Resolution(
            topic=conflict.topic,
            resolved=True,
            winner=winner,
            strategy="security_first",
            explanation=f"Security concern raised by {winner.role} takes priority",
        )

    def _domain_expert(self, conflict: Conflict) -> Optional[Resolution]:
        expert = self.policy.domain_experts.get(conflict.topic)
        if expert is None and self.registry is not None:
            proposers = [p.role for p in conflict.proposals]
            expert = self.registry.expert_for(conflict.topic)
            if expert not in proposers:
                expert = None
        if expert is None:
            return None
        for proposal in conflict.proposals:
            if proposal.role == expert:
                return Resolution(
                    topic=conflict.topic,
                    resolved=True,
                    winner=proposal,
                    strategy="domain_expert",
                    explanation=f"Deferred to domain expert {expert}",
                )
        return None

    def _consensus(self, conflict: Conflict) -> Optional[Resolution]:
        counts: Dict[str, int] = {}
        for proposal in conflict.proposals:
            key = normalize_choice(proposal.choice)
            counts[key] = counts.get(key, 0) + 1
        key, votes = max(counts.items(), key=lambda item: item[1])
        if votes * 2 <= len(conflict.proposals):
            return None
        winner = next(p for p in conflict.proposals if normalize_choice(p.choice) == key)
        return Resolution(
            topic=conflict.topic,
            resolved=True,
            winner=winner,
            strategy="consensus",
            explanation=f"{votes} of {len(conflict.proposals)} roles agreed",
        )
