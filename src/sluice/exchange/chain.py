"""
Sluice Delegation Chains

Computes the delegation metadata carried by a derived token and enforces
the maximum chain depth.

Depth counts exchanges, not actors: every exchange adds one level whether
or not an actor token was presented, which bounds plain re-scoping chains
as well as delegation chains.

Actor claims nest in order from the original subject side (outermost) to
the latest actor (innermost)::

    {"sub": "first-actor", "act": {"sub": "second-actor"}}
"""

from __future__ import annotations

from typing import Protocol

from sluice.config import DEFAULT_MAX_CHAIN_DEPTH
from sluice.core.models import ActorClaim, ChainMetadata, ParsedToken, Token
from sluice.exceptions import DelegationDepthExceededError


class LineageStore(Protocol):
    def lineage(self, token_id: str, max_hops: int | None = None) -> list[Token]: ...


def nest_actor_claims(chain: list[ActorClaim]) -> dict | None:
    """Fold an ordered chain into a nested RFC 8693 ``act`` claim."""
    claim: dict | None = None
    for link in reversed(chain):
        outer = link.to_claim()
        if claim is not None:
            outer["act"] = claim
        claim = outer
    return claim


def reconstruct_chain(store: LineageStore, token_id: str, max_hops: int | None = None) -> list[ActorClaim]:
    """Rebuild the delegation chain of a stored token from its lineage.

    Each token records only the actor added by the exchange that created
    it; walking ``source_token_id`` edges from the root collects them in
    order.
    """
    return [
        ActorClaim(**token.actor)
        for token in store.lineage(token_id, max_hops=max_hops)
        if token.actor
    ]


class ActorChainBuilder:
    """Builds chain metadata for a token about to be derived from ``source``."""

    def __init__(self, max_depth: int = DEFAULT_MAX_CHAIN_DEPTH):
        self._max_depth = max_depth

    @property
    def max_depth(self) -> int:
        return self._max_depth

    def effective_max_depth(self, override: int | None = None) -> int:
        """A policy override can tighten the configured maximum, never widen it."""
        if override is None:
            return self._max_depth
        return min(self._max_depth, override)

    def build(
        self,
        source: ParsedToken,
        actor: ParsedToken | None = None,
        max_depth_override: int | None = None,
    ) -> ChainMetadata:
        """Compute ``act``/``may_act`` claims and depth for the derived token.

        Raises:
            DelegationDepthExceededError: The derived token would be deeper
                than the effective maximum.
        """
        limit = self.effective_max_depth(max_depth_override)
        depth = source.chain_depth + 1
        if depth > limit:
            raise DelegationDepthExceededError(depth, limit, details={"source_token_id": source.token_id})

        chain = list(source.delegation_chain)
        if actor is not None:
            chain.append(ActorClaim(sub=actor.principal or actor.client_id, client_id=actor.client_id))

        return ChainMetadata(
            act_claim=nest_actor_claims(chain),
            may_act_claim=source.may_act,
            depth=depth,
            chain=chain,
        )
