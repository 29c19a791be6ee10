"""
Escalation Chain & Response Windows

Fixed, acyclic escalation order tried when an enforcement action goes
unanswered, and the response window each target type gets before the
next step is proposed.

1. dmca_platform   (platform hosting the content)
2. dmca_host       (hosting provider)
3. dmca_cdn        (CDN such as Cloudflare)
4. google_deindex  (remove from search)
5. payment_complaint (payment processor)

cease_desist falls back to dmca_platform. Everything else terminates.
"""
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import List, Mapping, Optional

from ...models.db_models import ActionType


DEFAULT_ESCALATION_MAP = MappingProxyType({
    ActionType.DMCA_PLATFORM: ActionType.DMCA_HOST,
    ActionType.DMCA_HOST: ActionType.DMCA_CDN,
    ActionType.DMCA_CDN: ActionType.GOOGLE_DEINDEX,
    ActionType.GOOGLE_DEINDEX: ActionType.PAYMENT_COMPLAINT,
    ActionType.CEASE_DESIST: ActionType.DMCA_PLATFORM,
})

# Days a target has to respond before escalation. 0 = next step can start immediately.
DEFAULT_RESPONSE_DAYS = MappingProxyType({
    ActionType.DMCA_PLATFORM: 7,
    ActionType.MARKETPLACE_REPORT: 7,
    ActionType.DMCA_HOST: 14,
    ActionType.DMCA_CDN: 14,
    ActionType.GOOGLE_DEINDEX: 0,
    ActionType.BING_DEINDEX: 0,
    ActionType.PAYMENT_COMPLAINT: 14,
    ActionType.CEASE_DESIST: 14,
})


@dataclass(frozen=True)
class EscalationChain:
    """Immutable escalation mapping. Inject a custom one for per-tenant chains."""
    mapping: Mapping[ActionType, ActionType] = field(default_factory=lambda: DEFAULT_ESCALATION_MAP)

    def next_step(self, action_type) -> Optional[ActionType]:
        """Next action type in the chain, or None when the chain ends."""
        return self.mapping.get(ActionType(action_type))

    def traverse(self, start) -> List[ActionType]:
        """
        Every step after `start`, in order. Stops at the end of the chain
        or on the first repeated type.
        """
        steps = []
        seen = {ActionType(start)}
        current = self.next_step(start)
        while current is not None and current not in seen:
            steps.append(current)
            seen.add(current)
            current = self.next_step(current)
        return steps


@dataclass(frozen=True)
class ResponseWindows:
    """Days each action type waits for a response."""
    days: Mapping[ActionType, int] = field(default_factory=lambda: DEFAULT_RESPONSE_DAYS)
    default_days: int = 14

    def for_action(self, action_type) -> int:
        return self.days.get(ActionType(action_type), self.default_days)


DEFAULT_ESCALATION_CHAIN = EscalationChain()
DEFAULT_RESPONSE_WINDOWS = ResponseWindows()
