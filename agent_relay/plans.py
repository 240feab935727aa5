"""
Plan Registry for Agent Relay.

Indexes plan artifacts of one session by (plan type, feature name):

    sessions/<id>/plans/<plan_type>/<feature>.json

At most one live plan exists per key; registering again overwrites it.
Concurrent registrations for the same key resolve as last-writer-wins.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Iterable, Optional

from agent_relay.errors import ArtifactNotFoundError, PlanNotFoundError
from agent_relay.models import PlanArtifact

if TYPE_CHECKING:
    from agent_relay.artifact_store import ArtifactStore
    from agent_relay.logger import RelayLogger


class PlanRegistry:
    """Plans of a single session, stored in the ArtifactStore."""

    def __init__(
        self,
        store: ArtifactStore,
        session_id: str,
        logger: Optional[RelayLogger] = None,
    ) -> None:
        self.store = store
        self.session_id = session_id
        self.logger = logger

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info"
    ) -> None:
        """Log an event if logger is configured."""
        if self.logger:
            log_data = {"component": "plans", "session_id": self.session_id}
            if data:
                log_data.update(data)
            self.logger.log(event_type, log_data, level=level)

    @property
    def prefix(self) -> str:
        return f"sessions/{self.session_id}/plans/"

    def key_for(self, plan_type: str, feature: str) -> str:
        """Store key of the plan for (plan_type, feature)."""
        return f"{self.prefix}{plan_type}/{feature}"

    def register(self, plan_type: str, feature: str, body: str, role: str) -> Optional[str]:
        """
        Register a plan, replacing any existing plan for the same key.

        Args:
            plan_type: Plan type, e.g. "ui" or "logic".
            feature: Feature name the plan is for.
            body: Plan body; opaque to the registry.
            role: Role that produced the plan.

        Returns:
            The body of the replaced plan, or None if there was none.
        """
        key = self.key_for(plan_type, feature)
        previous: Optional[str] = None
        try:
            previous = PlanArtifact.from_dict(self.store.get(key)).body
        except ArtifactNotFoundError:
            pass

        plan = PlanArtifact(plan_type=plan_type, feature=feature, body=body, role=role)
        self.store.put(key, plan.to_dict())
        self._log("plan_registered", {
            "plan_type": plan_type,
            "feature": feature,
            "role": role,
            "replaced": previous is not None,
        })
        return previous

    def resolve(self, plan_type: str, feature: str) -> PlanArtifact:
        """
        Get the live plan for (plan_type, feature).

        Raises:
            PlanNotFoundError: If no plan is registered for the key.
        """
        try:
            return PlanArtifact.from_dict(self.store.get(self.key_for(plan_type, feature)))
        except ArtifactNotFoundError:
            raise PlanNotFoundError(plan_type, feature)

    def has(self, plan_type: str, feature: str) -> bool:
        return self.store.exists(self.key_for(plan_type, feature))

    def list(self) -> list[tuple[str, str]]:
        """All registered (plan_type, feature) keys, sorted."""
        keys = []
        for key in self.store.list(self.prefix):
            rest = key[len(self.prefix):].split("/")
            if len(rest) == 2:
                keys.append((rest[0], rest[1]))
        return keys

    def plan_types(self, feature: str) -> set[str]:
        """Plan types registered for a feature."""
        return {plan_type for plan_type, name in self.list() if name == feature}

    def is_complete(self, required_types: Iterable[str], feature: str) -> bool:
        """True iff every required type has a plan for ``feature``."""
        return set(required_types) <= self.plan_types(feature)

    def missing(self, required_types: Iterable[str], feature: str) -> list[str]:
        """Required types without a plan for ``feature``, sorted."""
        return sorted(set(required_types) - self.plan_types(feature))
