"""
Role contracts for Agent Relay agents.

Defines which phases each role runs in, which capabilities it may use,
which artifacts it needs before dispatch and which it is allowed to
produce. Contracts are loaded once at startup (built-in table plus
config.yaml overrides) and never change while the process runs.

Convention documents are attached here as opaque text blobs keyed by the
path glob they apply to; they are handed to the model verbatim.
"""
from __future__ import annotations

import fnmatch
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Iterable

from agent_relay.errors import ConfigError, UnauthorizedError, UnknownRoleError
from agent_relay.models import (
    PLAN_ARTIFACT,
    REPORT_ARTIFACT,
    Capability,
    Phase,
    plan_artifact,
)
from agent_relay.utils.fs import FileSystemError, read_file

if TYPE_CHECKING:
    from agent_relay.config import RelayConfig

# Capability sets shared by several roles
RESEARCH_ONLY = frozenset({Capability.READ, Capability.SEARCH_TEXT, Capability.SEARCH_GLOB})
FULL = frozenset(Capability)


@dataclass(frozen=True)
class RoleContract:
    """Static contract of one role."""
    name: str
    phases: frozenset[Phase]
    capabilities: frozenset[Capability]
    required_inputs: frozenset[str] = frozenset()
    produces: frozenset[str] = frozenset()
    description: str = ""

    @property
    def plan_types(self) -> frozenset[str]:
        """Plan types this role is allowed to register."""
        prefix = f"{PLAN_ARTIFACT}:"
        return frozenset(a[len(prefix):] for a in self.produces if a.startswith(prefix))

    @property
    def produces_report(self) -> bool:
        return REPORT_ARTIFACT in self.produces

    def allows(self, capability: Capability) -> bool:
        return capability in self.capabilities

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for display and JSON output."""
        return {
            "name": self.name,
            "phases": sorted(p.value for p in self.phases),
            "capabilities": sorted(c.value for c in self.capabilities),
            "required_inputs": sorted(self.required_inputs),
            "produces": sorted(self.produces),
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RoleContract:
        """
        Build a contract from a config mapping.

        Raises:
            ConfigError: If a phase or capability is not recognized.
        """
        name = data.get("name")
        if not name:
            raise ConfigError(f"Role definition without a name: {data!r}")
        return cls(
            name=name,
            phases=frozenset(parse_phase(p) for p in data.get("phases", [])),
            capabilities=frozenset(_parse_capability(c) for c in data.get("capabilities", [])),
            required_inputs=frozenset(data.get("required_inputs", [])),
            produces=frozenset(data.get("produces", [])),
            description=data.get("description", ""),
        )


@dataclass(frozen=True)
class RuleDocument:
    """A convention document applied to paths matching ``glob``."""
    glob: str
    text: str
    source: str = ""

    def applies_to(self, path: str) -> bool:
        return fnmatch.fnmatch(path, self.glob)


def parse_phase(value: Any) -> Phase:
    """Accept a Phase, its value ("planning") or its name ("PLANNING")."""
    if isinstance(value, Phase):
        return value
    text = str(value).strip()
    try:
        return Phase(text.lower())
    except ValueError:
        pass
    try:
        return Phase[text.upper()]
    except KeyError:
        raise ConfigError(f"Unknown phase: {value!r}")


def _parse_capability(value: Any) -> Capability:
    if isinstance(value, Capability):
        return value
    try:
        return Capability(str(value).strip().lower())
    except ValueError:
        raise ConfigError(f"Unknown capability: {value!r}")


DEFAULT_CONTRACTS: tuple[RoleContract, ...] = (
    RoleContract(
        name="ui-planner",
        phases=frozenset({Phase.PLANNING}),
        capabilities=RESEARCH_ONLY,
        produces=frozenset({plan_artifact("ui")}),
        description="Plans components, props interfaces and styling for the feature",
    ),
    RoleContract(
        name="logic-planner",
        phases=frozenset({Phase.PLANNING}),
        capabilities=RESEARCH_ONLY,
        produces=frozenset({plan_artifact("logic")}),
        description="Plans state, data flow and business logic for the feature",
    ),
    RoleContract(
        name="architecture-planner",
        phases=frozenset({Phase.PLANNING}),
        capabilities=RESEARCH_ONLY,
        produces=frozenset({plan_artifact("nextjs-architecture")}),
        description="Plans routes, layouts and server/client boundaries",
    ),
    RoleContract(
        name="executor",
        phases=frozenset({Phase.EXECUTING}),
        capabilities=FULL,
        required_inputs=frozenset({PLAN_ARTIFACT}),
        description="Implements the feature from the registered plans",
    ),
    RoleContract(
        name="reviewer",
        phases=frozenset({Phase.REVIEWING}),
        capabilities=RESEARCH_ONLY | {Capability.EXECUTE_SHELL},
        produces=frozenset({REPORT_ARTIFACT}),
        description="Reviews the implementation against the project conventions",
    ),
    RoleContract(
        name="refactorer",
        phases=frozenset({Phase.REFACTORING}),
        capabilities=RESEARCH_ONLY | {Capability.EDIT_EXISTING_FILE, Capability.EXECUTE_SHELL},
        required_inputs=frozenset({REPORT_ARTIFACT}),
        description="Applies review findings by editing existing files",
    ),
)


class RoleRegistry:
    """
    Immutable table of role contracts and rule documents.

    Side-effect free: every query is a lookup in the table built at init.
    """

    def __init__(
        self,
        contracts: Iterable[RoleContract] = DEFAULT_CONTRACTS,
        rules: Iterable[RuleDocument] = (),
    ) -> None:
        table: dict[str, RoleContract] = {}
        for contract in contracts:
            table[contract.name] = contract
        self._contracts = MappingProxyType(table)
        self._rules = tuple(rules)

    @classmethod
    def from_config(cls, config: RelayConfig) -> RoleRegistry:
        """
        Build the registry from the built-in table and config overrides.

        A configured role with the name of a built-in replaces it; other
        names are added.

        Raises:
            ConfigError: If a role definition or rule document is invalid.
        """
        table = {c.name: c for c in DEFAULT_CONTRACTS}
        for data in config.roles:
            if not isinstance(data, dict):
                raise ConfigError(f"Role definition must be a mapping: {data!r}")
            contract = RoleContract.from_dict(data)
            table[contract.name] = contract

        rules = []
        for source in config.rules:
            if source.text is not None:
                rules.append(RuleDocument(glob=source.glob, text=source.text, source="inline"))
                continue
            path = Path(source.path)
            if not path.is_absolute():
                path = Path(config.repo_root) / path
            try:
                rules.append(RuleDocument(glob=source.glob, text=read_file(path), source=str(path)))
            except FileSystemError as e:
                raise ConfigError(f"Cannot load rule document for {source.glob}: {e}")

        return cls(table.values(), rules)

    # Lookups

    def resolve(self, role: str) -> RoleContract:
        """
        Get the contract for a role.

        Raises:
            UnknownRoleError: If no contract exists.
        """
        contract = self._contracts.get(role)
        if contract is None:
            raise UnknownRoleError(role)
        return contract

    def authorize(self, role: str, capability: Capability | str) -> bool:
        """True if ``role`` exists and its contract grants ``capability``."""
        contract = self._contracts.get(role)
        if contract is None:
            return False
        try:
            return contract.allows(_parse_capability(capability))
        except ConfigError:
            return False

    def require(self, role: str, capability: Capability | str, detail: str = "") -> None:
        """
        Raise unless ``role`` may use ``capability``.

        Raises:
            UnknownRoleError: If the role has no contract.
            UnauthorizedError: If the capability is outside the contract.
        """
        self.resolve(role)
        if not self.authorize(role, capability):
            value = capability.value if isinstance(capability, Capability) else str(capability)
            raise UnauthorizedError(role, value, detail)

    def required_inputs(self, role: str) -> frozenset[str]:
        """Artifact types that must exist before ``role`` is dispatched."""
        return self.resolve(role).required_inputs

    def produced_outputs(self, role: str) -> frozenset[str]:
        """Artifact types ``role`` is allowed to produce."""
        return self.resolve(role).produces

    def eligible_roles(self, phase: Phase) -> list[str]:
        """Roles whose contract lists ``phase``, sorted by name."""
        return sorted(name for name, c in self._contracts.items() if phase in c.phases)

    def role_names(self) -> list[str]:
        return sorted(self._contracts)

    def contracts(self) -> list[RoleContract]:
        return [self._contracts[name] for name in self.role_names()]

    @property
    def rules(self) -> tuple[RuleDocument, ...]:
        return self._rules

    def rules_for(self, path: str) -> list[RuleDocument]:
        """Rule documents whose glob matches ``path``."""
        return [rule for rule in self._rules if rule.applies_to(path)]


# Process-wide registry, initialized once per repo root
_registry_cache: dict[str, RoleRegistry] = {}


def get_registry(config: RelayConfig) -> RoleRegistry:
    """
    Get the role registry for a config, building it on first use.

    Raises:
        ConfigError: If the configured roles or rules are invalid.
    """
    key = config.repo_root
    if key not in _registry_cache:
        _registry_cache[key] = RoleRegistry.from_config(config)
    return _registry_cache[key]


def clear_registry_cache() -> None:
    """Clear the registry cache. Useful for testing."""
    global _registry_cache
    _registry_cache = {}
