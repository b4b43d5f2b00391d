"""
Target Resolver

Turns a step's approver specification into the concrete set of actors allowed
to act on it. Each target type is its own class with a single resolve()
method; build_target() maps a (target_type, target_value) pair to one.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, FrozenSet, List

from .directory import DirectoryInterface
from .errors import UnresolvableTargetError, ValidationError
from .models import TargetType


MAX_CHAIN_HOPS = 10


@dataclass(frozen=True)
class ActorSet:
    """Eligible approvers for a step; system sets need no human"""
    actor_ids: FrozenSet[str] = field(default_factory=frozenset)
    system: bool = False

    def __contains__(self, actor_id: str) -> bool:
        return actor_id in self.actor_ids

    def __len__(self) -> int:
        return len(self.actor_ids)

    def sorted_ids(self) -> List[str]:
        return sorted(self.actor_ids)


@dataclass(frozen=True)
class ResolutionContext:
    """What a target needs to know about the report being routed"""
    submitter_id: str
    directory: DirectoryInterface


class ApproverTarget(ABC):
    """Approver specification for a step"""

    @abstractmethod
    def resolve(self, context: ResolutionContext) -> ActorSet:
        """Resolve to eligible actors; raises UnresolvableTargetError when nobody qualifies"""
        pass

    @abstractmethod
    def describe(self) -> str:
        pass


class RoleTarget(ApproverTarget):
    """Every actor holding the named role"""

    def __init__(self, role: str):
        self.role = role

    def resolve(self, context: ResolutionContext) -> ActorSet:
        members = context.directory.members_of_role(self.role)
        if not members:
            raise UnresolvableTargetError(f"No actors hold role '{self.role}'", {"role": self.role})
        return ActorSet(frozenset(members))

    def describe(self) -> str:
        return f"role:{self.role}"


class RelationshipTarget(ApproverTarget):
    """The single actor reached from the submitter via the named relation"""

    def __init__(self, relationship: str):
        self.relationship = relationship

    def resolve(self, context: ResolutionContext) -> ActorSet:
        target = context.directory.relationship_target(context.submitter_id, self.relationship)
        if target is None:
            raise UnresolvableTargetError(
                f"Submitter {context.submitter_id} has no '{self.relationship}'",
                {"submitter_id": context.submitter_id, "relationship": self.relationship}
            )
        return ActorSet(frozenset({target}))

    def describe(self) -> str:
        return f"relationship:{self.relationship}"


class HybridTarget(ApproverTarget):
    """Role holders found on the submitter's relationship chain"""

    def __init__(self, role: str, relationship: str):
        self.role = role
        self.relationship = relationship

    def chain(self, context: ResolutionContext) -> List[str]:
        """Actors reached by following the relation upward, at most MAX_CHAIN_HOPS"""
        chain: List[str] = []
        seen = {context.submitter_id}
        current = context.submitter_id
        for _ in range(MAX_CHAIN_HOPS):
            current = context.directory.relationship_target(current, self.relationship)
            if current is None or current in seen:
                break
            chain.append(current)
            seen.add(current)
        return chain

    def resolve(self, context: ResolutionContext) -> ActorSet:
        chain = self.chain(context)
        if not chain:
            raise UnresolvableTargetError(
                f"Submitter {context.submitter_id} has no '{self.relationship}'",
                {"submitter_id": context.submitter_id, "relationship": self.relationship}
            )

        members = context.directory.members_of_role(self.role)
        eligible = frozenset(actor_id for actor_id in chain if actor_id in members)
        if not eligible:
            raise UnresolvableTargetError(
                f"Nobody on the '{self.relationship}' chain holds role '{self.role}'",
                {"submitter_id": context.submitter_id, "role": self.role,
                 "relationship": self.relationship}
            )
        return ActorSet(eligible)

    def describe(self) -> str:
        return f"hybrid:{self.role}/{self.relationship}"


class SystemTarget(ApproverTarget):
    """Automatic check; no human acts on the step"""

    def resolve(self, context: ResolutionContext) -> ActorSet:
        return ActorSet(system=True)

    def describe(self) -> str:
        return "system"


def build_target(target_type: TargetType, target_value: Any) -> ApproverTarget:
    """Create the target object for a step or escalation block"""
    if target_type == TargetType.ROLE:
        return RoleTarget(target_value)
    if target_type == TargetType.RELATIONSHIP:
        return RelationshipTarget(target_value)
    if target_type == TargetType.HYBRID:
        if not isinstance(target_value, dict):
            raise ValidationError("Hybrid target needs {role, relationship}")
        return HybridTarget(target_value['role'], target_value['relationship'])
    if target_type == TargetType.SYSTEM:
        return SystemTarget()
    raise ValidationError(f"Unknown target type: {target_type}")
