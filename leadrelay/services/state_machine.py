from enum import Enum


class AgentRole(str, Enum):
    INTAKE = "intake"
    QUALIFICATION = "qualification"
    SCHEDULING = "scheduling"
    SUPPORT = "support"


VALID_TRANSITIONS = {
    AgentRole.INTAKE: [AgentRole.QUALIFICATION],
    AgentRole.QUALIFICATION: [AgentRole.SCHEDULING, AgentRole.SUPPORT],
    AgentRole.SCHEDULING: [AgentRole.SUPPORT],
    AgentRole.SUPPORT: [],
}

INITIAL_ROLE = AgentRole.INTAKE


class InvalidTransitionError(Exception):
    def __init__(self, from_role: AgentRole, to_role: AgentRole | str):
        self.from_role = from_role
        self.to_role = to_role
        target = to_role.value if isinstance(to_role, AgentRole) else to_role
        super().__init__(f"Invalid handoff: {from_role.value} -> {target}")


def parse_role(value: AgentRole | str) -> AgentRole | None:
    if isinstance(value, AgentRole):
        return value
    try:
        return AgentRole(value)
    except ValueError:
        return None


def can_transition(from_role: AgentRole, to_role: AgentRole) -> bool:
    """Check if a handoff between roles is allowed."""
    allowed = VALID_TRANSITIONS.get(from_role, [])
    return to_role in allowed


def transition(from_role: AgentRole, to_role: AgentRole | str) -> AgentRole:
    """Validate a handoff target. Raises InvalidTransitionError if not allowed."""
    target = parse_role(to_role)
    if target is None or not can_transition(from_role, target):
        raise InvalidTransitionError(from_role, to_role)
    return target
