"""Result types for propagation."""

from dataclasses import dataclass, field


@dataclass(frozen=True)
class AffectedCopies:
    """Personalized copies derived from one upstream entity.

    Attributes:
        affected_user_ids: Clients owning at least one of the copies
        client_session_content_ids: Session copies ({clientId}_{date}_{sessionId})
        client_plan_content_ids: Week copies ({clientId}_{programId}_{weekKey})
        assignment_ids: Nutrition assignments with a personalized copy
        copy_owners: Client id of each week or session copy, keyed by copy id
    """

    affected_user_ids: list[str] = field(default_factory=list)
    client_session_content_ids: list[str] = field(default_factory=list)
    client_plan_content_ids: list[str] = field(default_factory=list)
    assignment_ids: list[str] = field(default_factory=list)
    copy_owners: dict[str, str] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return len(self.client_session_content_ids) + len(self.client_plan_content_ids) + len(self.assignment_ids)


@dataclass(frozen=True)
class AffectedUser:
    user_id: str
    display_name: str


@dataclass(frozen=True)
class PropagationResult:
    """Outcome of a propagation run.

    Each copy is handled independently; a failure is recorded in `errors`
    and the run continues with the next copy.
    """

    propagated: int
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors
