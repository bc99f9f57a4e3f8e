"""Content model for library sessions, plans and client copies.

Stored field names follow the existing document layout: camelCase for
dayIndex / librarySessionRef / useLocalContent / planId / moduleIndex /
assignedAt, snake_case elsewhere. Models accept either the alias or the field
name and always dump by alias. Unknown fields on sets and exercises are kept
(coaches attach arbitrary prescription fields to sets).
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

SourceType = Literal["plan", "library_session", "nutrition_plan"]


class ContentModel(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    def to_document(self, exclude: set[str] | None = None) -> dict[str, Any]:
        """Dump as a JSON-safe document payload using the stored field names."""
        return self.model_dump(mode="json", by_alias=True, exclude=exclude)


class SetEntry(ContentModel):
    """One set of an exercise. Prescription fields beyond reps/intensity pass through."""

    id: str
    title: str | None = None
    order: int = 0
    reps: str | int | None = None
    intensity: str | int | float | None = None


class Exercise(ContentModel):
    id: str
    title: str | None = None
    name: str | None = None
    order: int = 0
    sets: list[SetEntry] = Field(default_factory=list)


class LibrarySession(ContentModel):
    """Creator-owned canonical session template."""

    id: str
    creator_id: str
    title: str | None = None
    image_url: str | None = None
    version: int = 1
    exercises: list[Exercise] = Field(default_factory=list)


class PlanSession(ContentModel):
    """A session inside a plan module or a client week copy.

    Either a reference to a library session (resolved at read time) or inline
    content (use_local_content=True). Client copies always hold literal
    exercises; library_session_ref is kept on them as provenance.
    """

    id: str
    title: str | None = None
    image_url: str | None = None
    order: int = 0
    day_index: int | None = Field(default=None, alias="dayIndex")
    library_session_ref: str | None = Field(default=None, alias="librarySessionRef")
    use_local_content: bool = Field(default=False, alias="useLocalContent")
    exercises: list[Exercise] = Field(default_factory=list)

    @property
    def is_library_reference(self) -> bool:
        return bool(self.library_session_ref) and not self.use_local_content


class Module(ContentModel):
    """One week's worth of plan content."""

    id: str
    title: str | None = None
    order: int = 0
    sessions: list[PlanSession] = Field(default_factory=list)


class Plan(ContentModel):
    id: str
    creator_id: str
    title: str | None = None
    description: str | None = None


class Provenance(ContentModel):
    """Where a personalized copy came from.

    Attributes:
        source_type: "plan" (week copy), "library_session" (session copy) or "nutrition_plan"
        source_id: Plan id / library session id / nutrition plan id
        source_sub_id: Module id for week copies, None otherwise
    """

    model_config = ConfigDict(extra="forbid", populate_by_name=True, frozen=True)

    source_type: SourceType
    source_id: str
    source_sub_id: str | None = None


class ClientProgram(ContentModel):
    """client_programs/{clientId}_{programId}: a program assigned to a client."""

    id: str
    program_id: str
    user_id: str
    content_plan_id: str | None = None
    version_snapshot: dict[str, Any] | None = None
    created_at: str | None = None
    updated_at: str | None = None


class PlanAssignment(ContentModel):
    """planAssignments[weekKey] value: which plan module fills a calendar week.

    Bookkeeping fields of the stored per-week record are dropped.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    plan_id: str = Field(alias="planId")
    module_index: int = Field(alias="moduleIndex")
    assigned_at: str | None = Field(default=None, alias="assignedAt")


class ClientPlanContent(ContentModel):
    """Copy-on-write overlay for one client x program x week."""

    id: str
    title: str | None = None
    order: int = 0
    client_id: str | None = None
    program_id: str | None = None
    week_key: str | None = None
    provenance: Provenance | None = None
    source_plan_id: str | None = None
    source_module_id: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    cleared: bool = False
    sessions: list[PlanSession] = Field(default_factory=list)

    @property
    def is_personalized(self) -> bool:
        """A copy is authoritative once it holds at least one session.

        A copy whose sessions were all deleted by the client stays
        authoritative (cleared=True) until it is reset.
        """
        return len(self.sessions) > 0 or self.cleared


class ClientSessionContent(ContentModel):
    """Copy-on-write overlay for one date-assigned session."""

    id: str
    client_id: str | None = None
    title: str | None = None
    image_url: str | None = None
    creator_id: str | None = None
    provenance: Provenance | None = None
    source_session_id: str | None = None
    version: int = 1
    created_at: str | None = None
    updated_at: str | None = None
    exercises: list[Exercise] = Field(default_factory=list)


class ClientSessionAssignment(ContentModel):
    """One session placed on one calendar date for a client."""

    id: str
    client_id: str
    program_id: str
    plan_id: str | None = None
    session_id: str
    module_id: str | None = None
    date: str
    library_session_ref: bool = False


class ResolvedWeek(BaseModel):
    """What the calendar shows for a week, and which tier it came from."""

    week_key: str
    source: Literal["client_copy", "plan", "none"]
    title: str | None = None
    plan_id: str | None = None
    module_id: str | None = None
    sessions: list[PlanSession] = Field(default_factory=list)

    @property
    def from_client_copy(self) -> bool:
        return self.source == "client_copy"


class ResolvedSession(BaseModel):
    """Resolved content of a single date-assigned session."""

    client_session_id: str
    source: Literal["client_copy", "library", "none"]
    title: str | None = None
    image_url: str | None = None
    exercises: list[Exercise] = Field(default_factory=list)


NUTRITION_SNAPSHOT_FIELDS = (
    "name",
    "description",
    "daily_calories",
    "daily_protein_g",
    "daily_carbs_g",
    "daily_fat_g",
    "categories",
)


class NutritionPlan(ContentModel):
    id: str
    creator_id: str
    name: str = ""
    description: str = ""
    daily_calories: float | None = None
    daily_protein_g: float | None = None
    daily_carbs_g: float | None = None
    daily_fat_g: float | None = None
    categories: list[dict[str, Any]] = Field(default_factory=list)

    def snapshot(self) -> dict[str, Any]:
        """Denormalized plan fields cached on each assignment record."""
        return self.model_dump(mode="json", include=set(NUTRITION_SNAPSHOT_FIELDS))


class NutritionAssignment(ContentModel):
    """nutrition_assignments record; `plan` is the cached snapshot read by the client app."""

    id: str
    user_id: str = Field(alias="userId")
    plan_id: str = Field(alias="planId")
    assigned_by: str | None = Field(default=None, alias="assignedBy")
    plan: dict[str, Any] | None = None


class ClientNutritionPlanContent(ContentModel):
    id: str
    assignment_id: str
    provenance: Provenance | None = None
    source_plan_id: str | None = None
    name: str = ""
    description: str = ""
    daily_calories: float | None = None
    daily_protein_g: float | None = None
    daily_carbs_g: float | None = None
    daily_fat_g: float | None = None
    categories: list[dict[str, Any]] = Field(default_factory=list)
