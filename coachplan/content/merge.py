"""Read-time merge of plan sessions with the library sessions they reference.

Field precedence for a reference-typed plan session:
- title, image_url: the plan session's own value when set, else the library's
- exercises (and their sets): always the library's
Inline sessions (use_local_content=True) and sessions without a reference are
returned unchanged.
"""

from __future__ import annotations

from coachplan.content.types import LibrarySession, PlanSession


def merge_plan_session(plan_session: PlanSession, library_session: LibrarySession | None) -> PlanSession:
    """Overlay a library session onto a plan session.

    Args:
        plan_session: Session as stored in the plan module
        library_session: Live library session for plan_session.library_session_ref,
            or None when it could not be loaded

    Returns:
        A new PlanSession; neither input is modified. When the session is a
        reference but the library session is missing, the result keeps the
        plan's title/image and has no exercises.
    """
    if not plan_session.is_library_reference:
        return plan_session.model_copy(deep=True)

    if library_session is None:
        return plan_session.model_copy(update={"exercises": []}, deep=True)

    return plan_session.model_copy(
        update={
            "title": plan_session.title if plan_session.title is not None else library_session.title,
            "image_url": plan_session.image_url if plan_session.image_url is not None else library_session.image_url,
            "exercises": [ex.model_copy(deep=True) for ex in library_session.exercises],
        },
        deep=True,
    )
