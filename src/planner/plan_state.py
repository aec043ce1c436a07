#!/usr/bin/env python3
"""
Plan State - step/item status transitions and profile lifecycle

Transitions:
- toggle(done) = in_progress
- toggle(in_progress) = done
- toggle(not_started) = done
- once created, a step never goes back to not_started
- checklist items flip `checked` independently; completing every item does NOT
  complete the parent step

Mutations are local-then-sync: the in-memory profile changes first, the full
document is saved, and the in-memory change is rolled back if the save fails.
"""

import logging
from typing import Dict, Any, Callable, Optional

from src.planner.planner_errors import (
    PlanGenerationError,
    PlanStateError,
    PlannerValidationError,
    ProfileNotFoundError,
    StepNotFoundError,
    StoreError,
)
from src.profile_state import (
    ChecklistItem,
    RelocationProfile,
    RelocationProfileRepository,
    Step,
    StepStatus,
)

logger = logging.getLogger(__name__)


def toggle_step_status(status) -> StepStatus:
    """Binary toggle: done -> in_progress, anything else -> done."""
    if StepStatus(status) == StepStatus.DONE:
        return StepStatus.IN_PROGRESS
    return StepStatus.DONE


def toggle_checklist_item(item: ChecklistItem) -> bool:
    item.checked = not item.checked
    return item.checked


class PlanStateService:
    """Profile lifecycle and plan mutations for one user at a time."""

    def __init__(self, repository: RelocationProfileRepository, planner=None):
        self.repository = repository
        self.planner = planner

    def _require_planner(self):
        if self.planner is None:
            raise PlanStateError("Plan generation is not configured")
        return self.planner

    def _commit(self, profile: RelocationProfile, rollback: Callable[[], None]) -> None:
        try:
            self.repository.save_profile(profile)
        except StoreError as e:
            rollback()
            logger.error("❌ Save failed for user %s, change rolled back: %s", profile.user_id, e)
            raise PlanStateError(f"Failed to save plan changes: {e}") from e

    @staticmethod
    def _find_step(profile: RelocationProfile, step_id: str) -> Step:
        step = profile.find_step(step_id)
        if step is None:
            raise StepNotFoundError(f"Step '{step_id}' not found in plan for user {profile.user_id}")
        return step

    def get_profile(self, user_id: str) -> RelocationProfile:
        profile = self.repository.get_profile(user_id)
        if profile is None:
            raise ProfileNotFoundError(f"No relocation profile for user {user_id}")
        return profile

    def _generate(self, profile: RelocationProfile, language: str):
        steps = self._require_planner().generate_plan(profile, language)
        if not steps:
            raise PlanGenerationError(f"No plan steps generated for user {profile.user_id}")
        return steps

    def create_profile(self, user_id: str, profile_data: Dict[str, Any],
                       language: str = "English") -> RelocationProfile:
        """
        Create (or replace) the user's profile and generate its plan.

        The profile is saved only after a plan was generated, so a failed
        generation never leaves a half-built profile behind.

        Raises:
            ProfileValidationError: Bad or missing profile fields
            ProviderError: Model call failed
            PlanGenerationError: Model produced no steps
        """
        profile = RelocationProfile.from_dict({**profile_data, "user_id": user_id, "plan": None})
        existing = self.repository.get_profile(user_id)
        if existing is not None:
            profile.id = existing.id
            profile.created_at = existing.created_at

        profile.replace_plan(self._generate(profile, language))
        try:
            self.repository.save_profile(profile)
        except StoreError as e:
            raise PlanStateError(f"Failed to save profile: {e}") from e
        logger.info("✅ Profile created for user %s with %d steps", user_id, len(profile.plan))
        return profile

    def regenerate_plan(self, user_id: str, language: str = "English") -> RelocationProfile:
        """Replace the whole plan; on any failure the stored plan is left untouched."""
        profile = self.get_profile(user_id)
        steps = self._generate(profile, language)
        previous = profile.plan
        profile.replace_plan(steps)

        def rollback():
            profile.plan = previous

        self._commit(profile, rollback)
        return profile

    def set_step_status(self, user_id: str, step_id: str, status,
                        profile: Optional[RelocationProfile] = None) -> Step:
        """
        Move a step to in_progress or done.

        Raises:
            PlannerValidationError: If status is not_started or unknown
        """
        try:
            status = StepStatus(status)
        except ValueError:
            raise PlannerValidationError(f"Invalid step status '{status}'")
        if status == StepStatus.NOT_STARTED:
            raise PlannerValidationError("A step cannot be reset to not_started")

        profile = profile or self.get_profile(user_id)
        step = self._find_step(profile, step_id)
        previous = step.status
        step.status = status

        def rollback():
            step.status = previous

        self._commit(profile, rollback)
        return step

    def toggle_step(self, user_id: str, step_id: str,
                    profile: Optional[RelocationProfile] = None) -> Step:
        """
        Toggle a step between done and in_progress.

        Args:
            user_id: Owner of the profile
            step_id: Step to toggle
            profile: Caller's in-memory copy to mutate; loaded from the store when None
        """
        profile = profile or self.get_profile(user_id)
        step = self._find_step(profile, step_id)
        return self.set_step_status(user_id, step_id, toggle_step_status(step.status), profile=profile)

    def toggle_checklist_item(self, user_id: str, step_id: str, item_id: str,
                              profile: Optional[RelocationProfile] = None) -> ChecklistItem:
        """Flip one checklist item; the parent step status is not touched."""
        profile = profile or self.get_profile(user_id)
        step = self._find_step(profile, step_id)
        item = step.find_item(item_id)
        if item is None:
            raise StepNotFoundError(f"Checklist item '{item_id}' not found in step '{step_id}'")

        toggle_checklist_item(item)
        self._commit(profile, lambda: toggle_checklist_item(item))
        return item

    def delete_profile(self, user_id: str) -> None:
        """Remove the profile together with its plan (user deletion cascade)."""
        try:
            self.repository.delete_profile(user_id)
        except StoreError as e:
            raise PlanStateError(f"Failed to delete profile: {e}") from e
