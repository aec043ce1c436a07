#!/usr/bin/env python3
"""
API endpoints for the Relocation Planner
"""

import base64
import binascii
import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException

from src.planner.api.models import (
    ChatRequest,
    ChatResponse,
    ChecklistItemResponse,
    ConsulateResponse,
    DocumentExplainRequest,
    DocumentExplanationResponse,
    LanguageRequest,
    PlaceResponse,
    PlacesRequest,
    ProfileRequest,
    ProfileResponse,
    StepResponse,
    StepStatusRequest,
)
from src.planner.plan_state import PlanStateService
from src.planner.planner_core import PlannerCore
from src.planner.planner_errors import (
    PlanGenerationError,
    PlanStateError,
    PlannerValidationError,
    ProfileNotFoundError,
    ProviderError,
    StepNotFoundError,
)
from src.profile_state import RelocationProfile, RelocationProfileRepository, Step, create_store_from_env

logger = logging.getLogger(__name__)

# Routes are sync: model and store calls block, so they run in FastAPI's threadpool
router = APIRouter(prefix="/api/v1", tags=["relocation"])

# Initialize dependencies (singleton pattern)
_planner = None
_state_service = None


def get_planner() -> PlannerCore:
    """Get or create planner instance"""
    global _planner
    if _planner is None:
        _planner = PlannerCore()
    return _planner


def get_state_service() -> PlanStateService:
    """Get or create the plan state service over the configured store"""
    global _state_service
    if _state_service is None:
        repository = RelocationProfileRepository(create_store_from_env())
        _state_service = PlanStateService(repository, planner=get_planner())
    return _state_service


def shutdown_dependencies() -> None:
    """Close the planner's HTTP client and drop the singletons."""
    global _planner, _state_service
    if _planner is not None:
        _planner.close()
    _planner = None
    _state_service = None


def _http_error(e: Exception) -> HTTPException:
    """Translate planner errors into HTTP errors."""
    if isinstance(e, (ProfileNotFoundError, StepNotFoundError)):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, PlannerValidationError):
        return HTTPException(status_code=422, detail=str(e))
    if isinstance(e, (ProviderError, PlanGenerationError)):
        return HTTPException(status_code=502, detail=f"Plan generation failed, please retry: {e}")
    logger.exception("❌ Unhandled planner error")
    return HTTPException(status_code=500, detail=str(e))


def _step_response(step: Step) -> StepResponse:
    return StepResponse(
        id=step.id,
        title=step.title,
        description=step.description,
        status=step.status,
        priority=step.priority,
        type=step.type,
        checklist_items=(
            [ChecklistItemResponse(**item.to_dict()) for item in step.checklist_items]
            if step.checklist_items is not None else None
        ),
        official_links=step.official_links,
        clickable_links=step.clickable_links(),
        suggested_questions=step.suggested_questions,
    )


def _profile_response(profile: RelocationProfile) -> ProfileResponse:
    return ProfileResponse(
        id=profile.id,
        user_id=profile.user_id,
        citizenship=profile.citizenship,
        current_residence=profile.current_residence,
        to_country=profile.to_country,
        destination_city=profile.destination_city,
        purpose=profile.purpose,
        is_already_in_destination=profile.is_already_in_destination,
        family_status=profile.family_status,
        plan=[_step_response(s) for s in profile.plan] if profile.plan else None,
        updated_at=profile.updated_at,
    )


@router.post("/profiles/{user_id}", response_model=ProfileResponse, status_code=201)
def create_profile(user_id: str, request: ProfileRequest,
                   service: PlanStateService = Depends(get_state_service)):
    """
    Create or replace the user's relocation profile and generate a plan.

    A failed generation leaves any previously stored profile untouched.
    """
    data = request.model_dump(exclude={"language"})
    try:
        profile = service.create_profile(user_id, data, language=request.language)
    except (PlanStateError, PlannerValidationError, ProviderError) as e:
        raise _http_error(e)
    return _profile_response(profile)


@router.get("/profiles/{user_id}", response_model=ProfileResponse)
def get_profile(user_id: str, service: PlanStateService = Depends(get_state_service)):
    try:
        return _profile_response(service.get_profile(user_id))
    except PlanStateError as e:
        raise _http_error(e)


@router.delete("/profiles/{user_id}", status_code=204)
def delete_profile(user_id: str, service: PlanStateService = Depends(get_state_service)):
    try:
        service.delete_profile(user_id)
    except PlanStateError as e:
        raise _http_error(e)


@router.post("/profiles/{user_id}/plan/regenerate", response_model=ProfileResponse)
def regenerate_plan(user_id: str, request: LanguageRequest,
                    service: PlanStateService = Depends(get_state_service)):
    try:
        return _profile_response(service.regenerate_plan(user_id, language=request.language))
    except (PlanStateError, ProviderError) as e:
        raise _http_error(e)


@router.post("/profiles/{user_id}/steps/{step_id}/toggle", response_model=StepResponse)
def toggle_step(user_id: str, step_id: str, service: PlanStateService = Depends(get_state_service)):
    try:
        return _step_response(service.toggle_step(user_id, step_id))
    except PlanStateError as e:
        raise _http_error(e)


@router.put("/profiles/{user_id}/steps/{step_id}/status", response_model=StepResponse)
def set_step_status(user_id: str, step_id: str, request: StepStatusRequest,
                    service: PlanStateService = Depends(get_state_service)):
    try:
        return _step_response(service.set_step_status(user_id, step_id, request.status))
    except (PlanStateError, PlannerValidationError) as e:
        raise _http_error(e)


@router.post("/profiles/{user_id}/steps/{step_id}/items/{item_id}/toggle",
             response_model=ChecklistItemResponse)
def toggle_checklist_item(user_id: str, step_id: str, item_id: str,
                          service: PlanStateService = Depends(get_state_service)):
    try:
        item = service.toggle_checklist_item(user_id, step_id, item_id)
    except PlanStateError as e:
        raise _http_error(e)
    return ChecklistItemResponse(**item.to_dict())


@router.get("/profiles/{user_id}/consulate", response_model=ConsulateResponse)
def find_consulate(user_id: str, language: str = "English",
                   service: PlanStateService = Depends(get_state_service),
                   planner: PlannerCore = Depends(get_planner)):
    """Consulate lookup always answers: verified info or a map-search fallback."""
    try:
        profile = service.get_profile(user_id)
    except PlanStateError as e:
        raise _http_error(e)
    return ConsulateResponse(**planner.find_nearest_consulate(profile, language).to_dict())


@router.post("/profiles/{user_id}/chat", response_model=ChatResponse)
def chat_about_step(user_id: str, request: ChatRequest,
                    service: PlanStateService = Depends(get_state_service),
                    planner: PlannerCore = Depends(get_planner)):
    try:
        profile = service.get_profile(user_id)
    except PlanStateError as e:
        raise _http_error(e)
    reply = planner.chat_about_step(profile, request.context_text, request.message,
                                    request.history, request.language)
    return ChatResponse(reply=reply)


@router.post("/chat", response_model=ChatResponse)
def chat(request: ChatRequest, planner: PlannerCore = Depends(get_planner)):
    return ChatResponse(reply=planner.chat(request.message, request.history, request.language))


@router.post("/documents/explain", response_model=DocumentExplanationResponse)
def explain_document(request: DocumentExplainRequest, planner: PlannerCore = Depends(get_planner)):
    file_bytes = None
    if request.file_base64:
        try:
            file_bytes = base64.b64decode(request.file_base64, validate=True)
        except (binascii.Error, ValueError):
            raise HTTPException(status_code=400, detail="file_base64 is not valid base64")
    try:
        result = planner.explain_document(request.text, file_bytes, request.mime_type, request.language)
    except PlannerValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return DocumentExplanationResponse(**result.to_dict())


@router.post("/places/suggestions", response_model=List[PlaceResponse])
def suggest_places(request: PlacesRequest, planner: PlannerCore = Depends(get_planner)):
    try:
        places = planner.suggest_places(request.city, request.budget, request.interests,
                                        request.search_query, request.language)
    except ProviderError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return [PlaceResponse(**p.to_dict()) for p in places]
