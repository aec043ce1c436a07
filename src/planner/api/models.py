#!/usr/bin/env python3
"""
Pydantic models for the Relocation Planner API
Request and response schemas
"""

from datetime import datetime
from typing import Dict, List, Any, Optional

from pydantic import BaseModel, Field

from src.profile_state import FamilyStatus, Purpose, StepStatus, StepType, TargetCountry


class ProfileRequest(BaseModel):
    """Request model for profile creation (generates the plan)."""
    citizenship: str = Field(..., min_length=1)
    current_residence: str = Field(..., min_length=1)
    to_country: TargetCountry
    purpose: Purpose
    destination_city: Optional[str] = None
    is_already_in_destination: bool = False
    family_status: FamilyStatus = FamilyStatus.ALONE
    language: str = "English"


class LanguageRequest(BaseModel):
    language: str = "English"


class StepStatusRequest(BaseModel):
    status: StepStatus


class ChecklistItemResponse(BaseModel):
    id: str
    text: str
    checked: bool


class StepResponse(BaseModel):
    """Plan step in API response."""
    id: str
    title: str
    description: str
    status: StepStatus
    priority: int
    type: StepType
    checklist_items: Optional[List[ChecklistItemResponse]] = None
    official_links: List[str] = Field(default_factory=list)
    clickable_links: List[str] = Field(default_factory=list)
    suggested_questions: List[str] = Field(default_factory=list)


class ProfileResponse(BaseModel):
    """Relocation profile with its plan."""
    id: str
    user_id: str
    citizenship: str
    current_residence: str
    to_country: TargetCountry
    destination_city: Optional[str] = None
    purpose: Purpose
    is_already_in_destination: bool
    family_status: FamilyStatus
    plan: Optional[List[StepResponse]] = None
    updated_at: Optional[datetime] = None


class DocumentExplainRequest(BaseModel):
    """Document text and/or a base64-encoded file."""
    text: Optional[str] = None
    file_base64: Optional[str] = None
    mime_type: str = "image/jpeg"
    language: str = "English"


class DocumentExplanationResponse(BaseModel):
    summary: str
    actions: List[str]
    is_document: bool
    failed: bool = False


class ConsulateResponse(BaseModel):
    name: str
    address: str
    map_link: str
    website: Optional[str] = None
    note: Optional[str] = None
    verified: bool
    search_links: Dict[str, str] = Field(default_factory=dict)


class ChatRequest(BaseModel):
    """Chat turn; history items are {role, content|text|parts}."""
    message: str = Field(..., min_length=1)
    context_text: str = ""
    history: List[Dict[str, Any]] = Field(default_factory=list)
    language: str = "English"


class ChatResponse(BaseModel):
    reply: str


class PlacesRequest(BaseModel):
    city: str = Field(..., min_length=1)
    budget: str = "medium"
    interests: List[str] = Field(default_factory=list)
    search_query: str = ""
    language: str = "English"


class PlaceResponse(BaseModel):
    title: str = ""
    description: str = ""
    address: str = ""
    raw_text: Optional[str] = None
