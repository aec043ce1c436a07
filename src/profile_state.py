#!/usr/bin/env python3
"""
Relocation Profile Data Access Layer
Plan/profile data model plus key-value persistence (Firestore or in-memory).

One RelocationProfile per user, stored as a single document keyed by user_id.
Saves always replace the whole document (last write wins).
"""

import copy
import logging
import os
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Any, List, Optional
from urllib.parse import urlparse

from src.planner.planner_errors import ProfileValidationError, StoreError

logger = logging.getLogger(__name__)


def is_safe_link(url: Any) -> bool:
    """True only for absolute http(s) URLs with a host."""
    if not isinstance(url, str) or not url.strip():
        return False
    try:
        parsed = urlparse(url.strip())
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


class TargetCountry(str, Enum):
    GERMANY = "Germany"
    AUSTRIA = "Austria"
    CZECH_REPUBLIC = "Czech Republic"
    SLOVAKIA = "Slovakia"
    ROMANIA = "Romania"


class Purpose(str, Enum):
    WORK = "work"
    STUDY = "study"
    PROTECTION = "protection"
    FAMILY = "family"
    OTHER = "other"


class FamilyStatus(str, Enum):
    ALONE = "alone"
    WITH_PARTNER = "with_partner"
    WITH_CHILDREN = "with_children"
    WITH_PARTNER_CHILDREN = "with_partner_children"


class StepStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    DONE = "done"


class StepType(str, Enum):
    DEFAULT = "default"
    CHECKLIST = "checklist"


def _coerce_enum(enum_cls, value, field_name: str):
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(e.value for e in enum_cls)
        raise ProfileValidationError(f"Invalid {field_name} '{value}' - expected one of: {allowed}")


@dataclass
class ChecklistItem:
    """Sub-task of a checklist step."""
    id: str
    text: str
    checked: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "text": self.text, "checked": self.checked}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChecklistItem":
        return cls(id=data["id"], text=data["text"], checked=bool(data.get("checked", False)))


@dataclass
class Step:
    """One actionable item in a relocation plan."""
    id: str
    title: str
    description: str
    priority: int
    status: StepStatus = StepStatus.NOT_STARTED
    type: StepType = StepType.DEFAULT
    checklist_items: Optional[List[ChecklistItem]] = None
    official_links: List[str] = field(default_factory=list)
    suggested_questions: List[str] = field(default_factory=list)

    def clickable_links(self) -> List[str]:
        """Only absolute http(s) links may be rendered as clickable."""
        return [link for link in self.official_links if is_safe_link(link)]

    def find_item(self, item_id: str) -> Optional[ChecklistItem]:
        for item in self.checklist_items or []:
            if item.id == item_id:
                return item
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "priority": self.priority,
            "status": self.status.value,
            "type": self.type.value,
            "checklist_items": (
                [item.to_dict() for item in self.checklist_items]
                if self.checklist_items is not None else None
            ),
            "official_links": list(self.official_links),
            "suggested_questions": list(self.suggested_questions),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Step":
        items = data.get("checklist_items")
        return cls(
            id=data["id"],
            title=data.get("title", ""),
            description=data.get("description", ""),
            priority=int(data.get("priority", 0)),
            status=_coerce_enum(StepStatus, data.get("status", "not_started"), "status"),
            type=_coerce_enum(StepType, data.get("type", "default"), "type"),
            checklist_items=[ChecklistItem.from_dict(i) for i in items] if items is not None else None,
            official_links=list(data.get("official_links") or []),
            suggested_questions=list(data.get("suggested_questions") or []),
        )


@dataclass
class RelocationProfile:
    """A user's relocation intent and the plan generated for it."""
    user_id: str
    citizenship: str
    current_residence: str
    to_country: TargetCountry
    purpose: Purpose
    is_already_in_destination: bool = False
    family_status: FamilyStatus = FamilyStatus.ALONE
    destination_city: Optional[str] = None
    plan: Optional[List[Step]] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def location_country(self) -> str:
        """Country the user is physically in right now."""
        if self.is_already_in_destination:
            return self.to_country.value
        return self.current_residence

    def find_step(self, step_id: str) -> Optional[Step]:
        for step in self.plan or []:
            if step.id == step_id:
                return step
        return None

    def replace_plan(self, steps: List[Step]) -> None:
        """Full replace, never a merge. An empty plan is stored as absent."""
        self.plan = list(steps) if steps else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "citizenship": self.citizenship,
            "current_residence": self.current_residence,
            "to_country": self.to_country.value,
            "destination_city": self.destination_city,
            "purpose": self.purpose.value,
            "is_already_in_destination": self.is_already_in_destination,
            "family_status": self.family_status.value,
            "plan": [step.to_dict() for step in self.plan] if self.plan else None,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RelocationProfile":
        missing = [k for k in ("user_id", "citizenship", "current_residence", "to_country", "purpose")
                   if not data.get(k)]
        if missing:
            raise ProfileValidationError(f"Missing required profile fields: {missing}")

        plan = data.get("plan")
        city = (data.get("destination_city") or "").strip() or None
        return cls(
            id=data.get("id") or uuid.uuid4().hex,
            user_id=data["user_id"],
            citizenship=data["citizenship"],
            current_residence=data["current_residence"],
            to_country=_coerce_enum(TargetCountry, data["to_country"], "to_country"),
            destination_city=city,
            purpose=_coerce_enum(Purpose, data["purpose"], "purpose"),
            is_already_in_destination=bool(data.get("is_already_in_destination", False)),
            family_status=_coerce_enum(FamilyStatus, data.get("family_status") or "alone", "family_status"),
            plan=[Step.from_dict(s) for s in plan] if plan else None,
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )


class KeyValueStore(ABC):
    """Document store addressed by a single string key."""

    @abstractmethod
    def get(self, key: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def set(self, key: str, value: Dict[str, Any]) -> None:
        """Replace the whole document stored under key."""
        pass

    @abstractmethod
    def delete(self, key: str) -> None:
        pass


class InMemoryKeyValueStore(KeyValueStore):
    """Process-local store; values are deep-copied in and out."""

    def __init__(self):
        self._data: Dict[str, Dict[str, Any]] = {}

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        value = self._data.get(key)
        return copy.deepcopy(value) if value is not None else None

    def set(self, key: str, value: Dict[str, Any]) -> None:
        self._data[key] = copy.deepcopy(value)

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class FirestoreKeyValueStore(KeyValueStore):
    """Firebase Firestore-backed store, one document per key."""

    def __init__(self, firebase_client, collection: str = "relocation_profiles"):
        self.db = firebase_client.db
        self.collection = collection

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        try:
            doc = self.db.collection(self.collection).document(key).get()
            if doc.exists:
                return doc.to_dict()
            return None
        except Exception as e:
            raise StoreError(f"Failed to get document '{key}': {e}") from e

    def set(self, key: str, value: Dict[str, Any]) -> None:
        try:
            self.db.collection(self.collection).document(key).set(value)
        except Exception as e:
            raise StoreError(f"Failed to save document '{key}': {e}") from e

    def delete(self, key: str) -> None:
        try:
            self.db.collection(self.collection).document(key).delete()
        except Exception as e:
            raise StoreError(f"Failed to delete document '{key}': {e}") from e


class RelocationProfileRepository:
    """Profile persistence keyed by user_id over an injected KeyValueStore."""

    def __init__(self, store: KeyValueStore):
        self.store = store

    def get_profile(self, user_id: str) -> Optional[RelocationProfile]:
        """Get profile by user_id, or None if the user has none yet."""
        data = self.store.get(user_id)
        if data is None:
            return None
        return RelocationProfile.from_dict(data)

    def save_profile(self, profile: RelocationProfile) -> RelocationProfile:
        """Upsert the full profile document."""
        now = datetime.now(timezone.utc)
        doc = profile.to_dict()
        doc["created_at"] = profile.created_at or now
        doc["updated_at"] = now
        self.store.set(profile.user_id, doc)
        profile.created_at = doc["created_at"]
        profile.updated_at = now
        logger.info("💾 Saved relocation profile for user %s (%d steps)",
                    profile.user_id, len(profile.plan or []))
        return profile

    def delete_profile(self, user_id: str) -> None:
        """Delete the profile; called when the owning user is deleted."""
        self.store.delete(user_id)
        logger.info("🗑️  Deleted relocation profile for user %s", user_id)


def create_store_from_env(store_kind: Optional[str] = None) -> KeyValueStore:
    """Build the configured store (PROFILE_STORE=firestore|memory)."""
    kind = (store_kind or os.getenv("PROFILE_STORE", "firestore")).lower()
    if kind == "memory":
        logger.warning("⚠️  Using in-memory profile store - data is lost on restart")
        return InMemoryKeyValueStore()
    if kind == "firestore":
        from src.firebase_client import FirebaseClient
        return FirestoreKeyValueStore(FirebaseClient())
    raise ValueError(f"Unknown PROFILE_STORE '{kind}' - expected 'firestore' or 'memory'")


def create_sample_profile(user_id: str = "u_test_123") -> RelocationProfile:
    """Sample profile for tests and local smoke runs."""
    return RelocationProfile(
        user_id=user_id,
        citizenship="Ukraine",
        current_residence="Ukraine",
        to_country=TargetCountry.GERMANY,
        purpose=Purpose.WORK,
        is_already_in_destination=False,
        family_status=FamilyStatus.ALONE,
    )
