#!/usr/bin/env python3
"""
Planner Core - AI orchestration for relocation plans

Operations:
- generate_plan: profile -> ordered, normalized relocation steps
- explain_document: text and/or image -> summary + action items
- find_nearest_consulate: profile -> verified consulate info or map-search fallback
- chat_about_step / chat: grounded single-turn replies over bounded history
- suggest_places: newcomer-friendly places in a city

Failure policy:
- Plan generation and place suggestions propagate ProviderError
- Document explanation, chat and consulate lookup degrade to safe defaults
"""

import logging
from dataclasses import dataclass, field, asdict
from typing import Dict, List, Any, Optional

from src.planner.planner_errors import DocumentInputError, ProviderError
from src.planner.planner_llm import PlannerLLM
from src.planner.planner_prompts import (
    CONSULATE_SYSTEM_PROMPT,
    CONSULATE_USER_PROMPT,
    DOCUMENT_FILE_NOTE,
    DOCUMENT_INSTRUCTION,
    DOCUMENT_SYSTEM_PROMPT,
    GENERAL_CHAT_SYSTEM_PROMPT,
    PLACES_SYSTEM_PROMPT,
    STEP_CHAT_USER_PROMPT,
    build_places_prompt,
    build_plan_prompts,
    build_step_chat_system_prompt,
)
from src.planner.planner_utils import (
    ConsulateLocator,
    PlanValidator,
    ResponseNormalizer,
    localized,
)
from src.profile_state import RelocationProfile, Step, is_safe_link

logger = logging.getLogger(__name__)

EMPTY_REPLY = "I couldn't generate a response."


@dataclass
class DocumentExplanation:
    """Result of a document analysis; never persisted."""
    summary: str
    actions: List[str] = field(default_factory=list)
    is_document: bool = False
    failed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ConsulateInfo:
    """Result of a single consulate lookup; re-derived on every request."""
    name: str
    address: str
    map_link: str
    website: Optional[str] = None
    note: Optional[str] = None
    verified: bool = False
    search_links: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PlaceSuggestion:
    title: str = ""
    description: str = ""
    address: str = ""
    raw_text: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class PlannerCore:
    """
    AI orchestration over a RelocationProfile.

    Key Rules:
    - All model text goes through ResponseNormalizer before use
    - Plans opening without a document checklist are repaired by PlanValidator
      when the user is not yet in the destination
    - Consulate answers failing the locality guard are replaced by map-search links
    - No retries happen here; a failed call is reported once
    """

    def __init__(self, llm: Optional[PlannerLLM] = None):
        self.llm = llm or PlannerLLM()
        self.normalizer = ResponseNormalizer()
        self.plan_validator = PlanValidator()
        self.consulate_locator = ConsulateLocator()

    def close(self):
        """Clean shutdown."""
        self.llm.close()

    # ---------------------------------------------------------------
    # Plan generation
    # ---------------------------------------------------------------
    def generate_plan(self, profile: RelocationProfile, language: str = "English") -> List[Step]:
        """
        Generate a relocation plan for a profile.

        Algorithm:
        1. Build instructions (language, documents-first rule, questions, types, links)
        2. Invoke the model in JSON mode with the profile as key/value context
        3. Parse against an empty step list
        4. Normalize ids, titles, priorities, types, checklist items, links, questions
        5. Enforce plan invariants (priority order, documents-first)

        Args:
            profile: Validated relocation profile
            language: Natural language for generated text

        Returns:
            Ordered steps, all not_started; [] when the reply held no usable steps
            (a documents step is never synthesized on its own)

        Raises:
            ProviderError: If the model call fails (nothing is returned or persisted)
        """
        logger.info("🎯 Generating relocation plan for user %s: %s -> %s (%s)",
                    profile.user_id, profile.current_residence, profile.to_country.value,
                    profile.purpose.value)

        system_prompt, user_prompt = build_plan_prompts(profile, language)
        raw = self.llm.invoke(system_prompt, user_prompt, json_mode=True)

        data = self.normalizer.parse_json(raw, {"steps": []})
        steps = self.normalizer.normalize_steps(self.normalizer.extract_collection(data, "steps"))
        if not steps:
            logger.warning("⚠️  Model returned no usable steps for user %s", profile.user_id)
            return []

        steps = self.plan_validator.enforce(
            steps, profile.is_already_in_destination, profile.family_status.value, language
        )
        logger.info("✅ Plan generated: %d steps", len(steps))
        return steps

    # ---------------------------------------------------------------
    # Document explainer
    # ---------------------------------------------------------------
    def explain_document(
        self,
        text: Optional[str] = None,
        image_bytes: Optional[bytes] = None,
        mime_type: str = "image/jpeg",
        language: str = "English",
    ) -> DocumentExplanation:
        """
        Classify and explain a bureaucratic document.

        Non-image files (e.g. PDFs) are never sent as image parts; a text note
        naming the mime type is sent instead.

        Raises:
            DocumentInputError: If neither text nor a file is given (no call is made)
        """
        has_text = bool(text and text.strip())
        if not has_text and not image_bytes:
            raise DocumentInputError("Provide document text or a file to analyze")

        parts = []
        if has_text:
            parts.append(self.llm.text_part(f"Provided text: {text}"))
        if image_bytes:
            if (mime_type or "").lower().startswith("image/"):
                parts.append(self.llm.image_part(image_bytes, mime_type))
            else:
                parts.append(self.llm.text_part(DOCUMENT_FILE_NOTE.format(mime_type=mime_type)))
        parts.append(self.llm.text_part(DOCUMENT_INSTRUCTION.format(language=language)))

        try:
            raw = self.llm.invoke(DOCUMENT_SYSTEM_PROMPT, parts, json_mode=True,
                                  model=self.llm.vision_model)
        except ProviderError as e:
            logger.error("❌ Document analysis failed: %s", e)
            return DocumentExplanation(summary=localized("document_error", language), failed=True)

        data = self.normalizer.parse_json(raw, {"summary": "", "actions": [], "isDocument": False})
        result = self.normalizer.normalize_document_result(data)
        logger.info("📄 Document analyzed (is_document=%s, %d actions)",
                    result["is_document"], len(result["actions"]))
        return DocumentExplanation(**result)

    # ---------------------------------------------------------------
    # Consulate resolver
    # ---------------------------------------------------------------
    def find_nearest_consulate(self, profile: RelocationProfile, language: str = "English") -> ConsulateInfo:
        """
        Find the consulate of the user's citizenship in the country they are in now.

        location country = destination if already there, else current residence
        city target      = destination city if set, else the location country

        The answer is trusted only when its address mentions the location country
        or city target; otherwise a localized note and the "near" map search are
        returned. This method always returns something renderable.
        """
        citizenship = profile.citizenship
        location_country = profile.location_country
        city_target = profile.destination_city or location_country
        search_links = self.consulate_locator.search_links(citizenship, city_target, location_country)

        logger.info("🏛️  Looking up %s consulate in %s (%s)", citizenship, location_country, city_target)

        try:
            raw = self.llm.invoke(
                CONSULATE_SYSTEM_PROMPT.format(language=language, location_country=location_country),
                CONSULATE_USER_PROMPT.format(
                    citizenship=citizenship, location_country=location_country, city_target=city_target
                ),
                json_mode=True,
                temperature=0.3,
            )
            parsed = self.normalizer.coerce_object(self.normalizer.parse_json(raw, {}))
        except ProviderError as e:
            logger.error("❌ Consulate lookup failed, using map search: %s", e)
            parsed = {}

        address = parsed.get("address") if isinstance(parsed.get("address"), str) else ""
        website = parsed.get("website") if is_safe_link(parsed.get("website")) else None

        if not self.consulate_locator.is_locality_consistent(address, location_country, city_target):
            logger.info("⚠️  Consulate address not verified for %s - falling back to map search",
                        location_country)
            return ConsulateInfo(
                name=f"{citizenship} consulate",
                address=localized("consulate_address", language),
                map_link=search_links["near"],
                website=website,
                note=localized("consulate_note", language),
                verified=False,
                search_links=search_links,
            )

        name = parsed.get("name")
        note = parsed.get("note")
        return ConsulateInfo(
            name=name.strip() if isinstance(name, str) and name.strip() else f"{citizenship} consulate",
            address=address.strip(),
            map_link=self.consulate_locator.choose_map_link(
                parsed.get("mapLink"), citizenship, address.strip(), location_country
            ),
            website=website,
            note=note.strip() if isinstance(note, str) and note.strip() else None,
            verified=True,
            search_links=search_links,
        )

    # ---------------------------------------------------------------
    # Chat
    # ---------------------------------------------------------------
    def _reply(self, system_prompt: str, user_message: str, history: Any, language: str) -> str:
        turns = self.normalizer.normalize_history(history)
        try:
            reply = self.llm.invoke(system_prompt, user_message, history=turns,
                                    model=self.llm.mini_model)
        except ProviderError as e:
            logger.error("❌ Chat reply failed: %s", e)
            return localized("chat_apology", language)
        return reply or EMPTY_REPLY

    def chat_about_step(
        self,
        profile: RelocationProfile,
        context_text: str,
        message: str,
        history: Optional[List[Dict[str, Any]]] = None,
        language: str = "English",
    ) -> str:
        """Answer a question about one step/item, grounded in the profile."""
        return self._reply(
            build_step_chat_system_prompt(profile, language),
            STEP_CHAT_USER_PROMPT.format(context=context_text, message=message),
            history,
            language,
        )

    def chat(self, message: str, history: Optional[List[Dict[str, Any]]] = None,
             language: str = "English") -> str:
        """General relocation chat, not tied to a profile."""
        return self._reply(GENERAL_CHAT_SYSTEM_PROMPT.format(language=language), message, history, language)

    # ---------------------------------------------------------------
    # City suggestions
    # ---------------------------------------------------------------
    def suggest_places(
        self,
        city: str,
        budget: str,
        interests: List[str],
        search_query: str = "",
        language: str = "English",
    ) -> List[PlaceSuggestion]:
        """
        Suggest welcoming places for newcomers.

        Returns a single raw_text record when the model answer has no usable
        suggestions.

        Raises:
            ProviderError: If the model call fails
        """
        raw = self.llm.invoke(
            PLACES_SYSTEM_PROMPT.format(language=language),
            build_places_prompt(city, budget, interests, search_query),
            json_mode=True,
            model=self.llm.mini_model,
        )
        places = self.normalizer.normalize_places(self.normalizer.parse_json(raw, {"suggestions": []}))
        if not places:
            return [PlaceSuggestion(raw_text=raw)]
        return [PlaceSuggestion(**p) for p in places]
