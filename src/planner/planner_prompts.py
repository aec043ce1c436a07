#!/usr/bin/env python3
"""
Prompt templates for the relocation planner.

Templates are plain str.format strings; builders fill them from a profile.
"""

from typing import List

from src.profile_state import RelocationProfile, FamilyStatus

FAMILY_DESCRIPTIONS = {
    FamilyStatus.ALONE: "moving alone",
    FamilyStatus.WITH_PARTNER: "moving with a partner",
    FamilyStatus.WITH_CHILDREN: "moving with children",
    FamilyStatus.WITH_PARTNER_CHILDREN: "moving with a partner and children",
}


# -------------------------------------------------------------------
# Plan generation
# -------------------------------------------------------------------
PLAN_SYSTEM_PROMPT = """\
You are a relocation assistant. Respond in {language}. Keep steps concise.
{documents_rule}
Always return a JSON object with a "steps" array only.\
"""

PLAN_DOCUMENTS_RULE = (
    'The user is NOT yet in the destination country: the first step must be titled '
    '"Gather Required Documents" with type "checklist" and include concrete checklistItems.'
)

PLAN_IN_DESTINATION_RULE = (
    "The user is already in the destination country: focus on registration and settling-in steps."
)

PLAN_USER_PROMPT = """\
Create a step-by-step relocation plan.
CITIZENSHIP: {citizenship}
CURRENT RESIDENCE: {current_residence}
MOVING TO: {to_country}
PURPOSE: {purpose}
CURRENTLY IN DESTINATION: {in_destination}
DESTINATION CITY: {destination_city}
FAMILY: {family}

Rules:
- 6-10 steps.
- Each step must have suggestedQuestions (3-4 concise ideas).
- type is either "default" or "checklist".
- checklistItems only when type is "checklist".
- Include optional officialLinks (absolute https URLs of official sources) when relevant.
{family_rule}- JSON shape: {{ "steps": [ {{ "id", "title", "description", "priority", "type", "checklistItems", "officialLinks", "suggestedQuestions" }} ] }}
"""

PLAN_FAMILY_RULE = "- Include the extra paperwork needed for family members ({family}).\n"


def build_plan_prompts(profile: RelocationProfile, language: str):
    """Return (system_prompt, user_prompt) for plan generation."""
    family = FAMILY_DESCRIPTIONS[profile.family_status]
    system_prompt = PLAN_SYSTEM_PROMPT.format(
        language=language,
        documents_rule=PLAN_IN_DESTINATION_RULE if profile.is_already_in_destination else PLAN_DOCUMENTS_RULE,
    )
    user_prompt = PLAN_USER_PROMPT.format(
        citizenship=profile.citizenship,
        current_residence=profile.current_residence,
        to_country=profile.to_country.value,
        purpose=profile.purpose.value,
        in_destination="Yes" if profile.is_already_in_destination else "No",
        destination_city=profile.destination_city or "Not specified",
        family=family,
        family_rule="" if profile.family_status == FamilyStatus.ALONE else PLAN_FAMILY_RULE.format(family=family),
    )
    return system_prompt, user_prompt


# -------------------------------------------------------------------
# Document explainer
# -------------------------------------------------------------------
DOCUMENT_SYSTEM_PROMPT = "You help immigrants quickly understand documents."

DOCUMENT_FILE_NOTE = "A file ({mime_type}) was provided. Use the text above to interpret its contents."

DOCUMENT_INSTRUCTION = """\
Analyze the provided content.
1) Decide if this is a bureaucratic document/form/letter.
2) If NOT a document, set isDocument=false and return a friendly summary telling the user to upload a document, with no actions.
3) If it IS a document, provide a summary of at most two sentences and 3-5 immediate action items.
Respond in {language}.
Return JSON only: {{ "summary": string, "actions": string[], "isDocument": boolean }}.\
"""


# -------------------------------------------------------------------
# Consulate resolver
# -------------------------------------------------------------------
CONSULATE_SYSTEM_PROMPT = """\
You are a relocation assistant. Respond in {language}. Find a consulate/embassy of the traveler's \
citizenship located in {location_country} only. If unsure, prefer the main embassy in that country's capital. \
If you cannot provide a confident address in that location country, return a Google Maps search link only. \
Return JSON only: {{ "name": string, "address": string, "mapLink": string, "website": string, "note": string }}.\
"""

CONSULATE_USER_PROMPT = """\
Find the nearest consulate for a traveler.
Citizenship (whose consulate they need): {citizenship}
Location country where the consulate must be: {location_country}
Target city or area: {city_target}
Provide a precise name and address in the location country if known, a Google Maps link (or search link), \
and an official website if available.
"""


# -------------------------------------------------------------------
# Chat
# -------------------------------------------------------------------
STEP_CHAT_SYSTEM_PROMPT = """\
You are a helpful relocation assistant. The user is a citizen of {citizenship}, moving from \
{current_residence} to {to_country}{city} for {purpose}, {family}. Respond in {language}. \
Keep answers concise and specific to the user's context.\
"""

STEP_CHAT_USER_PROMPT = "Context: {context}\nQuestion: {message}"

GENERAL_CHAT_SYSTEM_PROMPT = "You are a helpful relocation assistant. Respond in {language}."


def build_step_chat_system_prompt(profile: RelocationProfile, language: str) -> str:
    return STEP_CHAT_SYSTEM_PROMPT.format(
        citizenship=profile.citizenship,
        current_residence=profile.current_residence,
        to_country=profile.to_country.value,
        city=f" ({profile.destination_city})" if profile.destination_city else "",
        purpose=profile.purpose.value,
        family=FAMILY_DESCRIPTIONS[profile.family_status],
        language=language,
    )


# -------------------------------------------------------------------
# City suggestions
# -------------------------------------------------------------------
PLACES_SYSTEM_PROMPT = """\
Suggest 3 welcoming places for newcomers. Provide clear titles, short descriptions, and a link to \
google maps or address. Respond in {language}. Return a JSON object with "suggestions" array only.\
"""


def build_places_prompt(city: str, budget: str, interests: List[str], search_query: str = "") -> str:
    prompt = f"City: {city}\nBudget: {budget}\nInterests: {', '.join(interests)}"
    if search_query:
        prompt += f"\nSpecific search: {search_query}"
    return prompt
