#!/usr/bin/env python3
"""
Planner Utils - Helper classes for response normalization, plan invariants
and consulate locality checks.

Critical Implementation:
- Model output is never trusted beyond this boundary
- Normalization is total: malformed text becomes a typed fallback, never an exception
- Step/item ids are unique within a plan; missing or colliding ids are derived from position
- When the user is not yet in the destination, the plan opens with a document checklist
- Consulate addresses must mention the requested country or city, otherwise the
  answer is downgraded to a map-search fallback
"""

import copy
import json
import logging
import re
from typing import Dict, List, Any, Optional, Set
from urllib.parse import quote, unquote_plus

from src.planner.planner_errors import MalformedResponseError
from src.profile_state import ChecklistItem, Step, StepStatus, StepType, is_safe_link

logger = logging.getLogger(__name__)

MAX_HISTORY_TURNS = 20
MAX_DOCUMENT_ACTIONS = 5

_FENCE_RE = re.compile(r"```(?:json)?", re.IGNORECASE)


# -------------------------------------------------------------------
# Localized fallback texts
# -------------------------------------------------------------------
LANGUAGE_NAMES = {
    "english": "en",
    "german": "de",
    "deutsch": "de",
    "ukrainian": "uk",
    "українська": "uk",
    "romanian": "ro",
    "română": "ro",
    "czech": "cs",
    "čeština": "cs",
    "slovak": "sk",
    "slovenčina": "sk",
}

MESSAGES = {
    "consulate_address": {
        "en": "Could not verify an exact consulate address in this country. Showing the closest option we could find.",
        "uk": "Не вдалося перевірити точну адресу консульства в цій країні. Показуємо найближчий варіант, який вдалося знайти.",
        "de": "Die genaue Adresse des Konsulats in diesem Land konnte nicht überprüft werden. Wir zeigen die nächstgelegene gefundene Option.",
        "ro": "Nu am putut verifica adresa exactă a consulatului în această țară. Afișăm cea mai apropiată opțiune găsită.",
        "cs": "Přesnou adresu konzulátu v této zemi se nepodařilo ověřit. Zobrazujeme nejbližší nalezenou možnost.",
        "sk": "Presnú adresu konzulátu v tejto krajine sa nepodarilo overiť. Zobrazujeme najbližšiu nájdenú možnosť.",
    },
    "consulate_note": {
        "en": "If there is no consulate in this country, this link points to the nearest one. Please confirm via the map search.",
        "uk": "Перевірте, будь ласка, через пошук на карті; результат може відрізнятись.",
        "de": "Bitte prüfen Sie über die Kartensuche; das Ergebnis kann je nach Region variieren.",
        "ro": "Vă rugăm verificați prin căutarea pe hartă; rezultatul poate varia după regiune.",
        "cs": "Ověřte prosím pomocí vyhledávání na mapě; výsledek se může lišit podle regionu.",
        "sk": "Prosím overte cez vyhľadávanie na mape; výsledok sa môže líšiť podľa regiónu.",
    },
    "document_error": {
        "en": "There was an error processing the document. Please try again.",
        "uk": "Під час обробки документа сталася помилка. Спробуйте ще раз.",
        "de": "Beim Verarbeiten des Dokuments ist ein Fehler aufgetreten. Bitte versuchen Sie es erneut.",
        "ro": "A apărut o eroare la procesarea documentului. Vă rugăm să încercați din nou.",
        "cs": "Při zpracování dokumentu došlo k chybě. Zkuste to prosím znovu.",
        "sk": "Pri spracovaní dokumentu nastala chyba. Skúste to prosím znova.",
    },
    "chat_apology": {
        "en": "Sorry, I could not answer right now. Please try again in a moment.",
        "uk": "Вибачте, зараз не вдалося відповісти. Спробуйте ще раз за хвилину.",
        "de": "Entschuldigung, ich konnte gerade nicht antworten. Bitte versuchen Sie es gleich noch einmal.",
        "ro": "Ne pare rău, nu am putut răspunde acum. Vă rugăm să încercați din nou peste puțin timp.",
        "cs": "Omlouváme se, teď se nepodařilo odpovědět. Zkuste to prosím za chvíli znovu.",
        "sk": "Prepáčte, teraz sa nepodarilo odpovedať. Skúste to prosím o chvíľu znova.",
    },
}


DOCUMENT_CHECKLISTS = {
    "en": {
        "title": "Gather Required Documents",
        "description": "Collect and prepare the documents you will need before moving.",
        "items": [
            "Valid passport (check expiry date)",
            "Birth certificate with certified translation",
            "Visa or residence permit application form",
            "Biometric passport photos",
            "Proof of health insurance",
            "Proof of accommodation or address",
        ],
        "partner": ["Marriage or partnership certificate (apostilled)"],
        "children": ["Children's birth certificates (apostilled)", "Children's passports"],
    },
    "uk": {
        "title": "Зібрати необхідні документи",
        "description": "Зберіть і підготуйте документи, які знадобляться перед переїздом.",
        "items": [
            "Дійсний закордонний паспорт (перевірте термін дії)",
            "Свідоцтво про народження із засвідченим перекладом",
            "Заява на візу або дозвіл на проживання",
            "Біометричні фотографії на паспорт",
            "Підтвердження медичного страхування",
            "Підтвердження житла або адреси",
        ],
        "partner": ["Свідоцтво про шлюб або партнерство (з апостилем)"],
        "children": ["Свідоцтва про народження дітей (з апостилем)", "Паспорти дітей"],
    },
    "de": {
        "title": "Erforderliche Dokumente sammeln",
        "description": "Sammeln und bereiten Sie die Dokumente vor, die Sie vor dem Umzug benötigen.",
        "items": [
            "Gültiger Reisepass (Ablaufdatum prüfen)",
            "Geburtsurkunde mit beglaubigter Übersetzung",
            "Antragsformular für Visum oder Aufenthaltstitel",
            "Biometrische Passfotos",
            "Nachweis der Krankenversicherung",
            "Nachweis über Unterkunft oder Adresse",
        ],
        "partner": ["Heirats- oder Partnerschaftsurkunde (mit Apostille)"],
        "children": ["Geburtsurkunden der Kinder (mit Apostille)", "Reisepässe der Kinder"],
    },
    "ro": {
        "title": "Pregătiți documentele necesare",
        "description": "Adunați și pregătiți documentele de care veți avea nevoie înainte de mutare.",
        "items": [
            "Pașaport valabil (verificați data expirării)",
            "Certificat de naștere cu traducere legalizată",
            "Formular de cerere pentru viză sau permis de ședere",
            "Fotografii biometrice pentru pașaport",
            "Dovada asigurării de sănătate",
            "Dovada locuinței sau a adresei",
        ],
        "partner": ["Certificat de căsătorie sau de parteneriat (apostilat)"],
        "children": ["Certificatele de naștere ale copiilor (apostilate)", "Pașapoartele copiilor"],
    },
    "cs": {
        "title": "Shromážděte potřebné doklady",
        "description": "Shromážděte a připravte doklady, které budete před stěhováním potřebovat.",
        "items": [
            "Platný cestovní pas (zkontrolujte datum platnosti)",
            "Rodný list s úředně ověřeným překladem",
            "Formulář žádosti o vízum nebo povolení k pobytu",
            "Biometrické fotografie na pas",
            "Doklad o zdravotním pojištění",
            "Doklad o ubytování nebo adrese",
        ],
        "partner": ["Oddací list nebo doklad o partnerství (s apostilou)"],
        "children": ["Rodné listy dětí (s apostilou)", "Cestovní pasy dětí"],
    },
    "sk": {
        "title": "Zhromaždite potrebné doklady",
        "description": "Zhromaždite a pripravte doklady, ktoré budete pred sťahovaním potrebovať.",
        "items": [
            "Platný cestovný pas (skontrolujte dátum platnosti)",
            "Rodný list s úradne overeným prekladom",
            "Formulár žiadosti o vízum alebo povolenie na pobyt",
            "Biometrické fotografie na pas",
            "Doklad o zdravotnom poistení",
            "Doklad o ubytovaní alebo adrese",
        ],
        "partner": ["Sobášny list alebo doklad o partnerstve (s apostilou)"],
        "children": ["Rodné listy detí (s apostilou)", "Cestovné pasy detí"],
    },
}


def language_code(language: Optional[str]) -> str:
    """Map 'English', 'de', 'uk-UA', 'Ukrainian' etc. to a two-letter code."""
    value = (language or "").strip().lower()
    if value in LANGUAGE_NAMES:
        return LANGUAGE_NAMES[value]
    return value[:2] if len(value) >= 2 else "en"


def localized(key: str, language: Optional[str]) -> str:
    texts = MESSAGES[key]
    return texts.get(language_code(language), texts["en"])


def document_checklist(language: Optional[str]) -> Dict[str, Any]:
    return DOCUMENT_CHECKLISTS.get(language_code(language), DOCUMENT_CHECKLISTS["en"])


def string_list(value: Any) -> List[str]:
    """Keep non-empty strings from a list; anything else becomes []."""
    if not isinstance(value, list):
        return []
    return [item.strip() for item in value if isinstance(item, str) and item.strip()]


# -------------------------------------------------------------------
# Response normalization
# -------------------------------------------------------------------
class ResponseNormalizer:
    """
    Converts free-form model text into strictly typed planner data.

    Every public method is total: it returns a value of the expected shape for
    any input. Parse failures are logged and kept in `last_failure` for
    diagnostics; they are never raised.
    """

    def __init__(self):
        self.failure_count = 0
        self.last_failure: Optional[MalformedResponseError] = None

    def _record_failure(self, reason: str, raw: Any) -> None:
        preview = str(raw or "")[:200]
        self.failure_count += 1
        self.last_failure = MalformedResponseError(f"{reason}: {preview!r}")
        logger.warning("⚠️  AI JSON parse failed - %s (preview: %r)", reason, preview)

    @staticmethod
    def strip_code_fences(raw: Any) -> str:
        if not isinstance(raw, str):
            return ""
        return _FENCE_RE.sub("", raw).strip()

    @staticmethod
    def _extract_embedded_json(text: str) -> List[str]:
        """Outermost {...} and [...] spans inside surrounding prose, earliest first."""
        spans = []
        for opening, closing in (("{", "}"), ("[", "]")):
            start = text.find(opening)
            end = text.rfind(closing)
            if start != -1 and end > start:
                spans.append((start, text[start:end + 1]))
        return [span for _, span in sorted(spans)]

    def parse_json(self, raw: Any, fallback: Any) -> Any:
        """
        Parse a JSON object or array out of model text.

        Args:
            raw: Model output, possibly fenced or wrapped in prose
            fallback: Value returned (as a copy) when nothing usable is found

        Returns:
            The parsed dict/list, or a copy of fallback
        """
        text = self.strip_code_fences(raw)
        if not text:
            self._record_failure("empty response", raw)
            return copy.deepcopy(fallback)

        candidates = [text] + [span for span in self._extract_embedded_json(text) if span != text]

        for candidate in candidates:
            try:
                parsed = json.loads(candidate)
            except (ValueError, RecursionError):
                continue
            if isinstance(parsed, (dict, list)):
                return parsed

        self._record_failure("no JSON object found", raw)
        return copy.deepcopy(fallback)

    @staticmethod
    def extract_collection(data: Any, key: str) -> List[Any]:
        """Accept {key: [...]} or a bare [...]; anything else is []."""
        if isinstance(data, dict) and isinstance(data.get(key), list):
            return data[key]
        if isinstance(data, list):
            return data
        return []

    @staticmethod
    def coerce_object(data: Any) -> Dict[str, Any]:
        return data if isinstance(data, dict) else {}

    # ---------------------------------------------------------------
    # Plan steps
    # ---------------------------------------------------------------
    @staticmethod
    def _coerce_priority(value: Any, default: int) -> int:
        if isinstance(value, bool):
            return default
        if isinstance(value, int):
            return value
        if isinstance(value, float) and value.is_integer():
            return int(value)
        return default

    @staticmethod
    def _unique_id(candidate: Optional[str], fallback: str, used_ids: Set[str]) -> str:
        """Use candidate if free, otherwise the positional fallback (suffixed if needed)."""
        if candidate and candidate not in used_ids:
            used_ids.add(candidate)
            return candidate
        unique = fallback
        suffix = 2
        while unique in used_ids:
            unique = f"{fallback}_{suffix}"
            suffix += 1
        used_ids.add(unique)
        return unique

    @staticmethod
    def _raw_id(raw: Dict[str, Any]) -> Optional[str]:
        value = raw.get("id")
        if value is None or isinstance(value, bool):
            return None
        value = str(value).strip()
        return value or None

    def normalize_checklist_items(self, raw_items: Any, step_id: str,
                                  used_ids: Optional[Set[str]] = None) -> List[ChecklistItem]:
        """
        Map raw checklist entries (strings or {text|title|name, id?, checked?})
        into ChecklistItems, dropping entries whose text is empty.
        """
        used_ids = used_ids if used_ids is not None else set()
        if not isinstance(raw_items, list):
            return []

        items = []
        for item_idx, raw in enumerate(raw_items):
            if isinstance(raw, str):
                text, raw_id, checked = raw, None, False
            elif isinstance(raw, dict):
                text = raw.get("text") or raw.get("title") or raw.get("name") or ""
                raw_id = self._raw_id(raw)
                checked = raw.get("checked") is True
            else:
                continue

            text = text.strip() if isinstance(text, str) else ""
            if not text:
                continue

            item_id = self._unique_id(raw_id, f"{step_id}_item_{item_idx + 1}", used_ids)
            items.append(ChecklistItem(id=item_id, text=text, checked=checked))
        return items

    def normalize_steps(self, raw_steps: Any) -> List[Step]:
        """
        Normalize raw model steps into Steps, in generation order.

        Defaults: id step_{n}, title "Step {n}", priority n, type default,
        status not_started, empty link/question lists.
        """
        if not isinstance(raw_steps, list):
            return []

        used_ids: Set[str] = set()
        steps = []
        for idx, raw in enumerate(raw_steps):
            if isinstance(raw, str):
                raw = {"title": raw}
            if not isinstance(raw, dict):
                logger.warning("⚠️  Skipping non-object step at index %d", idx)
                continue

            step_id = self._unique_id(self._raw_id(raw), f"step_{idx + 1}", used_ids)
            title = raw.get("title")
            description = raw.get("description")
            step_type = StepType.CHECKLIST if raw.get("type") == "checklist" else StepType.DEFAULT

            checklist = None
            if step_type == StepType.CHECKLIST:
                checklist = self.normalize_checklist_items(
                    raw.get("checklistItems", raw.get("checklist_items")), step_id, used_ids
                )

            steps.append(Step(
                id=step_id,
                title=title.strip() if isinstance(title, str) and title.strip() else f"Step {idx + 1}",
                description=description.strip() if isinstance(description, str) else "",
                priority=self._coerce_priority(raw.get("priority"), idx + 1),
                status=StepStatus.NOT_STARTED,
                type=step_type,
                checklist_items=checklist,
                official_links=string_list(raw.get("officialLinks", raw.get("official_links"))),
                suggested_questions=string_list(raw.get("suggestedQuestions", raw.get("suggested_questions"))),
            ))
        return steps

    # ---------------------------------------------------------------
    # Documents, chat history, places
    # ---------------------------------------------------------------
    def normalize_document_result(self, data: Any) -> Dict[str, Any]:
        data = self.coerce_object(data)
        summary = data.get("summary")
        is_document = data.get("isDocument", data.get("is_document", False)) is True
        actions = string_list(data.get("actions"))[:MAX_DOCUMENT_ACTIONS] if is_document else []
        return {
            "summary": summary.strip() if isinstance(summary, str) else "",
            "actions": actions,
            "is_document": is_document,
        }

    @staticmethod
    def normalize_history(history: Any, max_turns: int = MAX_HISTORY_TURNS) -> List[Dict[str, str]]:
        """
        Map prior turns into {role, content} pairs.

        Accepted roles: user, assistant, model (as assistant). Content is read
        from content, text, or the joined text of parts. Other turns are dropped.
        """
        if not isinstance(history, list):
            return []

        turns = []
        for turn in history:
            if not isinstance(turn, dict):
                continue
            role = turn.get("role")
            if role == "model":
                role = "assistant"
            if role not in ("user", "assistant"):
                continue

            content = turn.get("content") or turn.get("text")
            if not content and isinstance(turn.get("parts"), list):
                content = "\n".join(
                    p.get("text", "") for p in turn["parts"]
                    if isinstance(p, dict) and isinstance(p.get("text"), str)
                )
            if not isinstance(content, str) or not content.strip():
                continue
            turns.append({"role": role, "content": content})

        return turns[-max_turns:] if max_turns > 0 else []

    def normalize_places(self, data: Any) -> List[Dict[str, str]]:
        places = []
        for idx, raw in enumerate(self.extract_collection(data, "suggestions")):
            if not isinstance(raw, dict):
                continue
            title = raw.get("title")
            description = raw.get("description")
            address = raw.get("address") or raw.get("link") or ""
            places.append({
                "title": title if isinstance(title, str) and title.strip() else f"Place {idx + 1}",
                "description": description if isinstance(description, str) else "",
                "address": address if isinstance(address, str) else "",
            })
        return places


# -------------------------------------------------------------------
# Plan invariants
# -------------------------------------------------------------------
class PlanValidator:
    """
    Enforces plan-level invariants on normalized steps.

    Rules:
    - Steps are ordered by priority (stable, so ties keep generation order)
    - Not yet in destination => first step is a non-empty document checklist
    - The 6-10 step count is advisory; no truncation or padding happens here
    """

    DOCUMENTS_STEP_ID = "gather_documents"
    FAMILY_DOCUMENT_GROUPS = {
        "with_partner": ["partner"],
        "with_children": ["children"],
        "with_partner_children": ["partner", "children"],
    }

    def _default_items(self, step_id: str, family_status: str, language: str,
                       used_ids: Set[str]) -> List[ChecklistItem]:
        checklist = document_checklist(language)
        texts = list(checklist["items"])
        for group in self.FAMILY_DOCUMENT_GROUPS.get(family_status, []):
            texts.extend(checklist[group])
        return ResponseNormalizer().normalize_checklist_items(texts, step_id, used_ids)

    def enforce(self, steps: List[Step], is_already_in_destination: bool,
                family_status: str = "alone", language: str = "English") -> List[Step]:
        """
        Args:
            steps: Normalized steps in generation order
            is_already_in_destination: Profile flag gating the documents-first rule
            family_status: Profile family status value, used for default items
            language: Plan language for a synthesized documents step

        Returns:
            New list of steps satisfying the plan invariants
        """
        ordered = sorted(steps, key=lambda s: s.priority)
        if is_already_in_destination:
            return ordered

        used_ids = {s.id for s in ordered}
        for s in ordered:
            used_ids.update(item.id for item in s.checklist_items or [])

        first_checklist = next((s for s in ordered if s.type == StepType.CHECKLIST), None)
        if first_checklist is None:
            checklist = document_checklist(language)
            logger.info("📋 No checklist step returned - adding '%s'", checklist["title"])
            step_id = ResponseNormalizer._unique_id(self.DOCUMENTS_STEP_ID, self.DOCUMENTS_STEP_ID, used_ids)
            first_checklist = Step(
                id=step_id,
                title=checklist["title"],
                description=checklist["description"],
                priority=ordered[0].priority if ordered else 1,
                type=StepType.CHECKLIST,
                checklist_items=[],
            )
        else:
            ordered.remove(first_checklist)
            if ordered and first_checklist.priority > ordered[0].priority:
                first_checklist.priority = ordered[0].priority

        if not first_checklist.checklist_items:
            first_checklist.checklist_items = self._default_items(
                first_checklist.id, family_status, language, used_ids
            )

        return [first_checklist] + ordered


# -------------------------------------------------------------------
# Consulate locality checks
# -------------------------------------------------------------------
class ConsulateLocator:
    """
    Deterministic map-search links and the locality guard for consulate answers.

    Map links use the Google Maps search URL with language (hl) and region (gl)
    hints for known countries; unknown countries get no hints.
    """

    MAP_SEARCH_URL = "https://www.google.com/maps/search/?api=1"

    MAP_LOCALES = {
        "germany": {"hl": "de", "gl": "DE"},
        "austria": {"hl": "de", "gl": "AT"},
        "czech republic": {"hl": "cs", "gl": "CZ"},
        "slovakia": {"hl": "sk", "gl": "SK"},
        "romania": {"hl": "ro", "gl": "RO"},
        "ukraine": {"hl": "uk", "gl": "UA"},
        "poland": {"hl": "pl", "gl": "PL"},
        "hungary": {"hl": "hu", "gl": "HU"},
    }

    def make_map_link(self, query: str, country: str) -> str:
        locale = self.MAP_LOCALES.get((country or "").strip().lower(), {})
        params = [f"query={quote(query, safe='')}"]
        if locale.get("hl"):
            params.append(f"hl={locale['hl']}")
        if locale.get("gl"):
            params.append(f"gl={locale['gl']}")
        return f"{self.MAP_SEARCH_URL}&{'&'.join(params)}"

    def search_links(self, citizenship: str, city_target: str, location_country: str) -> Dict[str, str]:
        """The three fallback searches: by city+country, by country, and 'near'."""
        return {
            "city": self.make_map_link(f"{citizenship} consulate in {city_target}, {location_country}",
                                       location_country),
            "country": self.make_map_link(f"{citizenship} consulate in {location_country}", location_country),
            "near": self.make_map_link(f"{citizenship} consulate near {city_target or location_country}",
                                       location_country),
        }

    @staticmethod
    def is_locality_consistent(address: Any, location_country: str, city_target: str) -> bool:
        """Address must mention the location country or the target city (case-insensitive)."""
        if not isinstance(address, str) or not address.strip():
            return False
        lower_address = address.lower()
        targets = [t.strip().lower() for t in (location_country, city_target) if t and t.strip()]
        return any(t in lower_address for t in targets)

    def choose_map_link(self, model_link: Any, citizenship: str, address: str, location_country: str) -> str:
        """Keep the model's link only if it is a safe URL mentioning the location country."""
        if is_safe_link(model_link) and location_country.lower() in unquote_plus(model_link).lower():
            return model_link.strip()
        return self.make_map_link(f"{citizenship} consulate, {address}, {location_country}", location_country)
