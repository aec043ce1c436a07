#!/usr/bin/env python3
"""
Planner Test Suite - tests for normalization, plan generation, documents,
consulate lookup and chat

Tests:
1. ResponseNormalizer / PlanValidator / ConsulateLocator units
2. PlannerCore operations against a mocked OpenAI client
3. PlannerLLM error wrapping
"""

import json
import os
import sys
import unittest
from unittest.mock import Mock, patch

import httpx
import openai

# Add parent directory to path for imports
sys.path.append(os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from src.planner.planner_core import EMPTY_REPLY, PlannerCore
from src.planner.planner_errors import DocumentInputError, ProviderError
from src.planner.planner_llm import PlannerLLM
from src.planner.planner_utils import (
    DOCUMENT_CHECKLISTS,
    ConsulateLocator,
    PlanValidator,
    ResponseNormalizer,
    language_code,
    localized,
)
from src.profile_state import (
    FamilyStatus,
    Purpose,
    RelocationProfile,
    StepStatus,
    StepType,
    TargetCountry,
    create_sample_profile,
)


def _completion(text):
    """Mimic an OpenAI chat completion carrying `text`."""
    return Mock(choices=[Mock(message=Mock(content=text))])


def _make_planner(reply=None, side_effect=None):
    client = Mock()
    if side_effect is not None:
        client.chat.completions.create.side_effect = side_effect
    else:
        client.chat.completions.create.return_value = _completion(reply)
    return PlannerCore(llm=PlannerLLM(client=client)), client


def _sent_messages(client):
    return client.chat.completions.create.call_args.kwargs["messages"]


class TestResponseNormalizer(unittest.TestCase):
    """ResponseNormalizer never raises and always returns the expected shape."""

    def setUp(self):
        self.normalizer = ResponseNormalizer()

    def test_fenced_json_is_parsed(self):
        raw = '```json\n{"steps": [{"title": "Visa"}]}\n```'
        self.assertEqual(self.normalizer.parse_json(raw, {}), {"steps": [{"title": "Visa"}]})

    def test_json_inside_prose_is_repaired(self):
        raw = 'Sure! Here is the plan: {"steps": []} Good luck.'
        self.assertEqual(self.normalizer.parse_json(raw, None), {"steps": []})

    def test_brackets_in_prose_before_object(self):
        raw = 'See [1] and [2]: {"steps": [{"title": "Visa"}]}'
        self.assertEqual(self.normalizer.parse_json(raw, {}), {"steps": [{"title": "Visa"}]})
        self.assertEqual(self.normalizer.failure_count, 0)

    def test_garbage_returns_fallback_and_records_failure(self):
        fallback = {"steps": []}
        for raw in ["not json at all", "", None, "42", "{broken", 17]:
            result = self.normalizer.parse_json(raw, fallback)
            self.assertEqual(result, {"steps": []})
            self.assertIsNot(result, fallback)
        self.assertEqual(self.normalizer.failure_count, 6)
        self.assertIsNotNone(self.normalizer.last_failure)

    def test_array_shaped_response_is_used_as_collection(self):
        data = self.normalizer.parse_json('[{"title": "A"}, {"title": "B"}]', {"steps": []})
        self.assertEqual(len(self.normalizer.extract_collection(data, "steps")), 2)

    def test_extract_collection_rejects_other_shapes(self):
        self.assertEqual(self.normalizer.extract_collection({"steps": "nope"}, "steps"), [])
        self.assertEqual(self.normalizer.extract_collection("text", "steps"), [])
        self.assertEqual(self.normalizer.extract_collection({"steps": [1]}, "steps"), [1])

    def test_checklist_filtering(self):
        items = self.normalizer.normalize_checklist_items(["", "  ", "Apostille birth certificate"], "step_1")
        self.assertEqual(len(items), 1)
        self.assertEqual(items[0].text, "Apostille birth certificate")
        self.assertFalse(items[0].checked)
        self.assertEqual(items[0].id, "step_1_item_3")

    def test_checklist_accepts_objects(self):
        raw = [{"title": "Passport", "checked": True}, {"name": "Photos"}, {"text": ""}, 42, {"id": "x", "text": "Visa"}]
        items = self.normalizer.normalize_checklist_items(raw, "docs")
        self.assertEqual([i.text for i in items], ["Passport", "Photos", "Visa"])
        self.assertEqual([i.id for i in items], ["docs_item_1", "docs_item_2", "x"])
        self.assertTrue(items[0].checked)
        self.assertFalse(items[1].checked)

    def test_checked_must_be_a_real_boolean(self):
        raw = [{"text": "Passport", "checked": "false"}, {"text": "Photos", "checked": "true"},
               {"text": "Visa", "checked": 1}, {"text": "Insurance", "checked": True}]
        items = self.normalizer.normalize_checklist_items(raw, "docs")
        self.assertEqual([i.checked for i in items], [False, False, False, True])

    def test_normalize_steps_defaults(self):
        raw = [
            {"title": "Register address", "priority": "high", "type": "default",
             "checklistItems": ["ignored"], "officialLinks": "https://x.de"},
            {"id": "visa", "priority": 2, "type": "checklist",
             "checklistItems": ["", "Apostille birth certificate"], "suggestedQuestions": ["What fee?", ""]},
            {"id": "visa", "description": "Duplicate id", "priority": True},
        ]
        steps = self.normalizer.normalize_steps(raw)

        self.assertEqual([s.id for s in steps], ["step_1", "visa", "step_3"])
        self.assertEqual([s.title for s in steps], ["Register address", "Step 2", "Step 3"])
        self.assertEqual([s.priority for s in steps], [1, 2, 3])
        self.assertTrue(all(s.status == StepStatus.NOT_STARTED for s in steps))
        self.assertEqual(steps[0].type, StepType.DEFAULT)
        self.assertIsNone(steps[0].checklist_items)
        self.assertEqual(steps[0].official_links, [])
        self.assertEqual(steps[1].type, StepType.CHECKLIST)
        self.assertEqual([i.id for i in steps[1].checklist_items], ["visa_item_2"])
        self.assertEqual(steps[1].suggested_questions, ["What fee?"])
        self.assertEqual(steps[2].description, "Duplicate id")

    def test_type_is_default_unless_exactly_checklist(self):
        steps = self.normalizer.normalize_steps([{"type": "Checklist"}, {"type": "list"}, {}])
        self.assertTrue(all(s.type == StepType.DEFAULT for s in steps))

    def test_ids_unique_across_steps_and_items(self):
        raw = [
            {"type": "checklist", "checklistItems": ["a", "b"]},
            {"id": "step_1_item_1", "title": "Colliding step"},
            {"id": "step_1"},
        ]
        steps = self.normalizer.normalize_steps(raw)
        ids = [s.id for s in steps]
        for s in steps:
            ids.extend(item.id for item in s.checklist_items or [])
        self.assertEqual(len(ids), len(set(ids)))
        self.assertEqual(steps[1].id, "step_2")
        self.assertEqual(steps[2].id, "step_3")

    def test_float_priority_accepted_when_integral(self):
        steps = self.normalizer.normalize_steps([{"priority": 4.0}, {"priority": 2.5}])
        self.assertEqual([s.priority for s in steps], [4, 2])

    def test_history_normalization(self):
        history = [
            {"role": "user", "content": "Hi"},
            {"role": "model", "parts": [{"text": "Hello"}, {"text": "there"}]},
            {"role": "system", "content": "ignored"},
            {"role": "assistant", "content": ""},
            {"role": "user", "text": "Next"},
            "not a turn",
        ]
        self.assertEqual(self.normalizer.normalize_history(history), [
            {"role": "user", "content": "Hi"},
            {"role": "assistant", "content": "Hello\nthere"},
            {"role": "user", "content": "Next"},
        ])

    def test_history_is_bounded(self):
        history = [{"role": "user", "content": f"turn {i}"} for i in range(30)]
        turns = self.normalizer.normalize_history(history, max_turns=20)
        self.assertEqual(len(turns), 20)
        self.assertEqual(turns[0]["content"], "turn 10")

    def test_document_result_clears_actions_when_not_document(self):
        result = self.normalizer.normalize_document_result(
            {"summary": "Please upload a document.", "actions": ["x"], "isDocument": False}
        )
        self.assertEqual(result, {"summary": "Please upload a document.", "actions": [], "is_document": False})

    def test_document_result_caps_actions(self):
        result = self.normalizer.normalize_document_result(
            {"summary": "Tax letter.", "actions": ["a", "b", "c", "d", "e", "f", 3], "isDocument": True}
        )
        self.assertEqual(result["actions"], ["a", "b", "c", "d", "e"])


class TestPlanValidator(unittest.TestCase):

    def setUp(self):
        self.normalizer = ResponseNormalizer()
        self.validator = PlanValidator()

    def test_missing_checklist_is_synthesized_first(self):
        steps = self.normalizer.normalize_steps([{"title": "Find a job"}, {"title": "Book flights"}])
        result = self.validator.enforce(steps, is_already_in_destination=False)

        self.assertEqual(len(result), 3)
        self.assertEqual(result[0].type, StepType.CHECKLIST)
        self.assertEqual(result[0].title, "Gather Required Documents")
        self.assertGreaterEqual(len(result[0].checklist_items), 1)
        self.assertEqual(result[0].priority, 1)

    def test_existing_checklist_moves_to_front(self):
        steps = self.normalizer.normalize_steps([
            {"title": "Find a job", "priority": 1},
            {"title": "Documents", "type": "checklist", "priority": 3, "checklistItems": ["Passport"]},
            {"title": "Flights", "priority": 2},
        ])
        result = self.validator.enforce(steps, is_already_in_destination=False)
        self.assertEqual([s.title for s in result], ["Documents", "Find a job", "Flights"])
        self.assertEqual(result[0].priority, 1)

    def test_empty_front_checklist_gets_family_items(self):
        steps = self.normalizer.normalize_steps([{"title": "Documents", "type": "checklist"}])
        result = self.validator.enforce(steps, False, FamilyStatus.WITH_CHILDREN.value)
        texts = [i.text for i in result[0].checklist_items]
        self.assertIn("Children's passports", texts)

    def test_synthesized_documents_step_follows_plan_language(self):
        steps = self.normalizer.normalize_steps([{"title": "Знайти житло"}])
        result = self.validator.enforce(steps, False, FamilyStatus.WITH_PARTNER.value, "Ukrainian")

        checklist = DOCUMENT_CHECKLISTS["uk"]
        self.assertEqual(result[0].title, checklist["title"])
        texts = [i.text for i in result[0].checklist_items]
        self.assertEqual(texts, checklist["items"] + checklist["partner"])

    def test_unknown_language_uses_english_items(self):
        steps = self.normalizer.normalize_steps([{"title": "Documents", "type": "checklist"}])
        result = self.validator.enforce(steps, False, language="fr")
        self.assertEqual([i.text for i in result[0].checklist_items], DOCUMENT_CHECKLISTS["en"]["items"])

    def test_in_destination_only_sorts(self):
        steps = self.normalizer.normalize_steps([
            {"title": "B", "priority": 2}, {"title": "A", "priority": 1}, {"title": "C", "priority": 2},
        ])
        result = self.validator.enforce(steps, is_already_in_destination=True)
        self.assertEqual([s.title for s in result], ["A", "B", "C"])

    def test_step_count_is_not_enforced(self):
        steps = self.normalizer.normalize_steps([{"title": f"S{i}"} for i in range(14)])
        self.assertEqual(len(self.validator.enforce(steps, True)), 14)


class TestConsulateLocator(unittest.TestCase):

    def setUp(self):
        self.locator = ConsulateLocator()

    def test_map_link_with_locale(self):
        link = self.locator.make_map_link("France consulate near Kyiv", "Ukraine")
        self.assertEqual(
            link,
            "https://www.google.com/maps/search/?api=1&query=France%20consulate%20near%20Kyiv&hl=uk&gl=UA",
        )

    def test_unknown_country_has_no_locale_hints(self):
        link = self.locator.make_map_link("India consulate in Brazil", "Brazil")
        self.assertNotIn("hl=", link)
        self.assertNotIn("gl=", link)

    def test_locality_guard_is_case_insensitive(self):
        self.assertTrue(self.locator.is_locality_consistent("vul. Reitarska 39, KYIV, UKRAINE", "Ukraine", "Ukraine"))
        self.assertTrue(self.locator.is_locality_consistent("Main st 1, Graz", "Austria", "graz"))
        self.assertFalse(self.locator.is_locality_consistent("Pariser Platz 5, Berlin", "Ukraine", "Ukraine"))
        self.assertFalse(self.locator.is_locality_consistent(None, "Ukraine", "Ukraine"))

    def test_language_codes(self):
        self.assertEqual(language_code("English"), "en")
        self.assertEqual(language_code("uk-UA"), "uk")
        self.assertEqual(language_code("Deutsch"), "de")
        self.assertEqual(language_code(""), "en")
        self.assertEqual(localized("consulate_note", "fr"), localized("consulate_note", "en"))


class TestPlanGeneration(unittest.TestCase):

    def test_scenario_ukrainian_worker_gets_document_checklist_first(self):
        reply = json.dumps({"steps": [
            {"id": "job", "title": "Find a job offer", "priority": 1, "type": "default",
             "suggestedQuestions": ["Where to look?"]},
            {"id": "visa", "title": "Apply for a work visa", "priority": 2},
        ]})
        planner, client = _make_planner(reply)
        profile = create_sample_profile()

        steps = planner.generate_plan(profile, "English")

        self.assertEqual(steps[0].type, StepType.CHECKLIST)
        self.assertGreaterEqual(len(steps[0].checklist_items), 1)
        self.assertEqual([s.id for s in steps[1:]], ["job", "visa"])
        kwargs = client.chat.completions.create.call_args.kwargs
        self.assertEqual(kwargs["response_format"], {"type": "json_object"})
        user_prompt = _sent_messages(client)[-1]["content"]
        self.assertIn("CITIZENSHIP: Ukraine", user_prompt)
        self.assertIn("CURRENTLY IN DESTINATION: No", user_prompt)
        self.assertIn("Gather Required Documents", _sent_messages(client)[0]["content"])

    def test_family_status_reaches_prompt(self):
        planner, client = _make_planner('{"steps": [{"title": "Register"}]}')
        profile = create_sample_profile()
        profile.family_status = FamilyStatus.WITH_PARTNER_CHILDREN
        profile.is_already_in_destination = True

        steps = planner.generate_plan(profile, "German")

        self.assertEqual(len(steps), 1)
        self.assertIn("moving with a partner and children", _sent_messages(client)[-1]["content"])
        self.assertIn("Respond in German", _sent_messages(client)[0]["content"])

    def test_malformed_reply_in_destination_returns_empty_plan(self):
        planner, _ = _make_planner("Sorry, I can't do that")
        profile = create_sample_profile()
        profile.is_already_in_destination = True
        self.assertEqual(planner.generate_plan(profile), [])

    def test_malformed_reply_before_move_does_not_invent_a_plan(self):
        planner, _ = _make_planner("Sorry, I cannot help with that.")
        profile = create_sample_profile()
        self.assertFalse(profile.is_already_in_destination)
        self.assertEqual(planner.generate_plan(profile), [])

    def test_synthesized_documents_step_uses_plan_language(self):
        planner, _ = _make_planner('{"steps": [{"id": "visa", "title": "Оформити візу"}]}')
        steps = planner.generate_plan(create_sample_profile(), "Ukrainian")
        self.assertEqual(steps[0].title, DOCUMENT_CHECKLISTS["uk"]["title"])
        self.assertEqual(steps[1].id, "visa")

    def test_provider_failure_propagates(self):
        error = openai.APITimeoutError(request=httpx.Request("POST", "https://api.openai.com/v1/chat/completions"))
        planner, _ = _make_planner(side_effect=error)
        with self.assertRaises(ProviderError):
            planner.generate_plan(create_sample_profile())


class TestDocumentExplainer(unittest.TestCase):

    def test_no_input_is_rejected_before_any_call(self):
        planner, client = _make_planner("{}")
        with self.assertRaises(DocumentInputError):
            planner.explain_document(None, None, "image/jpeg", "en")
        with self.assertRaises(DocumentInputError):
            planner.explain_document("   ", b"", "image/jpeg", "en")
        client.chat.completions.create.assert_not_called()

    def test_image_is_sent_as_image_part(self):
        reply = '{"summary": "Residence permit appointment letter.", "actions": ["Bring passport"], "isDocument": true}'
        planner, client = _make_planner(reply)

        result = planner.explain_document(None, b"\x89PNG data", "image/png")

        self.assertTrue(result.is_document)
        self.assertEqual(result.actions, ["Bring passport"])
        parts = _sent_messages(client)[-1]["content"]
        image_parts = [p for p in parts if p["type"] == "image_url"]
        self.assertEqual(len(image_parts), 1)
        self.assertTrue(image_parts[0]["image_url"]["url"].startswith("data:image/png;base64,"))

    def test_pdf_is_never_sent_as_image(self):
        planner, client = _make_planner('{"summary": "", "actions": [], "isDocument": false}')

        planner.explain_document("Finanzamt letter", b"%PDF-1.7", "application/pdf")

        parts = _sent_messages(client)[-1]["content"]
        self.assertFalse(any(p["type"] == "image_url" for p in parts))
        self.assertTrue(any("application/pdf" in p.get("text", "") for p in parts))
        self.assertTrue(parts[0]["text"].startswith("Provided text: Finanzamt letter"))

    def test_provider_failure_degrades(self):
        planner, _ = _make_planner(side_effect=openai.APIConnectionError(
            request=httpx.Request("POST", "https://api.openai.com/v1/chat/completions")))
        result = planner.explain_document("some text", language="de")
        self.assertFalse(result.is_document)
        self.assertTrue(result.failed)
        self.assertEqual(result.summary, localized("document_error", "de"))

    def test_malformed_reply_uses_fallback(self):
        planner, _ = _make_planner("no json here")
        result = planner.explain_document("some text")
        self.assertEqual((result.summary, result.actions, result.is_document), ("", [], False))


class TestConsulateResolver(unittest.TestCase):

    def setUp(self):
        self.profile = RelocationProfile(
            user_id="u_fr",
            citizenship="France",
            current_residence="Ukraine",
            to_country=TargetCountry.GERMANY,
            purpose=Purpose.WORK,
            is_already_in_destination=False,
        )

    def test_address_outside_location_country_is_downgraded(self):
        reply = json.dumps({"name": "Consulat de France", "address": "Pariser Platz 5, 10117 Berlin",
                            "mapLink": "https://maps.google.com/?q=Berlin", "note": "Open Mon-Fri"})
        planner, client = _make_planner(reply)

        info = planner.find_nearest_consulate(self.profile)

        self.assertFalse(info.verified)
        self.assertNotIn("Berlin", info.address)
        self.assertEqual(info.address, localized("consulate_address", "English"))
        self.assertEqual(info.map_link, info.search_links["near"])
        self.assertIn("gl=UA", info.map_link)
        self.assertEqual(info.name, "France consulate")
        self.assertIn("Ukraine", _sent_messages(client)[-1]["content"])

    def test_verified_address_gets_deterministic_map_link(self):
        reply = json.dumps({"name": "Embassy of France", "address": "39 Reitarska St, Kyiv, Ukraine",
                            "mapLink": "https://maps.example.com/?q=Kyiv", "website": "https://ua.ambafrance.org"})
        planner, _ = _make_planner(reply)

        info = planner.find_nearest_consulate(self.profile)

        self.assertTrue(info.verified)
        self.assertEqual(info.address, "39 Reitarska St, Kyiv, Ukraine")
        self.assertEqual(info.website, "https://ua.ambafrance.org")
        self.assertTrue(info.map_link.startswith(ConsulateLocator.MAP_SEARCH_URL))
        self.assertIn("hl=uk&gl=UA", info.map_link)

    def test_model_map_link_kept_when_it_names_location_country(self):
        link = "https://www.google.com/maps/search/?api=1&query=Embassy+of+France+Kyiv+Ukraine"
        reply = json.dumps({"name": "Embassy of France", "address": "Kyiv, Ukraine", "mapLink": link})
        planner, _ = _make_planner(reply)
        self.assertEqual(planner.find_nearest_consulate(self.profile).map_link, link)

    def test_in_destination_uses_destination_city(self):
        self.profile.is_already_in_destination = True
        self.profile.destination_city = "Munich"
        planner, client = _make_planner('{"address": "Möhlstraße 5, München"}')

        info = planner.find_nearest_consulate(self.profile, "de")

        self.assertFalse(info.verified)
        self.assertIn("gl=DE", info.map_link)
        self.assertEqual(info.note, localized("consulate_note", "de"))
        self.assertIn("Target city or area: Munich", _sent_messages(client)[-1]["content"])

    def test_provider_failure_still_returns_map_search(self):
        planner, _ = _make_planner(side_effect=openai.APIConnectionError(
            request=httpx.Request("POST", "https://api.openai.com/v1/chat/completions")))
        info = planner.find_nearest_consulate(self.profile)
        self.assertFalse(info.verified)
        self.assertEqual(info.map_link, info.search_links["near"])


class TestChat(unittest.TestCase):

    def test_step_chat_is_grounded_in_profile(self):
        planner, client = _make_planner("Bring your passport.")
        profile = create_sample_profile()
        history = [{"role": "user", "content": "Hi"}, {"role": "model", "text": "Hello!"}]

        reply = planner.chat_about_step(profile, "Step: Anmeldung", "What do I bring?", history, "English")

        self.assertEqual(reply, "Bring your passport.")
        messages = _sent_messages(client)
        self.assertIn("moving from Ukraine to Germany", messages[0]["content"])
        self.assertIn("moving alone", messages[0]["content"])
        self.assertEqual(messages[1:3], [{"role": "user", "content": "Hi"},
                                         {"role": "assistant", "content": "Hello!"}])
        self.assertEqual(messages[-1], {"role": "user",
                                        "content": "Context: Step: Anmeldung\nQuestion: What do I bring?"})

    def test_provider_failure_returns_apology(self):
        planner, _ = _make_planner(side_effect=openai.APIConnectionError(
            request=httpx.Request("POST", "https://api.openai.com/v1/chat/completions")))
        reply = planner.chat_about_step(create_sample_profile(), "ctx", "question", [], "uk")
        self.assertEqual(reply, localized("chat_apology", "uk"))

    def test_empty_reply(self):
        planner, _ = _make_planner(None)
        self.assertEqual(planner.chat("Hello"), EMPTY_REPLY)


class TestPlaceSuggestions(unittest.TestCase):

    def test_suggestions_are_normalized(self):
        reply = json.dumps({"suggestions": [
            {"title": "Stadtbibliothek", "description": "Free wifi", "link": "https://maps.google.com/?q=x"},
            {"description": "No title"},
        ]})
        planner, _ = _make_planner(reply)
        places = planner.suggest_places("Munich", "low", ["books"])
        self.assertEqual(places[0].address, "https://maps.google.com/?q=x")
        self.assertEqual(places[1].title, "Place 2")

    def test_unparseable_reply_is_returned_raw(self):
        planner, _ = _make_planner("Try the central library.")
        places = planner.suggest_places("Prague", "free", [])
        self.assertEqual(len(places), 1)
        self.assertEqual(places[0].raw_text, "Try the central library.")


class TestPlannerLLM(unittest.TestCase):

    @patch.dict(os.environ, {}, clear=True)
    def test_missing_api_key_raises_error(self):
        with self.assertRaises(ValueError) as context:
            PlannerLLM()
        self.assertIn("OPENAI_API_KEY", str(context.exception))

    def test_invoke_builds_messages(self):
        client = Mock()
        client.chat.completions.create.return_value = _completion("  hi  ")
        llm = PlannerLLM(client=client, text_model="test-model")

        reply = llm.invoke("sys", "question", history=[{"role": "assistant", "content": "earlier"}],
                           temperature=0.3)

        self.assertEqual(reply, "hi")
        client.chat.completions.create.assert_called_once_with(
            model="test-model",
            messages=[
                {"role": "system", "content": "sys"},
                {"role": "assistant", "content": "earlier"},
                {"role": "user", "content": "question"},
            ],
            temperature=0.3,
        )

    def test_openai_errors_become_provider_errors(self):
        client = Mock()
        client.chat.completions.create.side_effect = openai.APITimeoutError(
            request=httpx.Request("POST", "https://api.openai.com/v1/chat/completions"))
        with self.assertRaises(ProviderError):
            PlannerLLM(client=client).invoke("sys", "question", json_mode=True)

    def test_missing_choices_return_empty_text(self):
        client = Mock()
        client.chat.completions.create.return_value = Mock(choices=[])
        self.assertEqual(PlannerLLM(client=client).invoke("sys", "q"), "")


if __name__ == "__main__":
    unittest.main(verbosity=2)
