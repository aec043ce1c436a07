#!/usr/bin/env python3
"""
Planner LLM Interface - OpenAI chat-completions wrapper

Critical Implementation:
- One call per invocation; no internal retries (retry policy belongs to the caller)
- Every client failure (network, auth, quota, timeout, bad request) becomes ProviderError
- Returns raw text only; parsing happens in ResponseNormalizer
"""

import base64
import logging
import os
from typing import Dict, List, Any, Optional, Union

from dotenv import load_dotenv
from openai import OpenAI, OpenAIError

from src.planner.planner_errors import ProviderError

load_dotenv()

logger = logging.getLogger(__name__)

UserContent = Union[str, List[Dict[str, Any]]]


class PlannerLLM:
    """OpenAI interface used by every AI-backed planner operation."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        text_model: Optional[str] = None,
        mini_model: Optional[str] = None,
        vision_model: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[OpenAI] = None,
    ):
        self.text_model = text_model or os.getenv("OPENAI_MODEL_TEXT", "gpt-4o")
        self.mini_model = mini_model or os.getenv("OPENAI_MODEL_MINI", "gpt-4o-mini")
        self.vision_model = vision_model or os.getenv("OPENAI_MODEL_VISION", "gpt-4o")
        self.timeout = timeout or float(os.getenv("OPENAI_TIMEOUT_SECONDS", "60"))

        if client is None:
            api_key = api_key or os.getenv("OPENAI_API_KEY")
            if not api_key:
                raise ValueError("Missing OpenAI environment variable: OPENAI_API_KEY")
            client = OpenAI(api_key=api_key, timeout=self.timeout, max_retries=0)
            logger.info("✅ OpenAI client ready (text=%s, mini=%s, vision=%s)",
                        self.text_model, self.mini_model, self.vision_model)
        self.client = client

    def close(self):
        """Release the underlying HTTP client."""
        close = getattr(self.client, "close", None)
        if callable(close):
            close()

    @staticmethod
    def text_part(text: str) -> Dict[str, Any]:
        return {"type": "text", "text": text}

    @staticmethod
    def image_part(image_bytes: bytes, mime_type: str) -> Dict[str, Any]:
        """Inline image as a base64 data URL."""
        encoded = base64.b64encode(image_bytes).decode("ascii")
        return {"type": "image_url", "image_url": {"url": f"data:{mime_type};base64,{encoded}"}}

    def invoke(
        self,
        system_prompt: str,
        user_content: UserContent,
        json_mode: bool = False,
        history: Optional[List[Dict[str, str]]] = None,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
    ) -> str:
        """
        Run a single chat completion.

        Args:
            system_prompt: System instruction
            user_content: Final user message, plain text or a list of content parts
            json_mode: Ask the model for a JSON object response
            history: Prior {role, content} turns placed between system and user message
            model: Model id, defaults to the text model
            temperature: Sampling temperature, provider default when None

        Returns:
            The reply text, stripped ("" when the model returned no content)

        Raises:
            ProviderError: If the call itself fails
        """
        messages = [{"role": "system", "content": system_prompt}]
        messages.extend(history or [])
        messages.append({"role": "user", "content": user_content})

        request = {"model": model or self.text_model, "messages": messages}
        if json_mode:
            request["response_format"] = {"type": "json_object"}
        if temperature is not None:
            request["temperature"] = temperature

        try:
            completion = self.client.chat.completions.create(**request)
        except OpenAIError as e:
            logger.error("❌ LLM call failed (%s): %s", request["model"], e)
            raise ProviderError(f"LLM call failed: {e}") from e

        try:
            content = completion.choices[0].message.content
        except (AttributeError, IndexError, TypeError):
            logger.warning("⚠️  LLM returned no choices (%s)", request["model"])
            return ""
        return (content or "").strip()


def test_connection():
    """Smoke test against the configured OpenAI account."""
    try:
        llm = PlannerLLM()
        reply = llm.invoke("Reply with the single word: ok", "ping", model=llm.mini_model)
        print(f"✅ OpenAI connected successfully. Reply: {reply!r}")
        llm.close()
        return True
    except Exception as e:
        print(f"❌ OpenAI connection failed: {e}")
        return False


if __name__ == "__main__":
    test_connection()
