"""LLM client and semantic interpretation of scanned mail pieces."""

import json
import re
from typing import Any, Dict, Optional

import structlog

from ..config.settings import LLMSettings, get_settings
from ..exceptions import LlmAuthenticationError, LlmConfigurationError
from ..ingestion.models import MailInterpretation, OcrResult

logger = structlog.get_logger(__name__)

EMPTY_OUTPUT_SUMMARY = "LLM returned no analysis for this mail piece."
EMPTY_OUTPUT_REASON = "No LLM output was returned."
UNPARSEABLE_SUMMARY = "LLM could not reliably interpret this mail piece."
UNPARSEABLE_REASON = "Failed to parse LLM JSON response."

TRUTHY_STRINGS = {"true", "yes", "1"}

FENCE_OPEN = re.compile(r"^```[a-zA-Z]*\s*")

PROMPT_TEMPLATE = """You are reading OCR text taken from the scan of one piece of physical US mail.

Tasks:
1. Name the sender if the text makes it clear. Otherwise use null for "senderName".
2. Describe what kind of mail this is in "mailType", in your own words
   (for example "credit card offer", "bank statement", "medical bill",
   "political flyer", "personal letter", "unclear"; you are not limited to these).
3. Summarize the piece in one or two plain sentences.
4. Decide whether a typical recipient should treat it as important.
5. Explain that decision briefly.

Output rules:
- Reply with exactly one JSON object and nothing else: no prose, no markdown.
- Use exactly these fields:
  {{
    "senderName": string or null,
    "mailType": string,
    "shortSummary": string,
    "isImportant": boolean,
    "importanceReason": string
  }}
- Never put double quote characters inside string values; use single quotes instead.
- Never put line breaks inside string values.
- Keep "shortSummary" under {summary_max} characters.
- Keep "importanceReason" under {reason_max} characters.

OCR result as JSON:

{ocr_json}"""


class LLMClient:
    """Provider-selected text completion client.

    The provider SDK is imported and its client created on first use, so a
    missing credential surfaces as ``LlmConfigurationError`` before any call.
    """

    def __init__(self, settings: Optional[LLMSettings] = None):
        self.settings = settings or get_settings().llm
        self.provider = self.settings.provider
        self.model = self.settings.model
        self._client = None

    def _get_client(self):
        if self._client is not None:
            return self._client

        if not self.settings.api_key:
            raise LlmConfigurationError(self.provider, "API key is not set (LLM_API_KEY)")

        if self.provider == "openai":
            import openai
            self._client = openai.AsyncOpenAI(api_key=self.settings.api_key, base_url=self.settings.base_url)
        elif self.provider == "anthropic":
            import anthropic
            self._client = anthropic.AsyncAnthropic(api_key=self.settings.api_key)
        else:
            raise LlmConfigurationError(self.provider, "unsupported provider")

        logger.info("LLM client initialized", provider=self.provider, model=self.model)
        return self._client

    async def complete(self, prompt: str, temperature: float, max_tokens: int) -> str:
        """Single-turn completion; returns the text output (possibly empty)."""
        client = self._get_client()
        if self.provider == "anthropic":
            return await self._complete_anthropic(client, prompt, temperature, max_tokens)
        return await self._complete_openai(client, prompt, temperature, max_tokens)

    async def _complete_openai(self, client, prompt: str, temperature: float, max_tokens: int) -> str:
        import openai

        try:
            response = await client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": prompt}],
                temperature=temperature,
                max_tokens=max_tokens,
            )
        except (openai.AuthenticationError, openai.PermissionDeniedError) as exc:
            raise LlmAuthenticationError(
                f"OpenAI rejected the configured credential: {exc}",
                status_code=getattr(exc, "status_code", None)
            ) from exc

        if not response.choices:
            return ""
        return response.choices[0].message.content or ""

    async def _complete_anthropic(self, client, prompt: str, temperature: float, max_tokens: int) -> str:
        import anthropic

        try:
            response = await client.messages.create(
                model=self.model,
                messages=[{"role": "user", "content": prompt}],
                temperature=temperature,
                max_tokens=max_tokens,
            )
        except (anthropic.AuthenticationError, anthropic.PermissionDeniedError) as exc:
            raise LlmAuthenticationError(
                f"Anthropic rejected the configured credential: {exc}",
                status_code=getattr(exc, "status_code", None)
            ) from exc

        return "".join(block.text for block in response.content if getattr(block, "type", None) == "text")


def parse_model_json(text: Optional[str]) -> Optional[Dict[str, Any]]:
    """Recover a JSON object from model output.

    Strips markdown fences, isolates the first ``{`` through the last ``}``
    and parses. Returns None when no object can be recovered.
    """
    if not text:
        return None

    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = FENCE_OPEN.sub("", cleaned)
        closing = cleaned.rfind("```")
        if closing != -1:
            cleaned = cleaned[:closing]
        cleaned = cleaned.strip()

    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start != -1 and end > start:
        cleaned = cleaned[start:end + 1]

    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        logger.warning("Model output is not valid JSON", error=str(exc), output_length=len(text))
        return None

    if not isinstance(parsed, dict):
        return None
    return parsed


def coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in TRUTHY_STRINGS
    if isinstance(value, (int, float)):
        return value == 1
    return False


def _coerce_text(value: Any, limit: int, default: str = "") -> str:
    if value is None:
        return default
    return str(value).strip()[:limit]


def _coerce_sender(value: Any) -> Optional[str]:
    if value is None:
        return None
    sender = str(value).strip()
    return sender or None


class SemanticInterpreter:
    """Turns an OCR result into a structured MailInterpretation."""

    def __init__(self, client: Optional[LLMClient] = None, settings: Optional[LLMSettings] = None):
        self.settings = settings or get_settings().llm
        self.client = client or LLMClient(self.settings)

    def build_prompt(self, ocr: OcrResult) -> str:
        return PROMPT_TEMPLATE.format(
            summary_max=self.settings.summary_max_chars,
            reason_max=self.settings.reason_max_chars,
            ocr_json=json.dumps(ocr.to_dict(), indent=2),
        )

    async def interpret(self, ocr: OcrResult) -> MailInterpretation:
        """Ask the model about one mail piece.

        Raises LlmConfigurationError or LlmAuthenticationError from the client.
        Empty or malformed output yields a fallback interpretation instead.
        """
        output = await self.client.complete(
            self.build_prompt(ocr),
            temperature=self.settings.temperature,
            max_tokens=self.settings.max_output_tokens,
        )
        logger.debug("LLM output", output=output)

        if not output or not output.strip():
            logger.warning("LLM returned no output")
            return self._fallback(EMPTY_OUTPUT_SUMMARY, EMPTY_OUTPUT_REASON)

        parsed = parse_model_json(output)
        if parsed is None:
            logger.warning("LLM output could not be parsed, using fallback interpretation")
            return self._fallback(UNPARSEABLE_SUMMARY, UNPARSEABLE_REASON)

        mail_type = _coerce_text(parsed.get("mailType"), self.settings.summary_max_chars) or "unknown"
        return MailInterpretation(
            sender_name=_coerce_sender(parsed.get("senderName")),
            mail_type=mail_type,
            short_summary=_coerce_text(parsed.get("shortSummary"), self.settings.summary_max_chars),
            is_important=coerce_bool(parsed.get("isImportant")),
            importance_reason=_coerce_text(parsed.get("importanceReason"), self.settings.reason_max_chars),
            raw_model_output=parsed,
        )

    @staticmethod
    def _fallback(summary: str, reason: str) -> MailInterpretation:
        return MailInterpretation(
            sender_name=None,
            mail_type="unknown",
            short_summary=summary,
            is_important=False,
            importance_reason=reason,
            raw_model_output=None,
        )
