import json

from openai import OpenAI, OpenAIError

from hybrid_categorizer.core.configuration import ClassifierConfig
from hybrid_categorizer.errors import ClassifierUnavailable, InvalidClassifierResponse
from hybrid_categorizer.logger import get_logger
from hybrid_categorizer.models import CATEGORIES, TokenUsage, is_valid_category

from .base import ClassifierGateway, ClassifierResponse

logger = get_logger(__name__)

SYSTEM_INSTRUCTION = (
    "You are an expert transaction categorization assistant for Canadian users. "
    "Given a bank transaction description, classify it into one of the following "
    "predefined categories: {categories}. Respond ONLY with a JSON object in the "
    'format: {{"category": "CATEGORY_NAME"}}.'
)


class LLMClassifierGateway(ClassifierGateway):
    """Remote classifier backed by an OpenAI-compatible chat completions API."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str = "gpt-3.5-turbo",
        base_url: str | None = None,
        temperature: float = 0.2,
        max_tokens: int = 20,
        timeout_seconds: float = 10.0,
    ):
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.client: OpenAI | None = None
        if api_key:
            # No retries inside the hot path; a failed call goes to the fallback chain.
            self.client = OpenAI(
                api_key=api_key,
                base_url=base_url or None,
                timeout=timeout_seconds,
                max_retries=0,
            )
            logger.info(
                "[AI] Classifier enabled: model=%s, base_url=%s", model, base_url or "default"
            )
        else:
            logger.warning("[AI] OPENAI_API_KEY not set. Remote classifier disabled.")

    @classmethod
    def from_config(cls, config: ClassifierConfig) -> "LLMClassifierGateway":
        return cls(
            api_key=config.api_key,
            model=config.model,
            base_url=config.base_url,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
            timeout_seconds=config.timeout_seconds,
        )

    @property
    def enabled(self) -> bool:
        return self.client is not None

    def build_messages(self, description: str) -> list[dict[str, str]]:
        return [
            {
                "role": "system",
                "content": SYSTEM_INSTRUCTION.format(categories=", ".join(CATEGORIES)),
            },
            {"role": "user", "content": f"Transaction: {description}"},
        ]

    def classify(self, description: str) -> ClassifierResponse:
        if self.client is None:
            raise ClassifierUnavailable("OpenAI API key is not configured")

        logger.debug("[AI] Requesting category for: '%s'", description[:50])
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=self.build_messages(description),
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
        except OpenAIError as exc:
            raise ClassifierUnavailable(f"OpenAI API call failed: {exc}") from exc

        content = self._extract_content(response)
        category = self._parse_category(content)
        tokens = self._extract_usage(response)
        logger.debug(
            "[AI] '%s' -> %s (tokens in=%s out=%s)",
            description[:50],
            category,
            tokens.input,
            tokens.output,
        )
        return ClassifierResponse(category=category, tokens=tokens)

    @staticmethod
    def _extract_content(response: object) -> str:
        choices = getattr(response, "choices", None)
        if not choices:
            raise InvalidClassifierResponse("Invalid response structure from OpenAI API")
        message = getattr(choices[0], "message", None)
        content = getattr(message, "content", None)
        if not isinstance(content, str) or not content.strip():
            raise InvalidClassifierResponse("Empty message content from OpenAI API")
        return content.strip()

    @staticmethod
    def _parse_category(content: str) -> str:
        try:
            payload = json.loads(content)
        except json.JSONDecodeError as exc:
            raise InvalidClassifierResponse(
                f"Invalid JSON response from OpenAI: {content}", raw_payload=content
            ) from exc

        category = payload.get("category") if isinstance(payload, dict) else None
        if not isinstance(category, str):
            raise InvalidClassifierResponse(
                f"Invalid category in OpenAI response: {content}", raw_payload=content
            )

        category = category.strip()
        if not is_valid_category(category):
            raise InvalidClassifierResponse(
                f"Category '{category}' is outside the taxonomy", raw_payload=content
            )
        return category

    @staticmethod
    def _extract_usage(response: object) -> TokenUsage:
        usage = getattr(response, "usage", None)
        if usage is None:
            return TokenUsage()
        prompt_tokens = getattr(usage, "prompt_tokens", 0) or 0
        completion_tokens = getattr(usage, "completion_tokens", 0) or 0
        total_tokens = getattr(usage, "total_tokens", 0) or prompt_tokens + completion_tokens
        return TokenUsage(input=prompt_tokens, output=completion_tokens, total=total_tokens)
