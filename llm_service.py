import json
import logging
import re
from typing import Any, Dict, List, Optional

from openai import APIConnectionError, APIStatusError, OpenAI
from pydantic import ValidationError

import lumora_config
from lumora_errors import (
    EmptyResponseError,
    InvalidResponseFormatError,
    MissingAPIKeyError,
    ProviderError,
    ProviderNotImplementedError,
)
from lumora_types import (
    AnalysisResult,
    AppConfig,
    ColumnDefinition,
    DEFAULT_MODEL,
    LLMProvider,
    VisualizationSpec,
    WORKING_TABLE,
)

logger = logging.getLogger(__name__)


class AnalysisGenerator:
    """Translates a question into SQL + explanation + chart spec via OpenRouter"""

    TEMPERATURE = 0.1
    DEFAULT_ROW_LIMIT = 100
    FENCE_PATTERN = re.compile(r"```(?:json)?[ \t]*\n?|\n?```", re.IGNORECASE)
    GENERIC_FAILURE = "Failed to fetch from OpenRouter"

    def __init__(
        self,
        config: AppConfig,
        settings: Optional[lumora_config.Settings] = None,
        client: Optional[OpenAI] = None
    ):
        """
        Args:
            config: Provider, API key and model chosen by the user
            settings: Endpoint / header settings (default: process settings)
            client: Pre-built OpenAI-compatible client (tests inject a fake)
        """
        self.config = config
        self.settings = settings or lumora_config.settings
        self.model = config.model or DEFAULT_MODEL
        self._client = client

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            self._client = OpenAI(
                api_key=self.config.api_key,
                base_url=self.settings.openrouter_base_url,
                default_headers={
                    "HTTP-Referer": self.settings.app_url,
                    "X-Title": self.settings.app_title,
                },
                max_retries=0,
                timeout=self.settings.request_timeout,
            )
        return self._client

    @staticmethod
    def describe_schema(columns: List[ColumnDefinition]) -> str:
        return ", ".join(col.describe() for col in columns)

    def _get_system_prompt(self, columns: List[ColumnDefinition]) -> str:
        return f"""You are an expert Data Analyst and SQL Generator.
Your goal is to translate natural language questions into executable SQL queries for a table named '{WORKING_TABLE}'.

The table '{WORKING_TABLE}' has the following columns: {self.describe_schema(columns)}.

Return a JSON object with the following structure (do NOT return Markdown code blocks, just raw JSON):
{{
  "sql": "The SQL query to answer the user's question. Use standard SQL compatible with SQLite. Always SELECT from '{WORKING_TABLE}'. Limit results to {self.DEFAULT_ROW_LIMIT} if not specified.",
  "explanation": "A brief, friendly explanation of what this data shows.",
  "visualization": {{
    "type": "bar | line | pie | area",
    "xAxisKey": "column_name_for_x_axis",
    "dataKey": "column_name_for_y_axis",
    "title": "Chart title"
  }}
}}

If the user asks for a visualization, infer the best type.
If the question implies a time series, use 'line'.
If comparing categories, use 'bar' or 'pie'.

IMPORTANT: Return ONLY the valid JSON string. No preamble."""

    def build_messages(self, question: str, columns: List[ColumnDefinition]) -> List[Dict[str, str]]:
        return [
            {"role": "system", "content": self._get_system_prompt(columns)},
            {"role": "user", "content": question},
        ]

    def _check_provider(self):
        if self.config.provider != LLMProvider.OPENROUTER:
            raise ProviderNotImplementedError(
                f"{self.config.provider.value} is not implemented for live queries. "
                "Please select OpenRouter and provide a key."
            )
        if not self.config.api_key:
            raise MissingAPIKeyError("Please enter your OpenRouter API key.")

    def generate(self, question: str, columns: List[ColumnDefinition]) -> AnalysisResult:
        """Single round trip to the provider. No retries."""
        self._check_provider()

        logger.info(f"Requesting analysis from {self.model} ({len(columns)} columns)")
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=self.build_messages(question, columns),
                temperature=self.TEMPERATURE,
            )
        except APIStatusError as e:
            logger.error(f"LLM Service Error: HTTP {e.status_code}")
            raise ProviderError(self._status_error_message(e.body)) from e
        except APIConnectionError as e:
            logger.error(f"LLM Service Error: {str(e)}")
            raise ProviderError(f"{self.GENERIC_FAILURE}: {str(e)}") from e

        choices = getattr(response, "choices", None) or []
        content = choices[0].message.content if choices else None
        if not content:
            raise EmptyResponseError("No content received from LLM")

        return self.parse_response(content)

    @classmethod
    def _status_error_message(cls, body: Any) -> str:
        message = None
        if isinstance(body, dict):
            error = body.get("error", body)
            if isinstance(error, dict):
                message = error.get("message")
            elif isinstance(error, str):
                message = error
        return message or cls.GENERIC_FAILURE

    @classmethod
    def strip_fences(cls, content: str) -> str:
        return cls.FENCE_PATTERN.sub("", content).strip()

    @classmethod
    def parse_response(cls, content: str) -> AnalysisResult:
        """Decode the assistant content into an AnalysisResult"""
        cleaned = cls.strip_fences(content)
        try:
            payload = json.loads(cleaned)
        except json.JSONDecodeError:
            logger.error(f"Failed to parse LLM JSON response: {content}")
            raise InvalidResponseFormatError("The AI returned an invalid response format.")

        if not isinstance(payload, dict):
            raise InvalidResponseFormatError("The AI returned an invalid response format.")

        visualization = None
        raw_viz = payload.get("visualization")
        if raw_viz:
            try:
                visualization = VisualizationSpec.model_validate(raw_viz)
            except ValidationError as e:
                logger.warning(f"Dropping invalid visualization spec: {e.error_count()} error(s)")

        try:
            return AnalysisResult(
                sql=payload.get("sql"),
                explanation=payload.get("explanation"),
                visualization=visualization,
            )
        except ValidationError:
            logger.error(f"LLM response is missing required fields: {sorted(payload)}")
            raise InvalidResponseFormatError("The AI returned an invalid response format.")


def generate_analysis(question: str, columns: List[ColumnDefinition], config: AppConfig) -> AnalysisResult:
    return AnalysisGenerator(config).generate(question, columns)
