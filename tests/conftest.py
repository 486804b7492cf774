import io
import json
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import pandas as pd
import pytest

from data_service import SQLQueryTool
from lumora_types import AnalysisResult, AppConfig, LLMProvider


# ============================================================================
# Helpers
# ============================================================================

def completion(content: Optional[str]) -> SimpleNamespace:
    """Minimal stand-in for an OpenAI chat completion envelope."""
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


class FakeCompletions:
    def __init__(self, content: Optional[str] = None, error: Optional[Exception] = None):
        self.content = content
        self.error = error
        self.calls: List[Dict[str, Any]] = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return completion(self.content)


class FakeClient:
    """Just enough of openai.OpenAI for client.chat.completions.create."""

    def __init__(self, content: Optional[str] = None, error: Optional[Exception] = None):
        self.chat = SimpleNamespace(completions=FakeCompletions(content, error))

    @property
    def calls(self) -> List[Dict[str, Any]]:
        return self.chat.completions.calls


def llm_payload(sql: str, explanation: str = "Sales by region.", visualization: Optional[dict] = None) -> str:
    payload = {"sql": sql, "explanation": explanation}
    if visualization is not None:
        payload["visualization"] = visualization
    return json.dumps(payload)


class StubAnalysis:
    """Injectable analysis_fn that records its calls."""

    def __init__(self, result: Optional[AnalysisResult] = None, error: Optional[Exception] = None):
        self.result = result
        self.error = error
        self.calls = []

    def __call__(self, question, columns, config):
        self.calls.append((question, list(columns), config))
        if self.error is not None:
            raise self.error
        return self.result


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def live_config() -> AppConfig:
    return AppConfig(provider=LLMProvider.OPENROUTER, api_key="sk-or-test", model="test/model")


@pytest.fixture
def executor():
    tool = SQLQueryTool()
    yield tool
    tool.close()


@pytest.fixture
def sales_csv() -> bytes:
    return b"region,sales\nWest,100\n"


@pytest.fixture
def xlsx_bytes() -> bytes:
    buffer = io.BytesIO()
    with pd.ExcelWriter(buffer, engine="openpyxl") as writer:
        pd.DataFrame({"region": ["West", "East"], "sales": [100, 250]}).to_excel(
            writer, sheet_name="first", index=False
        )
        pd.DataFrame({"ignored": [1]}).to_excel(writer, sheet_name="second", index=False)
    return buffer.getvalue()
