from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union
import uuid

from pydantic import BaseModel, ConfigDict, Field


Scalar = Union[str, int, float, bool, None]
Row = Dict[str, Any]

WORKING_TABLE = "uploaded_data"
DEFAULT_MODEL = "google/gemini-2.0-flash-lite-preview-02-05:free"


# ============================================================================
# Domain Models
# ============================================================================

class ColumnType(str, Enum):
    """Semantic type of a column"""
    STRING = "string"
    NUMBER = "number"
    DATE = "date"
    BOOLEAN = "boolean"
    UNKNOWN = "unknown"


class ChartType(str, Enum):
    BAR = "bar"
    LINE = "line"
    PIE = "pie"
    AREA = "area"


class LLMProvider(str, Enum):
    """Providers selectable in the sidebar. Only OpenRouter is wired to a live backend."""
    OPENROUTER = "openrouter"
    GEMINI = "gemini"


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class ColumnDefinition(BaseModel):
    """Inferred name + type of one column"""
    model_config = ConfigDict(frozen=True)

    name: str
    type: ColumnType

    def describe(self) -> str:
        return f"{self.name} ({self.type.value})"

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class Dataset(BaseModel):
    """A dataset known to the conversation (uploaded or demo)"""
    id: str
    name: str
    row_count: int
    columns: List[ColumnDefinition] = Field(default_factory=list)
    is_demo: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class VisualizationSpec(BaseModel):
    """Chart type plus axis mapping. Wire format uses camelCase keys."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    type: ChartType
    x_axis_key: str = Field(alias="xAxisKey")
    data_key: str = Field(alias="dataKey")
    title: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class AnalysisResult(BaseModel):
    """SQL + explanation (+ chart, + rows once executed) for one question"""
    model_config = ConfigDict(frozen=True)

    sql: str
    explanation: str
    visualization: Optional[VisualizationSpec] = None
    data: Optional[List[Row]] = None

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class Message(BaseModel):
    """One transcript entry. Never mutated after it is appended."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    role: Role
    content: str
    timestamp: str = Field(default_factory=lambda: datetime.now().isoformat())
    sql: Optional[str] = None
    data: Optional[List[Row]] = None
    visualization: Optional[VisualizationSpec] = None

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class AppConfig(BaseModel):
    """Provider selection. The API key only ever lives in memory."""
    provider: LLMProvider = LLMProvider.OPENROUTER
    api_key: str = Field(default="", repr=False)
    model: str = DEFAULT_MODEL

    @property
    def is_live(self) -> bool:
        return self.provider == LLMProvider.OPENROUTER

    def to_public_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider.value,
            "model": self.model,
            "has_api_key": bool(self.api_key),
        }
