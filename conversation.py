import json
import logging
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

import lumora_config
from data_service import DataIngestor, SchemaInferencer, SQLQueryTool
from llm_service import generate_analysis
from lumora_errors import ConversationBusyError, DatasetNotFoundError, MissingAPIKeyError
from lumora_types import (
    AnalysisResult,
    AppConfig,
    ColumnDefinition,
    ColumnType,
    Dataset,
    Message,
    Role,
    Row,
    VisualizationSpec,
)
from mock_service import demo_datasets, process_query

logger = logging.getLogger(__name__)

AnalysisFn = Callable[[str, List[ColumnDefinition], AppConfig], AnalysisResult]
MockResponder = Callable[[str, str], AnalysisResult]


class TurnState(str, Enum):
    IDLE = "idle"
    SUBMITTING = "submitting"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class Conversation:
    """
    One user's chat over a set of datasets.

    Sequences File Parser -> Schema Inferencer on upload and
    Analysis Generator -> SQL Query Tool on each question, keeping an
    append-only transcript. At most one turn runs at a time.
    """

    MAX_SUGGESTIONS = 4

    def __init__(
        self,
        config: Optional[AppConfig] = None,
        analysis_fn: AnalysisFn = generate_analysis,
        executor: Optional[SQLQueryTool] = None,
        mock_responder: MockResponder = process_query,
        datasets: Optional[List[Dataset]] = None
    ):
        """
        Args:
            config: Provider config (default: from environment settings)
            analysis_fn: question + schema + config -> AnalysisResult
            executor: SQL tool owning the working table
            mock_responder: question + dataset name -> canned AnalysisResult
            datasets: Initial datasets (default: the two demo datasets)
        """
        self.config = config or lumora_config.settings.default_app_config()
        self.analysis_fn = analysis_fn
        self.executor = executor or SQLQueryTool()
        self.mock_responder = mock_responder

        self.datasets: List[Dataset] = datasets if datasets is not None else demo_datasets()
        self.active_dataset_id: Optional[str] = self.datasets[0].id if self.datasets else None
        self.active_rows: List[Row] = []
        self._rows_by_dataset: Dict[str, List[Row]] = {}

        self._messages: List[Message] = []
        self._turn_lock = threading.Lock()
        self.state = TurnState.IDLE
        self.last_outcome: Optional[TurnState] = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def messages(self) -> Tuple[Message, ...]:
        return tuple(self._messages)

    @property
    def active_dataset(self) -> Optional[Dataset]:
        return next((ds for ds in self.datasets if ds.id == self.active_dataset_id), None)

    @property
    def is_busy(self) -> bool:
        return self.state == TurnState.SUBMITTING

    def _append(self, message: Message):
        self._messages.append(message)

    @contextmanager
    def _between_turns(self):
        if not self._turn_lock.acquire(blocking=False):
            raise ConversationBusyError("Please wait for the current question to finish.")
        try:
            yield
        finally:
            self._turn_lock.release()

    def _find_dataset(self, dataset_id: str) -> Dataset:
        for dataset in self.datasets:
            if dataset.id == dataset_id:
                return dataset
        raise DatasetNotFoundError(f"Dataset {dataset_id} not found")

    def _activate(self, dataset: Dataset):
        # evict before swapping rows so no query can see a half-swapped table
        self.executor.evict()
        self.active_dataset_id = dataset.id
        self.active_rows = self._rows_by_dataset.get(dataset.id, [])
        logger.info(f"Active dataset: {dataset.name} ({len(self.active_rows)} rows in memory)")

    # ------------------------------------------------------------------
    # Datasets & config
    # ------------------------------------------------------------------

    def upload(self, filename: str, content: bytes) -> Dataset:
        """Parse a file, infer its schema and make it the active dataset"""
        with self._between_turns():
            rows = DataIngestor.parse_file(filename, content)
            columns = SchemaInferencer.infer_schema(rows)
            conflicts = SchemaInferencer.find_type_conflicts(rows, columns)

            dataset = Dataset(id=uuid.uuid4().hex, name=filename, row_count=len(rows), columns=columns)
            self.datasets.append(dataset)
            self._rows_by_dataset[dataset.id] = rows
            self._activate(dataset)

            content = (
                f"I've successfully loaded {filename} with {len(rows)} rows. "
                f"I've analyzed the schema and detected {len(columns)} columns. "
                "Check the sidebar for details and suggestions!"
            )
            if conflicts:
                content += (
                    f" Note: {', '.join(conflicts)} mix value types across rows; "
                    "their types were taken from the first row."
                )
            self._append(Message(role=Role.ASSISTANT, content=content))

        logger.info(f"✓ Uploaded {filename}: {len(rows)} rows, {len(columns)} columns")
        return dataset

    def select_dataset(self, dataset_id: str) -> Dataset:
        dataset = self._find_dataset(dataset_id)
        with self._between_turns():
            self._activate(dataset)
        return dataset

    def update_config(self, config: AppConfig):
        with self._between_turns():
            self.config = config
        logger.info(f"Provider set to {config.provider.value} ({config.model})")

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    def uses_live_path(self) -> bool:
        return self.config.is_live and bool(self.active_rows)

    def submit(self, question: str) -> Optional[Message]:
        """
        Run one turn and return the assistant reply.

        Returns None without touching the transcript when the question is
        blank, no dataset is active, or another turn is in flight.
        """
        question = (question or "").strip()
        dataset = self.active_dataset
        if not question or dataset is None:
            logger.info("Submission refused: empty question or no active dataset")
            return None

        if self.config.is_live and not self.config.api_key:
            raise MissingAPIKeyError("Please enter your OpenRouter API key in the sidebar.")

        if not self._turn_lock.acquire(blocking=False):
            logger.warning("Submission refused: a turn is already in flight")
            return None

        try:
            self.state = TurnState.SUBMITTING
            self._append(Message(role=Role.USER, content=question))

            try:
                result = self._run_turn(question, dataset)
                reply = Message(
                    role=Role.ASSISTANT,
                    content=result.explanation,
                    sql=result.sql,
                    data=result.data,
                    visualization=result.visualization,
                )
                self.last_outcome = TurnState.SUCCEEDED
            except Exception as e:
                logger.error(f"Turn failed: {str(e)}")
                reply = Message(role=Role.ASSISTANT, content=f"Error: {str(e)}")
                self.last_outcome = TurnState.FAILED

            self.state = self.last_outcome
            self._append(reply)
            return reply
        finally:
            self.state = TurnState.IDLE
            self._turn_lock.release()

    def _run_turn(self, question: str, dataset: Dataset) -> AnalysisResult:
        if self.uses_live_path():
            logger.info(f"Live analysis on {dataset.name}")
            analysis = self.analysis_fn(question, dataset.columns, self.config)
            data = self.executor.execute_query(analysis.sql, self.active_rows)
            return AnalysisResult(
                sql=analysis.sql,
                explanation=analysis.explanation,
                visualization=self._checked_visualization(analysis.visualization, data),
                data=data,
            )

        logger.info(f"Canned analysis on {dataset.name}")
        return self.mock_responder(question, dataset.name)

    @staticmethod
    def _checked_visualization(
        visualization: Optional[VisualizationSpec],
        data: List[Row]
    ) -> Optional[VisualizationSpec]:
        """Drop a chart whose keys are not columns of the result"""
        if visualization is None or not data:
            return visualization
        result_columns = set(data[0].keys())
        missing = [k for k in (visualization.x_axis_key, visualization.data_key) if k not in result_columns]
        if missing:
            logger.warning(f"Dropping chart, result has no column(s): {', '.join(missing)}")
            return None
        return visualization

    # ------------------------------------------------------------------
    # Helpers for the UI
    # ------------------------------------------------------------------

    def suggestions(self) -> List[str]:
        """Question ideas derived from the active dataset's schema"""
        dataset = self.active_dataset
        if dataset is None:
            return []

        by_type: Dict[ColumnType, List[str]] = {}
        for col in dataset.columns:
            by_type.setdefault(col.type, []).append(col.name)
        numbers = by_type.get(ColumnType.NUMBER, [])
        dates = by_type.get(ColumnType.DATE, [])
        strings = by_type.get(ColumnType.STRING, [])

        ideas = []
        if numbers and strings:
            ideas.append(f"Top 5 {strings[0]} by {numbers[0]}")
            ideas.append(f"Average {numbers[0]} per {strings[0]}")
        if numbers and dates:
            ideas.append(f"Trend of {numbers[0]} over time")
        if strings:
            ideas.append(f"Distribution of {strings[0]}")
        if len(numbers) > 1:
            ideas.append(f"Compare {numbers[0]} vs {numbers[1]}")
        return ideas[:self.MAX_SUGGESTIONS]

    def export_transcript(self) -> str:
        dataset = self.active_dataset
        export_data = {
            "dataset": dataset.name if dataset else None,
            "exported_at": datetime.now().isoformat(),
            "message_count": len(self._messages),
            "messages": [m.to_dict() for m in self._messages],
        }
        return json.dumps(export_data, indent=2, ensure_ascii=False, default=str)

    def close(self):
        self.executor.close()
