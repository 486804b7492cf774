import json

import pytest
from pydantic import ValidationError

from conftest import StubAnalysis
from conversation import Conversation, TurnState
from data_service import SQLQueryTool
from lumora_errors import (
    ConversationBusyError,
    DatasetNotFoundError,
    MissingAPIKeyError,
    ProviderError,
    UnsupportedFileTypeError,
)
from lumora_types import AnalysisResult, AppConfig, ChartType, LLMProvider, Role, VisualizationSpec, WORKING_TABLE

QUERY_SQL = "SELECT region, SUM(sales) FROM uploaded_data GROUP BY region"


def analysis(sql=QUERY_SQL, visualization=None):
    return AnalysisResult(sql=sql, explanation="Sales by region.", visualization=visualization)


def fail_if_called(*args, **kwargs):
    raise AssertionError("live analysis should not run")


@pytest.fixture
def conversation(live_config):
    conv = Conversation(config=live_config, analysis_fn=StubAnalysis(analysis()), executor=SQLQueryTool())
    yield conv
    conv.close()


class TestDatasets:

    def test_starts_on_first_demo_dataset(self, conversation):
        assert [ds.id for ds in conversation.datasets] == ["1", "2"]
        assert conversation.active_dataset_id == "1"
        assert conversation.active_rows == []
        assert conversation.messages == ()

    def test_upload_activates_dataset(self, conversation, sales_csv):
        dataset = conversation.upload("sales.csv", sales_csv)

        assert conversation.active_dataset_id == dataset.id
        assert dataset.row_count == 1
        assert [c.describe() for c in dataset.columns] == ["region (string)", "sales (number)"]
        assert conversation.active_rows == [{"region": "West", "sales": 100}]

        message = conversation.messages[-1]
        assert message.role == Role.ASSISTANT
        assert "sales.csv" in message.content
        assert "1 rows" in message.content

    def test_upload_notes_type_conflicts(self, conversation):
        conversation.upload("mixed.csv", b"shipped\n2024-01-05\npending\n")
        assert "shipped mix value types" in conversation.messages[-1].content

    def test_unsupported_upload_changes_nothing(self, conversation):
        with pytest.raises(UnsupportedFileTypeError):
            conversation.upload("notes.txt", b"hello")

        assert len(conversation.datasets) == 2
        assert conversation.active_dataset_id == "1"
        assert conversation.messages == ()

    def test_switching_to_demo_clears_rows(self, conversation, sales_csv):
        uploaded = conversation.upload("sales.csv", sales_csv)
        conversation.executor.load(conversation.active_rows)

        conversation.select_dataset("2")

        assert conversation.active_rows == []
        assert conversation.executor.get_schema_info()["columns"] == []

        conversation.select_dataset(uploaded.id)
        assert conversation.active_rows == [{"region": "West", "sales": 100}]

    def test_select_unknown_dataset(self, conversation):
        with pytest.raises(DatasetNotFoundError, match="Dataset nope not found"):
            conversation.select_dataset("nope")
        assert conversation.active_dataset_id == "1"


class TestSubmit:

    def test_live_turn(self, conversation, sales_csv, live_config):
        conversation.upload("sales.csv", sales_csv)

        reply = conversation.submit("top regions by sales")

        assert reply.role == Role.ASSISTANT
        assert reply.sql == QUERY_SQL
        assert reply.data == [{"region": "West", "SUM(sales)": 100}]
        assert [m.role for m in conversation.messages] == [Role.ASSISTANT, Role.USER, Role.ASSISTANT]
        assert conversation.messages[1].content == "top regions by sales"
        assert conversation.state == TurnState.IDLE
        assert conversation.last_outcome == TurnState.SUCCEEDED

        question, columns, config = conversation.analysis_fn.calls[0]
        assert question == "top regions by sales"
        assert [c.name for c in columns] == ["region", "sales"]
        assert config == live_config

    def test_headers_differing_only_by_case_stay_queryable(self, live_config):
        stub = StubAnalysis(analysis(sql=f"SELECT * FROM {WORKING_TABLE}"))
        conv = Conversation(config=live_config, analysis_fn=stub)
        dataset = conv.upload("x.csv", b"Region,region,sales\nWest,w,100\n")

        reply = conv.submit("anything")

        assert [c.name for c in dataset.columns] == ["Region", "region_1", "sales"]
        assert conv.last_outcome == TurnState.SUCCEEDED
        assert reply.data == [{"Region": "West", "region_1": "w", "sales": 100}]

    def test_no_dataset_is_refused(self, live_config):
        conv = Conversation(config=live_config, analysis_fn=fail_if_called, datasets=[])
        assert conv.submit("anything") is None
        assert conv.messages == ()

    @pytest.mark.parametrize("question", ["", "   "])
    def test_blank_question_is_refused(self, conversation, question):
        assert conversation.submit(question) is None
        assert conversation.messages == ()

    def test_missing_key_raises_before_any_message(self, sales_csv):
        conv = Conversation(config=AppConfig(api_key=""), analysis_fn=fail_if_called)
        conv.upload("sales.csv", sales_csv)

        with pytest.raises(MissingAPIKeyError):
            conv.submit("top regions")
        assert len(conv.messages) == 1
        assert conv.state == TurnState.IDLE

    def test_provider_failure_becomes_one_error_message(self, live_config, sales_csv):
        conv = Conversation(config=live_config, analysis_fn=StubAnalysis(error=ProviderError("User not found.")))
        conv.upload("sales.csv", sales_csv)
        before = len(conv.messages)

        reply = conv.submit("top regions")

        assert reply.content == "Error: User not found."
        assert reply.sql is None
        assert len(conv.messages) == before + 2
        assert conv.messages[-2].role == Role.USER
        assert conv.state == TurnState.IDLE
        assert conv.last_outcome == TurnState.FAILED

    def test_sql_failure_keeps_dataset(self, live_config, sales_csv):
        conv = Conversation(config=live_config, analysis_fn=StubAnalysis(analysis(sql="SELECT nope FROM uploaded_data")))
        dataset = conv.upload("sales.csv", sales_csv)

        reply = conv.submit("q")

        assert reply.content.startswith("Error: Failed to execute SQL:")
        assert conv.active_dataset_id == dataset.id
        assert conv.executor.execute(f"SELECT * FROM {WORKING_TABLE}") == [{"region": "West", "sales": 100}]

    def test_demo_dataset_uses_canned_answers(self, live_config):
        conv = Conversation(config=live_config, analysis_fn=fail_if_called)

        reply = conv.submit("Show me the revenue trend")

        assert reply.visualization.type == ChartType.LINE
        assert reply.data[0] == {"month": "Jan", "total_sales": 45000}
        assert "sales_q3_2024.csv" in reply.content

    def test_non_live_provider_uses_canned_answers(self, sales_csv):
        conv = Conversation(config=AppConfig(provider=LLMProvider.GEMINI), analysis_fn=fail_if_called)
        conv.upload("sales.csv", sales_csv)

        reply = conv.submit("sales by region")

        assert reply.visualization.type == ChartType.BAR
        assert conv.executor.get_schema_info()["columns"] == []

    def test_chart_with_unknown_keys_is_dropped(self, live_config, sales_csv):
        viz = VisualizationSpec(type=ChartType.BAR, x_axis_key="region", data_key="total")
        conv = Conversation(config=live_config, analysis_fn=StubAnalysis(analysis(visualization=viz)))
        conv.upload("sales.csv", sales_csv)

        reply = conv.submit("q")

        assert reply.visualization is None
        assert reply.data == [{"region": "West", "SUM(sales)": 100}]

    def test_chart_with_matching_keys_is_kept(self, live_config, sales_csv):
        viz = VisualizationSpec(type=ChartType.PIE, x_axis_key="region", data_key="SUM(sales)")
        conv = Conversation(config=live_config, analysis_fn=StubAnalysis(analysis(visualization=viz)))
        conv.upload("sales.csv", sales_csv)

        assert conv.submit("q").visualization == viz

    def test_one_turn_at_a_time(self, live_config, sales_csv):
        seen = {}

        def reentrant(question, columns, config):
            seen["busy"] = conv.is_busy
            seen["nested"] = conv.submit("second question")
            with pytest.raises(ConversationBusyError):
                conv.select_dataset("1")
            return analysis()

        conv = Conversation(config=live_config, analysis_fn=reentrant)
        conv.upload("sales.csv", sales_csv)
        conv.submit("first question")

        assert seen == {"busy": True, "nested": None}
        assert [m.content for m in conv.messages if m.role == Role.USER] == ["first question"]
        assert not conv.is_busy

    def test_messages_are_frozen(self, conversation):
        reply = conversation.submit("anything")
        with pytest.raises(ValidationError):
            reply.content = "changed"


class TestHelpers:

    def test_suggestions_follow_schema(self, conversation):
        conversation.upload("orders.csv", b"day,region,amount,units\n2024-01-05,West,10.5,3\n")
        assert conversation.suggestions() == [
            "Top 5 region by amount",
            "Average amount per region",
            "Trend of amount over time",
            "Distribution of region",
        ]

    def test_no_suggestions_without_dataset(self, live_config):
        assert Conversation(config=live_config, datasets=[]).suggestions() == []

    def test_export_transcript(self, conversation):
        conversation.submit("Which region sells most?")
        exported = json.loads(conversation.export_transcript())

        assert exported["dataset"] == "sales_q3_2024.csv"
        assert exported["message_count"] == 2
        assert exported["messages"][0]["content"] == "Which region sells most?"
        assert exported["messages"][1]["visualization"]["xAxisKey"] == "region"
