"""
Demo datasets and canned answers.

Used when no live provider is selected or the active dataset has no uploaded
rows. Never touches the SQL engine or the network.
"""

import logging
import time
from typing import List, Tuple

from lumora_types import (
    AnalysisResult,
    ChartType,
    ColumnDefinition,
    ColumnType,
    Dataset,
    Row,
    VisualizationSpec,
)

logger = logging.getLogger(__name__)


def _columns(*pairs: Tuple[str, ColumnType]) -> List[ColumnDefinition]:
    return [ColumnDefinition(name=name, type=col_type) for name, col_type in pairs]


MOCK_DATASETS: List[Dataset] = [
    Dataset(
        id="1",
        name="sales_q3_2024.csv",
        row_count=14500,
        is_demo=True,
        columns=_columns(
            ("date", ColumnType.DATE),
            ("region", ColumnType.STRING),
            ("product_category", ColumnType.STRING),
            ("sales_amount", ColumnType.NUMBER),
            ("units_sold", ColumnType.NUMBER),
            ("customer_segment", ColumnType.STRING),
        ),
    ),
    Dataset(
        id="2",
        name="tech_churn_data.xlsx",
        row_count=5200,
        is_demo=True,
        columns=_columns(
            ("customer_id", ColumnType.STRING),
            ("tenure", ColumnType.NUMBER),
            ("monthly_charges", ColumnType.NUMBER),
            ("total_charges", ColumnType.NUMBER),
            ("churn", ColumnType.BOOLEAN),
            ("contract_type", ColumnType.STRING),
        ),
    ),
]

TIME_SERIES_KEYWORDS = ("trend", "time", "month")
CATEGORY_KEYWORDS = ("region", "where")


def demo_datasets() -> List[Dataset]:
    """Fresh copies so one conversation cannot alter another's list"""
    return [ds.model_copy(deep=True) for ds in MOCK_DATASETS]


def generate_mock_data(intent: str) -> Tuple[List[Row], str, ChartType]:
    """Pick a canned result set from keywords in the lowercased question"""
    if any(word in intent for word in TIME_SERIES_KEYWORDS):
        return (
            [
                {"month": "Jan", "total_sales": 45000},
                {"month": "Feb", "total_sales": 52000},
                {"month": "Mar", "total_sales": 49000},
                {"month": "Apr", "total_sales": 61000},
                {"month": "May", "total_sales": 58000},
                {"month": "Jun", "total_sales": 72000},
            ],
            "SELECT \n  DATE_TRUNC('month', date) as month, \n  SUM(sales_amount) as total_sales \n"
            "FROM sales_q3_2024 \nGROUP BY 1 \nORDER BY 1;",
            ChartType.LINE,
        )

    if any(word in intent for word in CATEGORY_KEYWORDS):
        return (
            [
                {"region": "North America", "revenue": 125000},
                {"region": "Europe", "revenue": 98000},
                {"region": "Asia Pacific", "revenue": 85000},
                {"region": "Latin America", "revenue": 45000},
            ],
            "SELECT \n  region, \n  SUM(sales_amount) as revenue \nFROM sales_q3_2024 \n"
            "GROUP BY region \nORDER BY revenue DESC;",
            ChartType.BAR,
        )

    return (
        [
            {"product_category": "Electronics", "sales_count": 450},
            {"product_category": "Clothing", "sales_count": 320},
            {"product_category": "Home & Garden", "sales_count": 210},
            {"product_category": "Books", "sales_count": 150},
        ],
        "SELECT \n  product_category, \n  COUNT(*) as sales_count \nFROM sales_q3_2024 \n"
        "GROUP BY product_category;",
        ChartType.PIE,
    )


def process_query(question: str, dataset_name: str, delay: float = 0.0) -> AnalysisResult:
    """Deterministic canned analysis for a question about a demo dataset"""
    if delay:
        time.sleep(delay)

    data, sql, chart_type = generate_mock_data(question.lower())
    keys = list(data[0].keys())
    logger.info(f"Serving canned {chart_type.value} result for {dataset_name}")

    return AnalysisResult(
        sql=sql,
        explanation=f"I've analyzed the {dataset_name} dataset. Here is the breakdown based on your request.",
        data=data,
        visualization=VisualizationSpec(
            type=chart_type,
            x_axis_key=keys[0],
            data_key=keys[1],
            title="Analysis Result",
        ),
    )
