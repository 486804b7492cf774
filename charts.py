import logging
from typing import List, Optional

import pandas as pd
import plotly.express as px
import plotly.graph_objects as go

from lumora_types import ChartType, Row, VisualizationSpec

logger = logging.getLogger(__name__)

COLORS = ["#F59E0B", "#8B5CF6", "#10B981", "#3B82F6", "#EF4444", "#EC4899"]
PREVIEW_ROWS = 5


def build_figure(spec: Optional[VisualizationSpec], data: Optional[List[Row]]) -> Optional[go.Figure]:
    """Plotly figure for a result set, or None when there is nothing to draw"""
    if spec is None or not data:
        return None

    df = pd.DataFrame(data)
    if spec.x_axis_key not in df.columns or spec.data_key not in df.columns:
        logger.warning(f"Chart keys {spec.x_axis_key}/{spec.data_key} not in result columns")
        return None

    x, y = spec.x_axis_key, spec.data_key
    if spec.type == ChartType.BAR:
        fig = px.bar(df, x=x, y=y, title=spec.title, color_discrete_sequence=COLORS)
    elif spec.type == ChartType.LINE:
        fig = px.line(df, x=x, y=y, title=spec.title, markers=True, color_discrete_sequence=COLORS)
    elif spec.type == ChartType.AREA:
        fig = px.area(df, x=x, y=y, title=spec.title, color_discrete_sequence=COLORS)
    else:
        fig = px.pie(df, names=x, values=y, title=spec.title, hole=0.6, color_discrete_sequence=COLORS)

    fig.update_layout(margin=dict(l=10, r=10, t=40, b=10), height=300)
    return fig


def preview_frame(data: List[Row], limit: int = PREVIEW_ROWS) -> pd.DataFrame:
    """First rows of a result for the inline table"""
    return pd.DataFrame(data[:limit])
