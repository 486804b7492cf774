import logging
from datetime import datetime
from typing import Optional

import pandas as pd
import streamlit as st

from charts import PREVIEW_ROWS, build_figure, preview_frame
from conversation import Conversation
from lumora_config import configure_logging, settings
from lumora_errors import LumoraError, MissingAPIKeyError
from lumora_types import AppConfig, LLMProvider, Message, Role

configure_logging(settings)
logger = logging.getLogger(__name__)

# Page config
st.set_page_config(
    page_title="Lumora",
    page_icon="📊",
    layout="wide",
    initial_sidebar_state="expanded"
)

# Custom CSS
st.markdown("""
<style>
    .dataset-pill {
        padding: 0.25rem 0.75rem;
        border-radius: 999px;
        border: 1px solid rgba(245, 158, 11, 0.3);
        background-color: rgba(245, 158, 11, 0.1);
        color: #F59E0B;
        font-size: 0.85rem;
    }
    .footer-note {
        text-align: center;
        font-size: 0.65rem;
        letter-spacing: 0.05em;
        text-transform: uppercase;
        color: #78716C;
    }
</style>
""", unsafe_allow_html=True)

PROVIDER_LABELS = {
    LLMProvider.OPENROUTER: "OpenRouter",
    LLMProvider.GEMINI: "Gemini (demo only)",
}
WELCOME_SUGGESTIONS = [
    "Show top 5 sales by region",
    "Trend of revenue over time",
    "Distribution of product categories",
    "Average order value",
]


# ============================================================================
# Helper Functions
# ============================================================================

def safe_display_dataframe(df, *args, **kwargs):
    """
    Display a DataFrame, falling back to strings for mixed-type columns
    that PyArrow cannot convert.
    """
    try:
        st.dataframe(df, *args, **kwargs)
    except Exception as e:
        if "ArrowTypeError" in str(type(e).__name__) or "Expected bytes" in str(e):
            df_display = df.copy()
            for col in df_display.columns:
                if df_display[col].dtype == 'object':
                    df_display[col] = df_display[col].astype(str)
            st.dataframe(df_display, *args, **kwargs)
        else:
            raise


def initialize_session_state():
    """Initialize Streamlit session state"""
    if 'conversation' not in st.session_state:
        st.session_state.conversation = Conversation(config=settings.default_app_config())
    if 'processed_uploads' not in st.session_state:
        st.session_state.processed_uploads = set()
    if 'pending_question' not in st.session_state:
        st.session_state.pending_question = None


def get_conversation() -> Conversation:
    return st.session_state.conversation


# ============================================================================
# Sidebar
# ============================================================================

def render_config_section(conversation: Conversation):
    st.subheader("⚙️ Model Settings")
    current = conversation.config

    providers = list(PROVIDER_LABELS)
    provider = st.selectbox(
        "Provider",
        options=providers,
        index=providers.index(current.provider),
        format_func=lambda p: PROVIDER_LABELS[p],
        disabled=conversation.is_busy
    )
    api_key = st.text_input(
        "API Key",
        type="password",
        value=current.api_key,
        help="Kept in memory for this session only"
    )
    model = st.text_input("Model", value=current.model)

    updated = AppConfig(provider=provider, api_key=api_key, model=model.strip() or current.model)
    if updated != current:
        try:
            conversation.update_config(updated)
        except LumoraError as e:
            st.warning(str(e))


def render_upload_section(conversation: Conversation):
    st.subheader("📁 Upload Data")
    uploaded_file = st.file_uploader(
        "Upload CSV or Excel file",
        type=['csv', 'xlsx', 'xls'],
        help="The first sheet of Excel workbooks is used"
    )
    if uploaded_file is None:
        return

    upload_key = (uploaded_file.name, uploaded_file.size)
    if upload_key in st.session_state.processed_uploads:
        return

    with st.spinner(f"Loading {uploaded_file.name}..."):
        try:
            conversation.upload(uploaded_file.name, uploaded_file.getvalue())
        except LumoraError as e:
            logger.error(f"Upload failed: {str(e)}")
            st.error(f"Failed to load file: {str(e)}")
            return
    st.session_state.processed_uploads.add(upload_key)
    st.rerun()


def render_dataset_section(conversation: Conversation):
    st.subheader("🗂️ Datasets")
    if not conversation.datasets:
        st.info("No datasets yet")
        return

    ids = [ds.id for ds in conversation.datasets]
    names = {ds.id: f"{ds.name} · {ds.row_count:,} rows" for ds in conversation.datasets}
    active_index = ids.index(conversation.active_dataset_id) if conversation.active_dataset_id in ids else 0

    selected = st.radio(
        "Active dataset",
        options=ids,
        index=active_index,
        format_func=lambda i: names[i],
        label_visibility="collapsed",
        disabled=conversation.is_busy
    )
    if selected != conversation.active_dataset_id:
        try:
            conversation.select_dataset(selected)
        except LumoraError as e:
            st.warning(str(e))
        st.rerun()

    dataset = conversation.active_dataset
    if dataset is None:
        return

    with st.expander(f"Schema ({len(dataset.columns)} columns)", expanded=True):
        safe_display_dataframe(
            pd.DataFrame([{"Column": c.name, "Type": c.type.value} for c in dataset.columns]),
            width='stretch',
            hide_index=True
        )

    ideas = conversation.suggestions()
    if ideas:
        st.markdown("**💡 Suggested Analysis**")
        for i, idea in enumerate(ideas):
            if st.button(idea, key=f"suggestion_{i}", width='stretch'):
                st.session_state.pending_question = idea


def render_export_button(conversation: Conversation):
    if not conversation.messages:
        return
    st.download_button(
        label="⬇️ Export Chat History",
        data=conversation.export_transcript(),
        file_name=f"lumora_chat_{datetime.now().strftime('%Y%m%d_%H%M%S')}.json",
        mime="application/json"
    )


def render_sidebar(conversation: Conversation):
    with st.sidebar:
        st.title("📊 Lumora")
        render_config_section(conversation)
        st.divider()
        render_upload_section(conversation)
        st.divider()
        render_dataset_section(conversation)
        st.divider()
        render_export_button(conversation)


# ============================================================================
# Chat Area
# ============================================================================

def render_message(message: Message):
    with st.chat_message(message.role.value):
        st.markdown(message.content)

        if message.sql:
            with st.expander("SQL", expanded=False):
                st.code(message.sql, language="sql")

        if message.data:
            safe_display_dataframe(preview_frame(message.data), width='stretch', hide_index=True)
            if len(message.data) > PREVIEW_ROWS:
                st.caption(f"Showing first {PREVIEW_ROWS} of {len(message.data)} rows")

        fig = build_figure(message.visualization, message.data)
        if fig is not None:
            st.plotly_chart(fig, width='stretch')


def render_empty_state(conversation: Conversation):
    st.markdown("### What would you like to know?")
    dataset = conversation.active_dataset
    if dataset is None:
        st.info("Upload a CSV or Excel file to get started.")
        return

    st.caption(f'Ask questions about "{dataset.name}" or ask for visualization.')
    cols = st.columns(2)
    for i, idea in enumerate(WELCOME_SUGGESTIONS):
        with cols[i % 2]:
            if st.button(f'"{idea}"', key=f"welcome_{i}", width='stretch'):
                st.session_state.pending_question = idea


def handle_question(conversation: Conversation, question: Optional[str]):
    if not question:
        return
    with st.chat_message(Role.USER.value):
        st.markdown(question)
    with st.spinner("Analyzing..."):
        try:
            conversation.submit(question)
        except MissingAPIKeyError as e:
            st.error(str(e))
            return
    st.rerun()


def render_chat(conversation: Conversation):
    dataset = conversation.active_dataset
    if dataset is not None:
        st.markdown(
            f'Current Dataset: <span class="dataset-pill">{dataset.name}</span>',
            unsafe_allow_html=True
        )
    else:
        st.caption("No dataset selected")

    if not conversation.messages:
        render_empty_state(conversation)
    for message in conversation.messages:
        render_message(message)

    typed = st.chat_input(
        "Ask a question about your data..." if dataset else "Select a dataset to start analysis",
        disabled=dataset is None or conversation.is_busy
    )
    question = typed or st.session_state.pending_question
    st.session_state.pending_question = None
    handle_question(conversation, question)

    st.markdown('<p class="footer-note">Powered by SQLite & LLM Agent</p>', unsafe_allow_html=True)


def main():
    initialize_session_state()
    conversation = get_conversation()
    render_sidebar(conversation)
    render_chat(conversation)


if __name__ == "__main__":
    main()
