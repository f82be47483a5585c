import streamlit as st
import streamlit.components.v1 as components
from dotenv import load_dotenv
from typing import Dict, List, Optional

from src.pagesmith.client.api_client import ApiError, ChatRequestFailed, PagesmithClient
from src.pagesmith.client.preview import PreviewState
from src.pagesmith.client.stream_consumer import StreamAborted

load_dotenv()

GENERIC_ERROR = "Something went wrong while generating your page. Please try again."
PREVIEW_HEIGHT = 640

st.set_page_config(page_title="Pagesmith: HTML & CSS Generator", page_icon="🧱", layout="wide")

st.markdown(
    """
    <style>
      :root { --brand:#0B5FFF; }
      .block-container { padding-top: 1.25rem; padding-bottom: 2rem; }
      h1 { font-weight: 700; letter-spacing: .2px; }
      div.stButton > button[kind="primary"] { background: var(--brand); border-color: var(--brand); color: #fff; }
      div.stButton > button { width: 100%; }
      .ps-empty { color: #98A2B3; text-align: center; padding: 6rem 0; border: 1px dashed #E6E9EF; border-radius: 10px; }
      @media (prefers-reduced-motion: reduce) {
        * { scroll-behavior: auto !important; animation: none !important; transition: none !important; }
      }
    </style>
    """,
    unsafe_allow_html=True,
)

# ---------- Session state ----------
if "token" not in st.session_state:
    st.session_state.token = None
if "user" not in st.session_state:
    st.session_state.user = None
if "messages" not in st.session_state:
    st.session_state.messages = []  # List[Dict[str, str]], oldest first
if "preview" not in st.session_state:
    st.session_state.preview = PreviewState()


def api() -> PagesmithClient:
    return PagesmithClient(token=st.session_state.token)


def logout() -> None:
    st.session_state.token = None
    st.session_state.user = None
    st.session_state.messages = []
    st.session_state.preview = PreviewState()


# ---------- Auth ----------
def render_auth() -> None:
    login_tab, register_tab = st.tabs(["Log in", "Register"])
    with login_tab:
        with st.form("login"):
            email = st.text_input("Email")
            password = st.text_input("Password", type="password")
            if st.form_submit_button("Log in", type="primary"):
                client = api()
                try:
                    data = client.login(email, password)
                except ApiError as exc:
                    st.error(exc.message)
                else:
                    st.session_state.token = data["access_token"]
                    st.session_state.user = data["user"]
                    st.rerun()
    with register_tab:
        with st.form("register"):
            name = st.text_input("Name")
            email = st.text_input("Email", key="register_email")
            password = st.text_input("Password", type="password", key="register_password")
            if st.form_submit_button("Create account", type="primary"):
                try:
                    api().register(name, email, password)
                except ApiError as exc:
                    st.error(exc.message)
                else:
                    st.success("Account created. You can log in now.")


with st.sidebar:
    st.header("Account")
    if st.session_state.token:
        user = st.session_state.user or {}
        st.write(f"Signed in as **{user.get('name', '')}**")
        st.caption(user.get("email", ""))
        if st.button("Log out"):
            logout()
            st.rerun()
    else:
        render_auth()

if not st.session_state.token:
    st.title("HTML & CSS Generator")
    st.info("Log in or register in the sidebar to start generating landing pages.")
    st.stop()


# ---------- Preview ----------
def render_preview(slot, html: Optional[str]) -> None:
    with slot.container():
        if not html:
            st.markdown('<div class="ps-empty">Your preview will appear here</div>', unsafe_allow_html=True)
            return
        # components.html renders inside its own iframe, isolated from this page
        components.html(html, height=PREVIEW_HEIGHT, scrolling=True)


chat_col, preview_col = st.columns(2, gap="large")

with preview_col:
    st.subheader("Preview")
    preview_slot = st.empty()
    render_preview(preview_slot, st.session_state.preview.displayed)
    code_slot = st.empty()

with chat_col:
    st.title("HTML & CSS Generator")
    for msg in st.session_state.messages:
        with st.chat_message(msg["role"]):
            st.markdown(msg["content"])

prompt = st.chat_input("Describe the HTML & CSS you want to generate...")

if prompt:
    # The transcript only takes the turn once a reply has streamed in full
    history: List[Dict[str, str]] = st.session_state.messages + [{"role": "user", "content": prompt}]
    with chat_col:
        with st.chat_message("user"):
            st.markdown(prompt)
        with st.chat_message("assistant"):
            reply_slot = st.empty()

    state = st.session_state.preview.begin_turn()
    shown = state.displayed
    try:
        with st.spinner("Generating..."):
            for state in api().stream_chat(history, state):
                reply_slot.markdown(state.buffer)
                if state.displayed != shown:
                    shown = state.displayed
                    render_preview(preview_slot, shown)
    except ChatRequestFailed as exc:
        if exc.status_code == 401:
            logout()
            st.warning("Your session has expired. Please log in again.")
        else:
            st.error(GENERIC_ERROR)
        render_preview(preview_slot, st.session_state.preview.displayed)
    except StreamAborted:
        st.error(GENERIC_ERROR)
        if state.complete:
            st.session_state.preview = state
        render_preview(preview_slot, st.session_state.preview.displayed)
    else:
        st.session_state.messages = history + [{"role": "assistant", "content": state.buffer}]
        st.session_state.preview = state
        if not state.complete:
            st.warning("The response did not contain an HTML code block.")

if st.session_state.preview.displayed:
    html_code = st.session_state.preview.displayed
    with code_slot.container():
        st.divider()
        st.subheader("Generated Code")
        st.code(html_code, language="html")
        st.download_button(
            "Download HTML",
            data=html_code,
            file_name="generated-page.html",
            mime="text/html",
        )
