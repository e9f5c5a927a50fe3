import json
import os
from pathlib import Path

import requests
import streamlit as st

API_BASE = os.getenv("FRAG_SERVICE_API_BASE", os.getenv("API_BASE", "http://localhost:3000")).rstrip("/")
CONVERT_TIMEOUT_SEC = int(os.getenv("FRAG_SERVICE_UI_TIMEOUT", "600"))


def fetch_status(api_base: str = API_BASE) -> dict[str, object] | None:
    """Return the /api/status payload, or None when the API is unreachable."""
    try:
        resp = requests.get(f"{api_base}/api/status", timeout=10)
    except requests.RequestException:
        return None
    if resp.status_code != 200:
        return None
    return resp.json()


def convert_file(
    filename: str,
    data: bytes,
    *,
    name: str | None = None,
    coordinate_to_origin: bool = True,
    api_base: str = API_BASE,
) -> tuple[bytes, dict[str, object]]:
    """Upload an IFC file and return the Fragments bytes plus their metadata.

    Raises RuntimeError carrying the server's fault message on failure.
    """
    files = {"ifc": (filename, data, "application/octet-stream")}
    form: dict[str, str] = {"coordinateToOrigin": "true" if coordinate_to_origin else "false"}
    if name:
        form["name"] = name
    try:
        resp = requests.post(f"{api_base}/api/convert", files=files, data=form, timeout=CONVERT_TIMEOUT_SEC)
    except requests.RequestException as e:
        raise RuntimeError(f"Failed to connect to API: {e}") from e
    if resp.status_code != 200:
        try:
            message = resp.json().get("message", resp.text)
        except ValueError:
            message = resp.text
        raise RuntimeError(f"Conversion failed: {resp.status_code} {message}")
    metadata = json.loads(resp.headers.get("X-Fragments-Metadata", "{}"))
    return resp.content, metadata


def _reset_state():
    for key in ["fragments", "metadata", "error"]:
        if key in st.session_state:
            del st.session_state[key]
    # Bump the uploader key to clear any previously uploaded file widget state
    st.session_state["upload_key"] = st.session_state.get("upload_key", 0) + 1


def main() -> None:
    st.set_page_config(page_title="IFC to Fragments", page_icon="🏗️", layout="centered")
    st.title("🏗️ IFC to Fragments Converter")
    st.caption(f"API base: {API_BASE}")

    status = fetch_status()
    if status is None:
        st.warning("API not reachable")
    elif status.get("ready"):
        st.success(f"{status.get('service')} {status.get('version')} is ready")
    else:
        st.warning("Converter is not initialized yet")

    if st.button("Restart", type="secondary"):
        _reset_state()
        st.rerun()

    if "upload_key" not in st.session_state:
        st.session_state["upload_key"] = 0
    uploaded = st.file_uploader(
        "Upload an IFC model",
        type=["ifc"],
        key=f"uploader-{st.session_state['upload_key']}",
    )
    name = st.text_input("Output name (defaults to the file name)")
    centered = st.checkbox("Move model to origin", value=True)

    if uploaded and st.button("Convert", type="primary"):
        with st.spinner("Converting..."):
            try:
                data, metadata = convert_file(
                    uploaded.name,
                    uploaded.getvalue(),
                    name=name or None,
                    coordinate_to_origin=centered,
                )
            except RuntimeError as e:
                st.session_state["error"] = str(e)
            else:
                st.session_state["fragments"] = data
                st.session_state["metadata"] = metadata
                st.session_state.pop("error", None)

    if "fragments" in st.session_state:
        metadata = st.session_state["metadata"]
        st.success(f"Conversion complete: {metadata.get('size', 0)} bytes")
        st.download_button(
            label="Download Fragments",
            data=st.session_state["fragments"],
            file_name=f"{metadata.get('name') or Path(uploaded.name if uploaded else 'model').stem}.frag",
            mime="application/octet-stream",
        )
        with st.expander("Metadata"):
            st.json(metadata)

    if err := st.session_state.get("error"):
        st.error(err)


if __name__ == "__main__":
    main()
