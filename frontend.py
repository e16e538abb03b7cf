import os

import pandas as pd
import requests
import streamlit as st

API_URL = os.getenv("FACEBLUR_API_URL", "http://127.0.0.1:8000")

# Page Configuration
st.set_page_config(page_title="FaceBlur Control Panel", page_icon="🛡️", layout="wide")

st.markdown("""
    <style>
    .main { background-color: #0e1117; }
    .stButton>button { width: 100%; border-radius: 5px; height: 3em; background-color: #ff4b4b; color: white; }
    .stMetric { background-color: #161b22; padding: 15px; border-radius: 10px; border: 1px solid #30363d; }
    </style>
    """, unsafe_allow_html=True)

st.title("🛡️ FaceBlur: Control Panel")
st.caption("Blur every image in the stream that shows a reference face")
st.markdown("---")


def send_command(payload: dict) -> dict:
    return requests.post(f"{API_URL}/commands", json=payload, timeout=5).json()


col1, col2 = st.columns([1, 2], gap="large")

with col1:
    st.header("⚙️ Pipeline")

    try:
        health = requests.get(f"{API_URL}/health", timeout=5).json()
        st.success(f"Connected to pipeline (v{health['version']})")

        s1, s2, s3 = st.columns(3)
        s1.metric("References", health["total_references"])
        s2.metric("Queued", health["queued"])
        s3.metric("Suppressed", health["lifecycle"]["suppressed"])

        enabled = st.toggle("Blur matching images", value=health["enabled"])
        if enabled != health["enabled"]:
            send_command({"action": "toggleBlur", "enabled": enabled})
            st.rerun()
    except requests.RequestException:
        st.error("❌ Pipeline offline: ensure uvicorn is running.")
        st.stop()

    if st.button("🔄 Rescan Images"):
        ack = send_command({"action": "scanPage"})
        st.info("Rescan requested" if ack.get("success") else ack.get("error"))

    if st.button("📁 Sync Reference Folder"):
        synced = requests.post(f"{API_URL}/references/sync", timeout=60).json()
        st.success(f"Loaded {len(synced['loaded'])} faces: {', '.join(synced['loaded']) or 'none'}")

    if st.button("🗑️ Clear References"):
        requests.delete(f"{API_URL}/references", timeout=5)
        st.rerun()

    st.markdown("---")
    st.subheader("📊 Lifecycle")
    st.dataframe(
        pd.DataFrame([health["lifecycle"]]),
        hide_index=True,
        use_container_width=True,
    )
    st.json(health["stats"])

with col2:
    st.header("🖼️ Images")
    try:
        images = requests.get(f"{API_URL}/content/images", timeout=5).json()["images"]
    except requests.RequestException:
        images = []

    if images:
        df = pd.DataFrame(images)
        st.dataframe(
            df[["element_id", "src", "state", "suppressed", "obscured", "natural_width", "natural_height"]],
            hide_index=True,
            use_container_width=True,
        )
    else:
        st.write("No images in the content stream yet.")
