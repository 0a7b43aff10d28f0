import streamlit as st
import pandas as pd
from datetime import datetime

from content_workspace.id_resolver.column_mapper import (
    EXPANDED,
    FILE_LABELS,
    LESSONS,
    LIBRARY,
    SLOTS_BY_FILE,
    get_unmapped_slots,
    suggest_mapping,
)
from content_workspace.id_resolver.ingestion import (
    ERROR_REPORT_FILENAME,
    RESOLVED_FILENAME,
    IngestionError,
    error_frame,
    load_rows,
    run_resolution,
    to_csv_bytes,
)
from content_workspace.id_resolver.matcher import DEFAULT_DUPLICATE_POLICY, DUPLICATE_POLICIES
from content_workspace.id_resolver.report import generate_resolution_pdf

# Page config
st.set_page_config(
    page_title="ID Resolver",
    page_icon="🔗",
    layout="wide",
    initial_sidebar_state="expanded"
)

# Custom CSS
st.markdown("""
<style>
    :root {
        --primary-color: #1e3a8a;
        --secondary-color: #3b82f6;
        --text-light: #6b7280;
        --border-color: #e5e7eb;
    }

    #MainMenu {visibility: hidden;}
    footer {visibility: hidden;}

    h1 {
        color: var(--primary-color);
        font-weight: 700;
    }

    .subtitle {
        color: var(--text-light);
        font-size: 1.05rem;
        margin-bottom: 2rem;
    }
</style>
""", unsafe_allow_html=True)

SLOT_LABELS = {
    "can_do_column": "Can-Do Statement",
    "cefr_column": "CEFR Level",
    "skill_column": "Skill",
    "triad_column": "Lesson Triad (LuL)",
    "library_id_column": "Competency ID",
    "library_can_do_column": "Can-Do Statement",
    "library_cefr_column": "CEFR Level",
    "library_skill_column": "Skill",
    "lesson_id_column": "Lesson ID",
    "lesson_lul_column": "Lesson Triad (LuL)",
}

POLICY_HELP = {
    "last": "Later library row wins a shared key (default)",
    "first": "Earlier library row wins a shared key",
    "strict": "Keys claimed by more than one ID are left unmatched and reported",
}


def read_headers(uploaded, kind):
    """Cleaned header row of an uploaded file; rewinds the buffer for the full read."""
    uploaded.seek(0)
    headers = list(load_rows(uploaded, FILE_LABELS[kind]).columns)
    uploaded.seek(0)
    return headers


# Header
st.markdown("# 🔗 ID Resolver")
st.markdown('<div class="subtitle">Deterministic competency + lesson ID matching</div>', unsafe_allow_html=True)

# Sidebar
with st.sidebar:
    st.markdown("## About This Tool")

    st.markdown("""
    **Step 1:** Match competencies on the normalized composite key
    (can-do + CEFR + skill)

    **Step 2:** Match lessons on the normalized LuL triad

    **Rules:**
    - No fuzzy logic
    - No partial matching
    - Every row is kept; misses go to the error report
    - Deterministic results
    """)

    st.markdown("---")
    duplicate_policy = st.selectbox(
        "Duplicate library keys",
        options=list(DUPLICATE_POLICIES),
        index=DUPLICATE_POLICIES.index(DEFAULT_DUPLICATE_POLICY),
        format_func=lambda p: f"{p}: {POLICY_HELP[p]}",
    )

# Uploads
st.markdown("## Upload Files")
col1, col2, col3 = st.columns(3)

uploads = {}
for column, kind in zip((col1, col2, col3), (EXPANDED, LIBRARY, LESSONS)):
    with column:
        uploads[kind] = st.file_uploader(
            FILE_LABELS[kind],
            type=['csv', 'xlsx', 'xls'],
            key=f"upload_{kind}",
        )

if not all(uploads.values()):
    st.info("👆 Upload all three files to map columns and resolve IDs")
    st.stop()

try:
    headers = {kind: read_headers(uploaded, kind) for kind, uploaded in uploads.items()}
except IngestionError as e:
    st.error(f"❌ {e.reason}")
    st.code(str(e))
    st.stop()

suggested = suggest_mapping(headers[EXPANDED], headers[LIBRARY], headers[LESSONS])

# Column mapping
st.markdown("## Column Mapping")
mapping = {}
map_cols = st.columns(3)
for column, kind in zip(map_cols, (EXPANDED, LIBRARY, LESSONS)):
    with column:
        st.markdown(f"**{FILE_LABELS[kind]}**")
        options = [""] + headers[kind]
        for slot in SLOTS_BY_FILE[kind]:
            default = suggested.get(slot, "")
            mapping[slot] = st.selectbox(
                SLOT_LABELS[slot],
                options=options,
                index=options.index(default) if default in options else 0,
                key=f"map_{slot}",
            )

unmapped = get_unmapped_slots(mapping)
if unmapped:
    st.warning(f"⚠️ Please map all required columns: {', '.join(SLOT_LABELS[s] for s in unmapped)}")

st.markdown("<br>", unsafe_allow_html=True)

if st.button("🚀 Resolve IDs", type="primary", use_container_width=True, disabled=bool(unmapped)):
    try:
        for uploaded in uploads.values():
            uploaded.seek(0)
        with st.spinner("Resolving IDs..."):
            run = run_resolution(
                uploads[EXPANDED],
                uploads[LIBRARY],
                uploads[LESSONS],
                mapping=mapping,
                duplicate_policy=duplicate_policy,
            )
    except IngestionError as e:
        st.error(f"❌ {e.reason}")
        st.code(str(e))
        st.stop()
    except Exception as e:
        st.error(f"❌ Error processing files: {str(e)}")
        with st.expander("See error details"):
            st.exception(e)
        st.stop()

    stats = run.report.stats
    errors = error_frame(run.result)

    if run.report.has_errors:
        st.error("Matching errors detected. Please review the error report below.")
    else:
        st.success("✅ **All rows resolved!**")

    # Counters
    st.markdown("### Processing Report")
    c1, c2, c3, c4, c5 = st.columns(5)
    c1.metric("Total Rows", f"{stats.total_rows:,}")
    c2.metric("Comp Matched", f"{stats.competency_matches:,}")
    c3.metric("Comp Unmatched", f"{stats.competency_misses:,}")
    c4.metric("Lesson Matched", f"{stats.lesson_matches:,}")
    c5.metric("Lesson Unmatched", f"{stats.lesson_misses:,}")

    if run.report.flags:
        with st.expander("⚑ Flags", expanded=True):
            for flag in run.report.flags:
                st.markdown(f"- {flag}")

    if run.report.conflicts:
        with st.expander("Key conflicts"):
            st.dataframe(
                pd.DataFrame([vars(c) for c in run.report.conflicts]),
                use_container_width=True,
            )

    with st.expander("📋 Preview Resolved Rows (first 20)", expanded=False):
        st.dataframe(run.data.head(20), use_container_width=True)

    # Downloads
    stamp = datetime.now().strftime('%Y%m%d_%H%M%S')
    d1, d2, d3 = st.columns(3)
    with d1:
        st.download_button(
            label="📥 Download Resolved Rows (CSV)",
            data=to_csv_bytes(run.data),
            file_name=RESOLVED_FILENAME.replace('.csv', f'_{stamp}.csv'),
            mime="text/csv",
            use_container_width=True
        )
    with d2:
        st.download_button(
            label=f"📥 Download Error Report ({len(errors)} rows)",
            data=to_csv_bytes(errors),
            file_name=ERROR_REPORT_FILENAME.replace('.csv', f'_{stamp}.csv'),
            mime="text/csv",
            disabled=errors.empty,
            use_container_width=True
        )
    with d3:
        st.download_button(
            label="📥 Download Report (PDF)",
            data=generate_resolution_pdf(run.report),
            file_name=f"id_resolver_report_{stamp}.pdf",
            mime="application/pdf",
            use_container_width=True
        )
