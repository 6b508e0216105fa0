from __future__ import annotations

from pathlib import Path
from typing import Any

import streamlit as st
import yaml

from pve_fleet_maintainer.audit import build_reconciler
from pve_fleet_maintainer.config import AppConfig
from pve_fleet_maintainer.fleet import FleetDiscoveryError, NoRunningContainersError, build_orchestrator
from pve_fleet_maintainer.models import BackupAuditReport, FleetReport
from pve_fleet_maintainer.pve import PveHost
from pve_fleet_maintainer.reporting import audit_report_to_dict, audit_rows, fleet_report_to_dict, fleet_rows

_WORKFLOW_STATE_LABELS = {
    "done": "Done",
    "active": "Ready",
}


def _initialize_state() -> None:
    defaults = {
        "fleet_report": None,
        "audit_report": None,
    }
    for key, value in defaults.items():
        if key not in st.session_state:
            st.session_state[key] = value


def _parse_ctid_filter(raw_value: str) -> tuple[list[int] | None, list[str]]:
    ctids: list[int] = []
    errors: list[str] = []
    for token in raw_value.replace(" ", ",").split(","):
        value = token.strip()
        if not value:
            continue
        if not value.isdigit():
            errors.append(f"Container ID must be numeric: {value}")
            continue
        ctids.append(int(value))
    return (ctids or None), errors


def _validate_runtime_inputs(*, node_name_input: str, task_dir_input: str, lookback_days: int) -> list[str]:
    errors: list[str] = []
    if not node_name_input.strip():
        errors.append("Node name is required for the backup audit.")
    if not task_dir_input.strip():
        errors.append("Task log directory is required for the backup audit fallback.")
    if lookback_days < 1:
        errors.append("Lookback window must be at least 1 day.")
    return errors


def _build_workflow_rows(*, fleet_report: FleetReport | None, audit_report: BackupAuditReport | None) -> list[dict[str, str]]:
    update_state = "done" if fleet_report is not None else "active"
    audit_state = "done" if audit_report is not None else "active"
    return [
        {
            "step": "1. Update",
            "state": _WORKFLOW_STATE_LABELS[update_state],
            "description": "Snapshot and update every running container.",
        },
        {
            "step": "2. Audit",
            "state": _WORKFLOW_STATE_LABELS[audit_state],
            "description": "Check the node's recent backup jobs.",
        },
    ]


def _report_to_yaml(payload: dict[str, Any]) -> str:
    return yaml.safe_dump(payload, sort_keys=False)


def _render_fleet_report(report: FleetReport) -> None:
    st.subheader("Latest Fleet Update")
    columns = st.columns(3)
    columns[0].metric("Succeeded", report.success_count)
    columns[1].metric("Failed", report.failure_count)
    columns[2].metric("Skipped (unknown OS)", report.skipped_count)
    st.dataframe(fleet_rows(report), use_container_width=True, hide_index=True)
    st.download_button(
        "Download fleet report (YAML)",
        data=_report_to_yaml(fleet_report_to_dict(report)),
        file_name=f"fleet-report-{report.run_date}.yaml",
        mime="application/x-yaml",
    )


def _render_audit_report(report: BackupAuditReport) -> None:
    st.subheader("Backup Audit")
    st.caption(f"Node {report.node}, last {report.lookback_days} day(s), source: {report.source or 'none'}")
    for warning in report.warnings:
        st.warning(warning)

    columns = st.columns(3)
    columns[0].metric("OK", report.ok_count)
    columns[1].metric("Failed", report.failed_count)
    columns[2].metric("Running", report.running_count)

    if report.entries:
        st.dataframe(audit_rows(report), use_container_width=True, hide_index=True)
    if report.note:
        st.info(report.note)
    if report.has_failures:
        st.error("One or more backup jobs failed.")

    st.download_button(
        "Download backup audit (YAML)",
        data=_report_to_yaml(audit_report_to_dict(report)),
        file_name=f"backup-audit-{report.node}.yaml",
        mime="application/x-yaml",
    )


def main() -> None:
    st.set_page_config(page_title="PVE Fleet Maintainer", layout="wide")
    _initialize_state()

    base_config = AppConfig()

    st.title("PVE Fleet Maintainer")
    st.caption("Snapshot and update running containers, then check recent backup jobs.")
    st.subheader("Workflow Status")
    st.dataframe(
        _build_workflow_rows(
            fleet_report=st.session_state.fleet_report,
            audit_report=st.session_state.audit_report,
        ),
        use_container_width=True,
        hide_index=True,
    )

    st.sidebar.header("Fleet Update")
    ctid_filter_input = st.sidebar.text_input(
        "Container IDs (comma-separated, optional)",
        value="",
        help="Leave blank to update every running container.",
    )

    st.sidebar.header("Backup Audit")
    node_name_input = st.sidebar.text_input("Node name", value=base_config.node_name)
    task_dir_input = st.sidebar.text_input("Task log directory", value=str(base_config.task_log_dir))
    lookback_days = int(
        st.sidebar.number_input(
            "Lookback window (days)",
            min_value=1,
            max_value=365,
            value=max(1, base_config.backup_lookback_days),
            step=1,
        )
    )

    runtime_errors = _validate_runtime_inputs(
        node_name_input=node_name_input,
        task_dir_input=task_dir_input,
        lookback_days=lookback_days,
    )
    target_ids, ctid_errors = _parse_ctid_filter(ctid_filter_input)
    runtime_errors.extend(ctid_errors)
    if runtime_errors:
        for error in runtime_errors:
            st.error(error)
        return

    host = PveHost(command_timeout_seconds=base_config.command_timeout_seconds)

    if st.button("Run fleet update", type="primary"):
        orchestrator = build_orchestrator(
            host,
            snapshot_prefix=base_config.snapshot_prefix,
            lvm_snapshot_size=base_config.lvm_snapshot_size,
            update_timeout_seconds=base_config.update_timeout_seconds,
        )
        st.session_state.fleet_report = None
        with st.spinner("Snapshotting and updating containers..."):
            try:
                st.session_state.fleet_report = orchestrator.run(target_ids=target_ids)
            except NoRunningContainersError as error:
                st.warning(str(error))
            except FleetDiscoveryError as error:
                st.error(str(error))

        report = st.session_state.fleet_report
        if report is not None and report.has_failures:
            st.error(
                f"Fleet update finished with failures: {report.failure_count} of {len(report.results)} "
                "container(s) failed. Review actionable details below."
            )
        elif report is not None:
            st.success(f"Fleet update finished for {len(report.results)} container(s).")

    if st.button("Run backup audit"):
        reconciler = build_reconciler(
            host,
            task_dir=Path(task_dir_input.strip()),
            type_tag=base_config.backup_type_tag,
        )
        with st.spinner("Collecting backup tasks..."):
            st.session_state.audit_report = reconciler.audit(
                node=node_name_input.strip(),
                lookback_days=lookback_days,
            )

    if st.session_state.fleet_report is not None:
        _render_fleet_report(st.session_state.fleet_report)
    else:
        st.info("Click 'Run fleet update' to snapshot and update the running containers.")

    if st.session_state.audit_report is not None:
        _render_audit_report(st.session_state.audit_report)


if __name__ == "__main__":
    main()
