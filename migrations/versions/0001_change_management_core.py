"""change_management_core

Initial schema: projects, process flows, FMEAs, control plans, project
versions, the change ledger with impact analysis, propagation rules,
approval workflows, notifications, risk analytics and scheduled jobs.

Revision ID: 0001
Revises:
Create Date: 2026-10-17 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0001"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade():
    # ── Tracked records ──────────────────────────────────────────────────
    op.create_table(
        "projects",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("code", sa.String(length=50), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=30), nullable=False, server_default="active"),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("code"),
    )

    op.create_table(
        "process_flows",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("project_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("version", sa.String(length=20), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_process_flows_project_id", "process_flows", ["project_id"])

    op.create_table(
        "process_steps",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("process_flow_id", sa.Integer(), nullable=False),
        sa.Column("step_number", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("step_type", sa.String(length=30), nullable=True),
        sa.Column("quality_requirements", sa.Text(), nullable=True),
        sa.Column("safety_requirements", sa.Text(), nullable=True),
        sa.Column("position_x", sa.Float(), nullable=True),
        sa.Column("position_y", sa.Float(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["process_flow_id"], ["process_flows.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("process_flow_id", "step_number", name="uq_process_step_number"),
    )
    op.create_index("ix_process_steps_process_flow_id", "process_steps", ["process_flow_id"])

    op.create_table(
        "step_connections",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("process_flow_id", sa.Integer(), nullable=False),
        sa.Column("source_step_id", sa.Integer(), nullable=False),
        sa.Column("target_step_id", sa.Integer(), nullable=False),
        sa.Column("connection_type", sa.String(length=20), nullable=True),
        sa.Column("label", sa.String(length=100), nullable=True),
        sa.ForeignKeyConstraint(["process_flow_id"], ["process_flows.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["source_step_id"], ["process_steps.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["target_step_id"], ["process_steps.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_step_connections_process_flow_id", "step_connections", ["process_flow_id"])

    op.create_table(
        "fmeas",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("project_id", sa.Integer(), nullable=False),
        sa.Column("fmea_number", sa.String(length=50), nullable=False),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("fmea_type", sa.String(length=20), nullable=True),
        sa.Column("rpn_threshold", sa.Integer(), nullable=True),
        sa.Column("severity_threshold", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_fmeas_project_id", "fmeas", ["project_id"])

    op.create_table(
        "failure_modes",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("fmea_id", sa.Integer(), nullable=False),
        sa.Column("primary_process_step_id", sa.Integer(), nullable=True),
        sa.Column("item_function", sa.String(length=500), nullable=False),
        sa.Column("failure_mode", sa.String(length=500), nullable=False),
        sa.Column("severity_rating", sa.Integer(), nullable=False),
        sa.Column("special_characteristic", sa.Boolean(), nullable=True),
        sa.ForeignKeyConstraint(["fmea_id"], ["fmeas.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["primary_process_step_id"], ["process_steps.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_failure_modes_fmea_id", "failure_modes", ["fmea_id"])
    op.create_index("ix_failure_modes_primary_process_step_id", "failure_modes", ["primary_process_step_id"])

    op.create_table(
        "failure_effects",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("failure_mode_id", sa.Integer(), nullable=False),
        sa.Column("effect_description", sa.Text(), nullable=False),
        sa.Column("effect_type", sa.String(length=20), nullable=True),
        sa.Column("safety_impact", sa.Boolean(), nullable=True),
        sa.Column("regulatory_impact", sa.Boolean(), nullable=True),
        sa.ForeignKeyConstraint(["failure_mode_id"], ["failure_modes.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_failure_effects_failure_mode_id", "failure_effects", ["failure_mode_id"])

    op.create_table(
        "failure_causes",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("failure_mode_id", sa.Integer(), nullable=False),
        sa.Column("cause_description", sa.Text(), nullable=False),
        sa.Column("occurrence_rating", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["failure_mode_id"], ["failure_modes.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_failure_causes_failure_mode_id", "failure_causes", ["failure_mode_id"])

    op.create_table(
        "failure_controls",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("failure_cause_id", sa.Integer(), nullable=False),
        sa.Column("process_step_id", sa.Integer(), nullable=True),
        sa.Column("control_description", sa.Text(), nullable=False),
        sa.Column("control_type", sa.String(length=20), nullable=False),
        sa.Column("detection_rating", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["failure_cause_id"], ["failure_causes.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["process_step_id"], ["process_steps.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_failure_controls_failure_cause_id", "failure_controls", ["failure_cause_id"])

    op.create_table(
        "control_plans",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("project_id", sa.Integer(), nullable=False),
        sa.Column("fmea_id", sa.Integer(), nullable=True),
        sa.Column("control_plan_number", sa.String(length=50), nullable=False),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("plan_type", sa.String(length=20), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["fmea_id"], ["fmeas.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_control_plans_project_id", "control_plans", ["project_id"])

    op.create_table(
        "control_plan_items",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("control_plan_id", sa.Integer(), nullable=False),
        sa.Column("sequence_number", sa.Integer(), nullable=False),
        sa.Column("process_step_id", sa.Integer(), nullable=True),
        sa.Column("operation_description", sa.String(length=500), nullable=False),
        sa.Column("characteristic", sa.String(length=300), nullable=True),
        sa.Column("control_method", sa.Text(), nullable=True),
        sa.Column("sample_size_frequency", sa.String(length=100), nullable=True),
        sa.Column("control_type", sa.String(length=20), nullable=True),
        sa.Column("reaction_plan", sa.Text(), nullable=True),
        sa.Column("special_characteristic", sa.Boolean(), nullable=True),
        sa.Column("customer_required", sa.Boolean(), nullable=True),
        sa.Column("regulatory_requirement", sa.Boolean(), nullable=True),
        sa.Column("safety_characteristic", sa.Boolean(), nullable=True),
        sa.Column("verification_status", sa.String(length=20), nullable=True),
        sa.Column("linked_failure_mode_id", sa.Integer(), nullable=True),
        sa.Column("linked_failure_cause_id", sa.Integer(), nullable=True),
        sa.Column("linked_failure_control_id", sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(["control_plan_id"], ["control_plans.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["process_step_id"], ["process_steps.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["linked_failure_mode_id"], ["failure_modes.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["linked_failure_cause_id"], ["failure_causes.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["linked_failure_control_id"], ["failure_controls.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_control_plan_items_control_plan_id", "control_plan_items", ["control_plan_id"])
    op.create_index("ix_control_plan_items_process_step_id", "control_plan_items", ["process_step_id"])
    op.create_index("ix_control_plan_items_linked_failure_mode_id", "control_plan_items",
                    ["linked_failure_mode_id"])
    op.create_index("ix_control_plan_items_linked_failure_control_id", "control_plan_items",
                    ["linked_failure_control_id"])

    # ── Versions ─────────────────────────────────────────────────────────
    op.create_table(
        "project_versions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("project_id", sa.Integer(), nullable=False),
        sa.Column("version_number", sa.String(length=20), nullable=False),
        sa.Column("major_version", sa.Integer(), nullable=False),
        sa.Column("minor_version", sa.Integer(), nullable=False),
        sa.Column("patch_version", sa.Integer(), nullable=False),
        sa.Column("version_name", sa.String(length=200), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_baseline", sa.Boolean(), nullable=True),
        sa.Column("schema_version", sa.Integer(), nullable=False),
        sa.Column("process_flow_snapshot", sa.JSON(), nullable=False),
        sa.Column("fmea_snapshot", sa.JSON(), nullable=False),
        sa.Column("control_plan_snapshot", sa.JSON(), nullable=False),
        sa.Column("total_process_steps", sa.Integer(), nullable=True),
        sa.Column("total_failure_modes", sa.Integer(), nullable=True),
        sa.Column("total_control_items", sa.Integer(), nullable=True),
        sa.Column("total_rpn", sa.Integer(), nullable=True),
        sa.Column("high_risk_count", sa.Integer(), nullable=True),
        sa.Column("restored_from_version_id", sa.Integer(), nullable=True),
        sa.Column("created_by", sa.String(length=150), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["restored_from_version_id"], ["project_versions.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("project_id", "version_number", name="uq_project_version_number"),
    )
    op.create_index("ix_project_versions_project_id", "project_versions", ["project_id"])

    # ── Approval workflows / propagation rules ───────────────────────────
    op.create_table(
        "change_approval_workflows",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("project_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("trigger_conditions", sa.JSON(), nullable=True),
        sa.Column("approval_steps", sa.JSON(), nullable=True),
        sa.Column("parallel_approval", sa.Boolean(), nullable=True),
        sa.Column("auto_approve_conditions", sa.JSON(), nullable=True),
        sa.Column("default_timeout_hours", sa.Integer(), nullable=True),
        sa.Column("escalation_roles", sa.JSON(), nullable=True),
        sa.Column("emergency_bypass_roles", sa.JSON(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=True),
        sa.Column("created_by", sa.String(length=150), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_change_approval_workflows_project_id", "change_approval_workflows", ["project_id"])

    op.create_table(
        "change_propagation_rules",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("project_id", sa.Integer(), nullable=True),
        sa.Column("rule_name", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("source_entity_type", sa.String(length=30), nullable=False),
        sa.Column("source_change_type", sa.String(length=20), nullable=False),
        sa.Column("source_field_patterns", sa.JSON(), nullable=True),
        sa.Column("target_entity_type", sa.String(length=30), nullable=False),
        sa.Column("target_action", sa.String(length=20), nullable=False),
        sa.Column("target_field_mappings", sa.JSON(), nullable=True),
        sa.Column("action_config", sa.JSON(), nullable=True),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=True),
        sa.Column("requires_approval", sa.Boolean(), nullable=True),
        sa.Column("created_by", sa.String(length=150), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_change_propagation_rules_project_id", "change_propagation_rules", ["project_id"])

    # ── Change ledger ────────────────────────────────────────────────────
    op.create_table(
        "change_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("project_id", sa.Integer(), nullable=False),
        sa.Column("entity_type", sa.String(length=30), nullable=False),
        sa.Column("entity_id", sa.Integer(), nullable=False),
        sa.Column("entity_sequence", sa.Integer(), nullable=False),
        sa.Column("change_type", sa.String(length=20), nullable=False),
        sa.Column("change_action", sa.String(length=100), nullable=True),
        sa.Column("old_values", sa.JSON(), nullable=True),
        sa.Column("new_values", sa.JSON(), nullable=True),
        sa.Column("changed_fields", sa.JSON(), nullable=True),
        sa.Column("impact_level", sa.String(length=20), nullable=False),
        sa.Column("affected_modules", sa.JSON(), nullable=True),
        sa.Column("propagation_required", sa.Boolean(), nullable=True),
        sa.Column("propagation_status", sa.String(length=20), nullable=True),
        sa.Column("propagation_error", sa.Text(), nullable=True),
        sa.Column("approval_required", sa.Boolean(), nullable=True),
        sa.Column("approval_status", sa.String(length=20), nullable=False),
        sa.Column("workflow_id", sa.Integer(), nullable=True),
        sa.Column("approved_by", sa.String(length=150), nullable=True),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("triggered_by", sa.String(length=150), nullable=False),
        sa.Column("triggered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("batch_id", sa.String(length=64), nullable=True),
        sa.Column("origin_rule_id", sa.Integer(), nullable=True),
        sa.Column("rule_chain", sa.JSON(), nullable=True),
        sa.Column("hop_count", sa.Integer(), nullable=True),
        sa.Column("parent_event_id", sa.Integer(), nullable=True),
        sa.Column("restored_version_id", sa.Integer(), nullable=True),
        sa.Column("dependent_refs", sa.JSON(), nullable=True),
        sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["workflow_id"], ["change_approval_workflows.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["origin_rule_id"], ["change_propagation_rules.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["parent_event_id"], ["change_events.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["restored_version_id"], ["project_versions.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("entity_type", "entity_id", "entity_sequence",
                            name="uq_change_event_entity_sequence"),
    )
    op.create_index("ix_change_events_project_id", "change_events", ["project_id"])
    op.create_index("ix_change_events_batch_id", "change_events", ["batch_id"])
    op.create_index("ix_change_events_project_created", "change_events", ["project_id", "id"])

    op.create_table(
        "change_impact_analysis",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("change_event_id", sa.Integer(), nullable=False),
        sa.Column("impact_score", sa.Float(), nullable=True),
        sa.Column("risk_level", sa.String(length=20), nullable=True),
        sa.Column("affected_process_steps", sa.JSON(), nullable=True),
        sa.Column("affected_failure_modes", sa.JSON(), nullable=True),
        sa.Column("affected_control_items", sa.JSON(), nullable=True),
        sa.Column("affected_stakeholders", sa.JSON(), nullable=True),
        sa.Column("dependent_change_ids", sa.JSON(), nullable=True),
        sa.Column("blocking_change_ids", sa.JSON(), nullable=True),
        sa.Column("risk_mitigation_actions", sa.JSON(), nullable=True),
        sa.Column("flagged_fields", sa.JSON(), nullable=True),
        sa.Column("rpn_threshold_exceeded", sa.Boolean(), nullable=True),
        sa.Column("estimated_effort_hours", sa.Float(), nullable=True),
        sa.Column("analysis_status", sa.String(length=20), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("attempt_count", sa.Integer(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["change_event_id"], ["change_events.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("change_event_id"),
    )

    op.create_table(
        "queued_rule_actions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("change_event_id", sa.Integer(), nullable=False),
        sa.Column("rule_id", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["change_event_id"], ["change_events.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["rule_id"], ["change_propagation_rules.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("change_event_id", "rule_id", name="uq_queued_action_event_rule"),
    )
    op.create_index("ix_queued_rule_actions_change_event_id", "queued_rule_actions", ["change_event_id"])

    op.create_table(
        "review_flags",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("project_id", sa.Integer(), nullable=False),
        sa.Column("entity_type", sa.String(length=30), nullable=False),
        sa.Column("entity_id", sa.Integer(), nullable=False),
        sa.Column("display_name", sa.String(length=500), nullable=True),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("rule_id", sa.Integer(), nullable=True),
        sa.Column("change_event_id", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("resolved_by", sa.String(length=150), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["rule_id"], ["change_propagation_rules.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["change_event_id"], ["change_events.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_review_flags_project_id", "review_flags", ["project_id"])
    op.create_index("ix_review_flags_change_event_id", "review_flags", ["change_event_id"])

    op.create_table(
        "change_approvals",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("change_event_id", sa.Integer(), nullable=False),
        sa.Column("workflow_id", sa.Integer(), nullable=False),
        sa.Column("step_number", sa.Integer(), nullable=False),
        sa.Column("step_name", sa.String(length=200), nullable=False),
        sa.Column("approver_role", sa.String(length=100), nullable=False),
        sa.Column("approver_user_id", sa.String(length=150), nullable=True),
        sa.Column("is_optional", sa.Boolean(), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("decided_by", sa.String(length=150), nullable=True),
        sa.Column("decision_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("comments", sa.Text(), nullable=True),
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("due_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("escalated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("escalated_to_role", sa.String(length=100), nullable=True),
        sa.ForeignKeyConstraint(["change_event_id"], ["change_events.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["workflow_id"], ["change_approval_workflows.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("change_event_id", "workflow_id", "step_number", name="uq_change_approval_step"),
    )
    op.create_index("ix_change_approvals_change_event_id", "change_approvals", ["change_event_id"])

    op.create_table(
        "change_notifications",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("project_id", sa.Integer(), nullable=False),
        sa.Column("change_event_id", sa.Integer(), nullable=True),
        sa.Column("notification_type", sa.String(length=30), nullable=False),
        sa.Column("priority", sa.String(length=10), nullable=False),
        sa.Column("title", sa.String(length=300), nullable=False),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("recipient_criteria", sa.JSON(), nullable=True),
        sa.Column("action_required", sa.Boolean(), nullable=True),
        sa.Column("action_deadline", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivery_status", sa.String(length=20), nullable=False),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["change_event_id"], ["change_events.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_change_notifications_project_id", "change_notifications", ["project_id"])
    op.create_index("ix_change_notifications_change_event_id", "change_notifications", ["change_event_id"])
    op.create_index("ix_change_notifications_delivery_status", "change_notifications", ["delivery_status"])

    # ── Analytics / scheduling ───────────────────────────────────────────
    op.create_table(
        "risk_analytics",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("project_id", sa.Integer(), nullable=False),
        sa.Column("analysis_date", sa.Date(), nullable=False),
        sa.Column("total_failure_modes", sa.Integer(), nullable=True),
        sa.Column("rated_failure_modes", sa.Integer(), nullable=True),
        sa.Column("total_rpn", sa.Integer(), nullable=True),
        sa.Column("average_rpn", sa.Float(), nullable=True),
        sa.Column("max_rpn", sa.Integer(), nullable=True),
        sa.Column("low_rpn_count", sa.Integer(), nullable=True),
        sa.Column("medium_rpn_count", sa.Integer(), nullable=True),
        sa.Column("high_rpn_count", sa.Integer(), nullable=True),
        sa.Column("critical_rpn_count", sa.Integer(), nullable=True),
        sa.Column("high_risk_count", sa.Integer(), nullable=True),
        sa.Column("prevention_controls", sa.Integer(), nullable=True),
        sa.Column("detection_controls", sa.Integer(), nullable=True),
        sa.Column("missing_controls", sa.Integer(), nullable=True),
        sa.Column("control_effectiveness_score", sa.Float(), nullable=True),
        sa.Column("total_control_items", sa.Integer(), nullable=True),
        sa.Column("verified_control_items", sa.Integer(), nullable=True),
        sa.Column("compliance_score", sa.Float(), nullable=True),
        sa.Column("rpn_trend", sa.String(length=20), nullable=True),
        sa.Column("rpn_change_percentage", sa.Float(), nullable=True),
        sa.Column("new_risks_added", sa.Integer(), nullable=True),
        sa.Column("risks_mitigated", sa.Integer(), nullable=True),
        sa.Column("process_risk_breakdown", sa.JSON(), nullable=True),
        sa.Column("computed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("project_id", "analysis_date", name="uq_risk_analytics_project_date"),
    )
    op.create_index("ix_risk_analytics_project_id", "risk_analytics", ["project_id"])

    op.create_table(
        "scheduled_jobs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("job_name", sa.String(length=100), nullable=False),
        sa.Column("description", sa.String(length=500), nullable=True),
        sa.Column("cron_expression", sa.String(length=100), nullable=True),
        sa.Column("is_enabled", sa.Boolean(), nullable=True),
        sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_run_status", sa.String(length=20), nullable=True),
        sa.Column("last_run_duration_ms", sa.Integer(), nullable=True),
        sa.Column("last_run_result", sa.JSON(), nullable=True),
        sa.Column("run_count", sa.Integer(), nullable=True),
        sa.Column("error_count", sa.Integer(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("job_name"),
    )


def downgrade():
    for table in (
        "scheduled_jobs",
        "risk_analytics",
        "change_notifications",
        "change_approvals",
        "review_flags",
        "queued_rule_actions",
        "change_impact_analysis",
        "change_events",
        "change_propagation_rules",
        "change_approval_workflows",
        "project_versions",
        "control_plan_items",
        "control_plans",
        "failure_controls",
        "failure_causes",
        "failure_effects",
        "failure_modes",
        "fmeas",
        "step_connections",
        "process_steps",
        "process_flows",
        "projects",
    ):
        op.drop_table(table)
